"""Shared test fixtures and configuration for pytest."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator
from typing import Any

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reqflow.config import Settings
from reqflow.schemas import LLMMessage, LLMResponse
from reqflow.llm.base import LLMAdapter, error_response
from reqflow.llm.mock import MockAdapter
from reqflow.llm.router import ModelRouter
from reqflow.database.session import build_engine, build_session_maker, init_db
from reqflow.database.repository import SessionRepository, UserRepository
from reqflow.agent.invoker import AgentInvoker
from reqflow.agent.machine import SessionStateMachine


def fenced(record: Any, preamble: str = "Sure, here it is:") -> str:
    """Wrap a record the way chat models usually answer."""
    return f"{preamble}\n\n```json\n{json.dumps(record)}\n```\n"


class ScriptedAdapter(LLMAdapter):
    """Replays queued answers in order; strings become successful responses."""

    def __init__(self, *answers: str | LLMResponse | BaseException, delay: float = 0.0):
        self.answers = list(answers)
        self.delay = delay
        self.calls: list[list[LLMMessage]] = []
        self.formats: list[dict[str, str] | None] = []

    @property
    def provider_name(self) -> str:
        return "mock"

    @property
    def available_models(self) -> list[str]:
        return ["mock-1"]

    async def chat_completion(
        self,
        messages: list[LLMMessage],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        response_format: dict[str, str] | None = None,
    ) -> LLMResponse:
        self.calls.append(list(messages))
        self.formats.append(response_format)
        if self.delay:
            await asyncio.sleep(self.delay)
        answer = self.answers.pop(0)
        if isinstance(answer, LLMResponse):
            return answer
        return LLMResponse(content=answer, model=model or "mock-1", finish_reason="stop")

    async def health_check(self) -> bool:
        return True


def failed_response(kind: str = "unreachable") -> LLMResponse:
    return error_response("mock-1", kind, f"simulated {kind}")


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "primary_provider": "mock",
        "fallback_provider": "mock",
        "agent_timeout_seconds": 5.0,
        "agent_max_retries": 0,
        "agent_retry_backoff_seconds": 0.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_invoker(adapter: LLMAdapter, **overrides: Any) -> AgentInvoker:
    settings = make_settings(**overrides)
    router = ModelRouter(settings=settings, adapters={"mock": adapter})
    return AgentInvoker(router=router, settings=settings)


@pytest.fixture
def mock_adapter() -> MockAdapter:
    return MockAdapter()


@pytest.fixture
def invoker(mock_adapter: MockAdapter) -> AgentInvoker:
    return make_invoker(mock_adapter)


@pytest_asyncio.fixture
async def session_maker() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh in-memory database per test."""
    engine = build_engine("sqlite+aiosqlite://")
    await init_db(engine)
    yield build_session_maker(engine)
    await engine.dispose()


@pytest.fixture
def sessions(session_maker: async_sessionmaker[AsyncSession]) -> SessionRepository:
    return SessionRepository(session_maker)


@pytest.fixture
def users(session_maker: async_sessionmaker[AsyncSession]) -> UserRepository:
    return UserRepository(session_maker)


@pytest.fixture
def machine(
    sessions: SessionRepository,
    users: UserRepository,
    invoker: AgentInvoker,
) -> SessionStateMachine:
    return SessionStateMachine(sessions, users, invoker)


@pytest_asyncio.fixture
async def user_id(users: UserRepository) -> str:
    user = await users.create("ada", "ada@example.com")
    return user.id


@pytest.fixture
def app(
    session_maker: async_sessionmaker[AsyncSession],
    invoker: AgentInvoker,
) -> FastAPI:
    """Application wired to the test database and agent."""
    from reqflow.agent.invoker import get_invoker
    from reqflow.api.main import create_app
    from reqflow.database.session import get_session_maker

    application = create_app(use_lifespan=False)
    application.dependency_overrides[get_session_maker] = lambda: session_maker
    application.dependency_overrides[get_invoker] = lambda: invoker
    return application


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
