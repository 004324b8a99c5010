"""Tests for model routing and the OpenAI-compatible adapter."""

import httpx
import pytest

from reqflow.llm.openai_compat import OpenAICompatibleAdapter
from reqflow.llm.router import ModelRouter
from reqflow.schemas import LLMMessage

from conftest import ScriptedAdapter, failed_response, make_settings


MESSAGES = [LLMMessage(role="user", content="## Stage: clarifier")]


def make_adapter(handler) -> OpenAICompatibleAdapter:
    return OpenAICompatibleAdapter(
        provider="deepseek",
        api_key="test-key",
        base_url="https://llm.test",
        default_model="deepseek-chat",
        models=["deepseek-chat"],
        transport=httpx.MockTransport(handler),
    )


# =============================================================================
# Router
# =============================================================================

def test_model_for_stage():
    router = ModelRouter(settings=make_settings(primary_provider="deepseek", deepseek_api_key="k"))

    assert router.model_for_stage("clarifier") == ("deepseek", "deepseek-chat")
    assert router.model_for_stage("validator") == ("deepseek", "deepseek-reasoner")
    assert router.model_for_stage("prioritizer", "reasoning") == ("deepseek", "deepseek-reasoner")


@pytest.mark.asyncio
async def test_missing_api_key_is_unreachable():
    router = ModelRouter(settings=make_settings(primary_provider="kimi", kimi_api_key=""))

    response, provider, _ = await router.chat_completion(MESSAGES, stage="clarifier")

    assert response.failed
    assert response.error_kind == "unreachable"
    assert provider == "kimi"


@pytest.mark.asyncio
async def test_no_fallback_by_default():
    primary = ScriptedAdapter(failed_response())
    backup = ScriptedAdapter("unused")
    router = ModelRouter(
        settings=make_settings(primary_provider="deepseek", fallback_provider="kimi"),
        adapters={"deepseek": primary, "kimi": backup},
    )

    response, provider, _ = await router.chat_completion(MESSAGES, stage="clarifier")

    assert response.failed
    assert provider == "deepseek"
    assert backup.calls == []


@pytest.mark.asyncio
async def test_fallback_when_enabled():
    primary = ScriptedAdapter(failed_response("timeout"))
    backup = ScriptedAdapter('{"questions": ["?"]}')
    router = ModelRouter(
        settings=make_settings(
            primary_provider="deepseek",
            fallback_provider="kimi",
            llm_fallback_enabled=True,
        ),
        adapters={"deepseek": primary, "kimi": backup},
    )

    response, provider, model = await router.chat_completion(MESSAGES, stage="validator")

    assert not response.failed
    assert provider == "kimi"
    assert model == "moonshot-v1-32k"
    assert len(backup.calls) == 1


# =============================================================================
# OpenAI-compatible adapter
# =============================================================================

def test_adapter_requires_key():
    with pytest.raises(ValueError):
        OpenAICompatibleAdapter("kimi", "", "https://llm.test", "m", ["m"])


@pytest.mark.asyncio
async def test_adapter_success():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["path"] = request.url.path
        return httpx.Response(
            200,
            json={
                "model": "deepseek-chat",
                "choices": [{"message": {"content": "hello"}, "finish_reason": "stop"}],
                "usage": {"total_tokens": 3},
            },
        )

    adapter = make_adapter(handler)
    response = await adapter.chat_completion(MESSAGES)
    await adapter.close()

    assert response.content == "hello"
    assert response.finish_reason == "stop"
    assert response.usage == {"total_tokens": 3}
    assert seen == {"auth": "Bearer test-key", "path": "/chat/completions"}


@pytest.mark.asyncio
async def test_adapter_http_error():
    adapter = make_adapter(lambda request: httpx.Response(500, json={"error": "boom"}))

    response = await adapter.chat_completion(MESSAGES)
    await adapter.close()

    assert response.failed
    assert response.error_kind == "http_status"
    assert response.raw_response["status_code"] == 500


@pytest.mark.asyncio
async def test_adapter_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("too slow", request=request)

    adapter = make_adapter(handler)
    response = await adapter.chat_completion(MESSAGES)
    await adapter.close()

    assert response.error_kind == "timeout"


@pytest.mark.asyncio
async def test_adapter_connection_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    adapter = make_adapter(handler)
    response = await adapter.chat_completion(MESSAGES)
    await adapter.close()

    assert response.error_kind == "unreachable"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [httpx.DecodingError, httpx.TooManyRedirects, httpx.UnsupportedProtocol],
)
async def test_adapter_other_http_errors_are_unreachable(error):
    def handler(request: httpx.Request) -> httpx.Response:
        raise error("broken", request=request)

    adapter = make_adapter(handler)
    response = await adapter.chat_completion(MESSAGES)
    await adapter.close()

    assert response.failed
    assert response.error_kind == "unreachable"


@pytest.mark.asyncio
async def test_json_mode_dropped_for_reasoner():
    adapter = ScriptedAdapter("{}", "{}")
    router = ModelRouter(
        settings=make_settings(primary_provider="deepseek"),
        adapters={"deepseek": adapter},
    )
    json_mode = {"type": "json_object"}

    await router.chat_completion(MESSAGES, stage="clarifier", response_format=json_mode)
    await router.chat_completion(MESSAGES, stage="validator", response_format=json_mode)

    assert adapter.formats == [json_mode, None]
