"""OpenAI-compatible chat completion adapter.

Both supported hosted providers expose the OpenAI chat completions API:
- DeepSeek at https://api.deepseek.com (deepseek-chat, deepseek-reasoner)
- Kimi/Moonshot at https://api.moonshot.cn/v1 (moonshot-v1-8k/32k/128k)
"""

from __future__ import annotations

import logging
import time

import httpx

from reqflow.config import Settings, get_settings
from reqflow.schemas import LLMMessage, LLMResponse
from reqflow.llm.base import ErrorKind, LLMAdapter, error_response


logger = logging.getLogger(__name__)


class OpenAICompatibleAdapter(LLMAdapter):
    """Chat completion adapter for any OpenAI-compatible endpoint."""

    def __init__(
        self,
        provider: str,
        api_key: str,
        base_url: str,
        default_model: str,
        models: list[str],
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not api_key:
            raise ValueError(f"{provider} API key not configured")

        self._provider = provider
        self._models = models
        self.base_url = base_url
        self.default_model = default_model
        self.timeout = timeout

        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @property
    def provider_name(self) -> str:
        return self._provider

    @property
    def available_models(self) -> list[str]:
        return list(self._models)

    async def chat_completion(
        self,
        messages: list[LLMMessage],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        response_format: dict[str, str] | None = None,
    ) -> LLMResponse:
        """Send chat completion request to the provider."""
        model = model or self.default_model

        payload: dict[str, object] = {
            "model": model,
            "messages": [m.model_dump() for m in messages],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if response_format:
            payload["response_format"] = response_format

        start_time = time.perf_counter()

        try:
            response = await self._client.post("/chat/completions", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            return self._error_response(model, "timeout", e)
        except httpx.HTTPStatusError as e:
            return self._error_response(
                model, "http_status", e, status_code=e.response.status_code
            )
        except (httpx.HTTPError, ValueError) as e:
            # ValueError covers a non-JSON body from a misbehaving gateway.
            return self._error_response(model, "unreachable", e)

        latency_ms = int((time.perf_counter() - start_time) * 1000)

        # Parse response
        choice = (data.get("choices") or [{}])[0]
        message = choice.get("message", {})

        return LLMResponse(
            content=message.get("content"),
            model=data.get("model", model),
            usage=data.get("usage") or {},
            finish_reason=choice.get("finish_reason"),
            raw_response=data,
            latency_ms=latency_ms,
        )

    def _error_response(
        self,
        model: str,
        kind: ErrorKind,
        error: Exception,
        status_code: int | None = None,
    ) -> LLMResponse:
        logger.warning(f"{self._provider} request failed ({kind}): {error}")
        if status_code is None:
            return error_response(model, kind, str(error))
        return error_response(model, kind, str(error), status_code=status_code)

    async def health_check(self) -> bool:
        """Check if the provider API is accessible."""
        try:
            response = await self._client.post(
                "/chat/completions",
                json={
                    "model": self.default_model,
                    "messages": [{"role": "user", "content": "ping"}],
                    "max_tokens": 1,
                },
            )
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()


def deepseek_adapter(settings: Settings | None = None) -> OpenAICompatibleAdapter:
    """Build the DeepSeek adapter from settings."""
    settings = settings or get_settings()
    return OpenAICompatibleAdapter(
        provider="deepseek",
        api_key=settings.deepseek_api_key,
        base_url=settings.deepseek_base_url,
        default_model=settings.deepseek_model_chat,
        models=[settings.deepseek_model_chat, settings.deepseek_model_reasoner],
        timeout=settings.agent_timeout_seconds,
    )


def kimi_adapter(settings: Settings | None = None) -> OpenAICompatibleAdapter:
    """Build the Kimi/Moonshot adapter from settings."""
    settings = settings or get_settings()
    return OpenAICompatibleAdapter(
        provider="kimi",
        api_key=settings.kimi_api_key,
        base_url=settings.kimi_base_url,
        default_model=settings.kimi_model,
        models=["moonshot-v1-8k", "moonshot-v1-32k", "moonshot-v1-128k"],
        timeout=settings.agent_timeout_seconds,
    )
