"""LLM Router for model selection and fallback logic.

Strategy:
- Clarifier/Prioritizer: fast chat model
- Conflict resolver/Validator: reasoning model where the provider has one
- On failure: fallback to the alternate provider, only when enabled
"""

from __future__ import annotations

import logging
from typing import Literal

from reqflow.config import Settings, get_settings
from reqflow.schemas import LLMMessage, LLMResponse, StageId
from reqflow.llm.base import LLMAdapter, error_response
from reqflow.llm.mock import MockAdapter
from reqflow.llm.openai_compat import deepseek_adapter, kimi_adapter


logger = logging.getLogger(__name__)

ModelType = Literal["fast", "reasoning"]


class ModelRouter:
    """Routes LLM requests to appropriate providers with optional fallback."""

    # Stage-to-model mapping (what model should be used for each stage)
    STAGE_MODEL_MAP: dict[str, ModelType] = {
        StageId.CLARIFIER.value: "fast",
        StageId.CONFLICT_RESOLVER.value: "reasoning",
        StageId.VALIDATOR.value: "reasoning",
        StageId.PRIORITIZER.value: "fast",
    }

    def __init__(
        self,
        settings: Settings | None = None,
        adapters: dict[str, LLMAdapter] | None = None,
    ):
        self._settings = settings or get_settings()
        self.primary_provider = self._settings.primary_provider
        self.fallback_provider = self._settings.fallback_provider
        self.fallback_enabled = self._settings.llm_fallback_enabled

        # Adapters are created lazily unless injected
        self._adapters: dict[str, LLMAdapter] = dict(adapters or {})

    def _get_adapter(self, provider: str) -> LLMAdapter:
        """Get or create an adapter for a provider."""
        if provider not in self._adapters:
            if provider == "deepseek":
                self._adapters["deepseek"] = deepseek_adapter(self._settings)
            elif provider == "kimi":
                self._adapters["kimi"] = kimi_adapter(self._settings)
            elif provider == "mock":
                self._adapters["mock"] = MockAdapter()
            else:
                raise ValueError(f"Unknown provider: {provider}")
        return self._adapters[provider]

    def _get_model(self, provider: str, model_type: ModelType) -> str:
        if provider == "deepseek":
            if model_type == "reasoning":
                return self._settings.deepseek_model_reasoner
            return self._settings.deepseek_model_chat
        if provider == "kimi":
            return self._settings.kimi_model
        return "mock-1"

    def model_for_stage(
        self,
        stage: str,
        model_type: ModelType | None = None,
    ) -> tuple[str, str]:
        """Get provider and model name for a stage.

        Returns:
            Tuple of (provider, model_name)
        """
        if model_type is None:
            model_type = self.STAGE_MODEL_MAP.get(stage, "fast")
        return (self.primary_provider, self._get_model(self.primary_provider, model_type))

    async def chat_completion(
        self,
        messages: list[LLMMessage],
        stage: str,
        model_type: ModelType | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        response_format: dict[str, str] | None = None,
    ) -> tuple[LLMResponse, str, str]:
        """Route a chat completion request.

        Returns:
            Tuple of (response, provider_used, model_used)
        """
        provider, model = self.model_for_stage(stage, model_type)

        logger.info(f"Routing {stage} to {provider}/{model}")

        response = await self._call(
            provider, model, messages, temperature, max_tokens, response_format
        )

        if (
            response.failed
            and self.fallback_enabled
            and self.fallback_provider != provider
        ):
            logger.warning(f"Primary provider {provider} failed, trying fallback")
            fallback = self.fallback_provider
            fallback_model = self._get_model(
                fallback, model_type or self.STAGE_MODEL_MAP.get(stage, "fast")
            )
            logger.info(f"Falling back to {fallback}/{fallback_model}")
            response = await self._call(
                fallback, fallback_model, messages, temperature, max_tokens, response_format
            )
            return (response, fallback, fallback_model)

        return (response, provider, model)

    async def _call(
        self,
        provider: str,
        model: str,
        messages: list[LLMMessage],
        temperature: float,
        max_tokens: int,
        response_format: dict[str, str] | None,
    ) -> LLMResponse:
        try:
            adapter = self._get_adapter(provider)
        except ValueError as e:
            logger.error(f"Provider {provider} unavailable: {e}")
            return error_response(model, "unreachable", str(e))

        if not self._supports_json_mode(provider, model):
            response_format = None

        return await adapter.chat_completion(
            messages=messages,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            response_format=response_format,
        )

    def _supports_json_mode(self, provider: str, model: str) -> bool:
        # deepseek-reasoner rejects response_format
        return not (provider == "deepseek" and model == self._settings.deepseek_model_reasoner)

    async def close(self) -> None:
        """Close all adapters."""
        for adapter in self._adapters.values():
            await adapter.close()


# Singleton instance
_router: ModelRouter | None = None


def get_router() -> ModelRouter:
    """Get the global model router instance."""
    global _router
    if _router is None:
        _router = ModelRouter()
    return _router


async def close_router() -> None:
    """Close and forget the global router."""
    global _router
    if _router is not None:
        await _router.close()
        _router = None
