"""Provider interface shared by every chat model backend."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Literal

from reqflow.schemas import LLMMessage, LLMResponse


ErrorKind = Literal["timeout", "unreachable", "http_status"]


def error_response(
    model: str,
    kind: ErrorKind,
    detail: str,
    **extra: Any,
) -> LLMResponse:
    """A failed completion; ``detail`` stays in ``raw_response`` for the logs."""
    return LLMResponse(
        content=None,
        model=model,
        finish_reason="error",
        error_kind=kind,
        raw_response={"error": detail, **extra},
    )


class LLMAdapter(ABC):
    """A chat completion backend (DeepSeek, Kimi, or the offline mock).

    Adapters never raise for transport problems. A timeout, refused
    connection or error status comes back as an ``LLMResponse`` with
    ``finish_reason == "error"`` and an ``error_kind``, and the invoker
    decides what that means for the stage.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        ...

    @property
    @abstractmethod
    def available_models(self) -> list[str]:
        ...

    @abstractmethod
    async def chat_completion(
        self,
        messages: list[LLMMessage],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        response_format: dict[str, str] | None = None,
    ) -> LLMResponse:
        """Return the model's reply to ``messages``.

        Args:
            messages: System prompt followed by the stage request
            model: Model name (adapter default if None)
            temperature: Sampling temperature (0-2)
            max_tokens: Reply length cap
            response_format: e.g. ``{"type": "json_object"}`` where supported
        """
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        ...

    async def close(self) -> None:
        return None
