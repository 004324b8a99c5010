"""Agent invoker: one stage in, one parsed record out.

The invoker builds the stage request, makes the outbound call under a hard
timeout, and hands the raw text to the parser. It persists nothing; that is
the state machine's job. Transport failures may be retried with exponential
backoff when ``agent_max_retries`` is set; unparseable answers never are.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from reqflow.config import Settings, get_settings
from reqflow.errors import AgentError, AgentErrorCause, ParseError
from reqflow.schemas import LLMMessage, StageId
from reqflow.llm.router import ModelRouter, get_router
from reqflow.agent.parsing import parse_structured
from reqflow.agent.prompts import SYSTEM_PROMPT, format_stage_prompt


logger = logging.getLogger(__name__)

_ERROR_KIND_CAUSE = {
    "timeout": AgentErrorCause.TIMEOUT,
    "unreachable": AgentErrorCause.UNREACHABLE,
    "http_status": AgentErrorCause.UNREACHABLE,
}


class AgentInvoker:
    """Runs a single generative stage against the model router."""

    def __init__(
        self,
        router: ModelRouter | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        self.router = router or get_router()
        self.timeout = settings.agent_timeout_seconds
        self.max_retries = settings.agent_max_retries
        self.backoff = settings.agent_retry_backoff_seconds
        self.temperature = settings.agent_temperature
        self.max_tokens = settings.agent_max_tokens

    def build_messages(self, stage: StageId, stage_input: dict[str, Any]) -> list[LLMMessage]:
        return [
            LLMMessage(role="system", content=SYSTEM_PROMPT),
            LLMMessage(role="user", content=format_stage_prompt(stage, stage_input)),
        ]

    async def invoke(self, stage: StageId, stage_input: dict[str, Any]) -> dict[str, Any]:
        """Run ``stage`` and return its decoded record.

        Raises:
            AgentError: timeout, unreachable provider, or a response with no
                recoverable JSON object.
        """
        messages = self.build_messages(stage, stage_input)

        attempt = 0
        while True:
            try:
                raw_text = await self._complete(stage, messages)
                break
            except AgentError as e:
                if not e.retryable or attempt >= self.max_retries:
                    logger.error(f"Agent {stage.value} failed: {e.cause.value} {e.detail}")
                    raise
                delay = self.backoff * (2 ** attempt)
                attempt += 1
                logger.warning(
                    f"Agent {stage.value} {e.cause.value}, retry {attempt}/{self.max_retries} "
                    f"in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

        logger.debug(f"Agent {stage.value} raw output: {raw_text!r}")

        try:
            return parse_structured(raw_text)
        except ParseError as e:
            logger.error(f"Agent {stage.value} returned unparseable output: {e.reason}")
            raise AgentError(AgentErrorCause.INVALID_RESPONSE, stage.value, e.reason) from e

    async def _complete(self, stage: StageId, messages: list[LLMMessage]) -> str | None:
        try:
            response, provider, model = await asyncio.wait_for(
                self.router.chat_completion(
                    messages=messages,
                    stage=stage.value,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                    response_format={"type": "json_object"},
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise AgentError(
                AgentErrorCause.TIMEOUT, stage.value, f"no answer within {self.timeout}s"
            ) from e

        if response.failed:
            cause = _ERROR_KIND_CAUSE.get(response.error_kind or "", AgentErrorCause.UNREACHABLE)
            detail = (response.raw_response or {}).get("error", "")
            raise AgentError(cause, stage.value, f"{provider}/{model}: {detail}")

        return response.content


# Singleton instance
_invoker: AgentInvoker | None = None


def get_invoker() -> AgentInvoker:
    """Get the global agent invoker instance."""
    global _invoker
    if _invoker is None:
        _invoker = AgentInvoker()
    return _invoker
