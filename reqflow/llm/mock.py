"""Offline mock provider.

Returns canned stage outputs so the whole pipeline can run without network
access or credentials. Responses are wrapped the way chat models usually
answer: a sentence of commentary followed by a fenced ``json`` block.
"""

from __future__ import annotations

import json
import re
from typing import Any

from reqflow.schemas import LLMMessage, LLMResponse
from reqflow.llm.base import LLMAdapter


_STAGE_MARKER = re.compile(r"^## Stage: (?P<stage>[a-z-]+)\s*$", re.MULTILINE)

CANNED_OUTPUTS: dict[str, dict[str, Any]] = {
    "clarifier": {
        "questions": [
            "Who is the primary audience, and what age range are you targeting?",
            "What makes your product different from the existing alternatives?",
            "When you describe the look and feel, which existing apps come closest?",
        ],
        "draftRequirements": {
            "coreFeatures": ["User profiles", "Content feed", "Messaging"],
            "aesthetics": "Minimalist and clean",
            "targetAudience": "18-24 year olds",
        },
    },
    "conflict-resolver": {
        "conflicts": [
            {
                "issue": "Minimalist design vs social media-like features (e.g., infinite scroll)",
                "options": [
                    "Keep minimalist: drop the social feed",
                    "Emphasize engagement: add a short-video feed with a modified aesthetic",
                ],
            }
        ],
    },
    "validator": {
        "feasibilityReport": {
            "technical": "Real-time feeds and messaging need dedicated infrastructure.",
            "market": "Community features are trending and provide a good differentiator.",
            "business": "The proposed features align with a high user retention goal.",
        },
        "riskLevel": "medium",
    },
    "prioritizer": {
        "mustHave": ["User profiles", "Content feed", "User authentication"],
        "shouldHave": ["Messaging", "Rating system", "Basic search"],
        "niceToHave": ["Loyalty program", "Analytics dashboard", "AI-powered recommendations"],
    },
}


class MockAdapter(LLMAdapter):
    """Deterministic provider answering each stage with a canned record."""

    def __init__(self, outputs: dict[str, dict[str, Any]] | None = None):
        self.outputs = outputs or CANNED_OUTPUTS
        self.calls: list[list[LLMMessage]] = []

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
        stage = None
        for message in reversed(messages):
            match = _STAGE_MARKER.search(message.content)
            if match:
                stage = match.group("stage")
                break

        record = self.outputs.get(stage or "", {})
        content = (
            f"Here is the {stage or 'requested'} output:\n\n"
            f"```json\n{json.dumps(record, indent=2)}\n```\n"
        )
        return LLMResponse(
            content=content,
            model=model or "mock-1",
            usage={"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
            finish_reason="stop",
            latency_ms=0,
        )

    async def health_check(self) -> bool:
        return True
