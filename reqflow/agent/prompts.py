"""Prompt templates for each generative stage.

Every stage prompt carries a ``## Stage:`` header, the stage input as JSON,
and the exact JSON shape the stage must answer with.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from reqflow.schemas import StageId

# =============================================================================
# System Prompt
# =============================================================================

SYSTEM_PROMPT = """You are ReqFlow, an experienced product analyst. Your role is to:
1. Turn a raw product idea into clear, testable requirements
2. Surface contradictions between requirements and offer ways to resolve them
3. Assess technical, market and business feasibility honestly
4. Organize features into a prioritized roadmap

Guidelines:
- Be concrete and specific to the idea you are given
- Never invent facts about the user; ask instead
- Answer ONLY with the JSON object requested, inside a ```json fenced block"""


# =============================================================================
# Stage Prompts
# =============================================================================

CLARIFIER_PROMPT = """## Stage: clarifier

The user wants to build the following product.

## Stage Input
{stage_input}

## Instructions
1. Ask 3-7 clarifying questions that would most change the requirements
2. Draft a first version of the requirements from what you know so far

Respond with a JSON object following this schema:
```json
{{
  "questions": ["string"],
  "draftRequirements": {{
    "coreFeatures": ["string"],
    "aesthetics": "string",
    "targetAudience": "string"
  }}
}}
```"""


CONFLICT_RESOLVER_PROMPT = """## Stage: conflict-resolver

Analyze these draft requirements (and the user's answers, if any) for
logical contradictions or tensions.

## Stage Input
{stage_input}

## Instructions
For each contradiction, state the issue in one sentence and list 2-3
mutually exclusive options to resolve it. Return an empty list if there
are none.

Respond with a JSON object following this schema:
```json
{{
  "conflicts": [
    {{"issue": "string", "options": ["string"]}}
  ]
}}
```"""


VALIDATOR_PROMPT = """## Stage: validator

Check the feasibility of these requirements, given the conflicts found and
how the user resolved them.

## Stage Input
{stage_input}

## Instructions
Write one short paragraph each on technical, market and business
feasibility, then rate the overall risk as low, medium or high.

Respond with a JSON object following this schema:
```json
{{
  "feasibilityReport": {{
    "technical": "string",
    "market": "string",
    "business": "string"
  }},
  "riskLevel": "low|medium|high"
}}
```"""


PRIORITIZER_PROMPT = """## Stage: prioritizer

Organize the features into a roadmap, using the feasibility report to
weigh impact against effort.

## Stage Input
{stage_input}

## Instructions
Place every core feature in exactly one bucket. You may add features the
feasibility report shows are necessary.

Respond with a JSON object following this schema:
```json
{{
  "mustHave": ["string"],
  "shouldHave": ["string"],
  "niceToHave": ["string"]
}}
```"""


@dataclass(frozen=True)
class StagePrompt:
    """Instructions and declared input fields for one stage."""
    template: str
    required_inputs: tuple[str, ...]
    optional_inputs: tuple[str, ...] = ()


STAGE_PROMPTS: dict[StageId, StagePrompt] = {
    StageId.CLARIFIER: StagePrompt(CLARIFIER_PROMPT, ("userIdea",)),
    StageId.CONFLICT_RESOLVER: StagePrompt(
        CONFLICT_RESOLVER_PROMPT, ("draftRequirements",), ("userAnswers",)
    ),
    StageId.VALIDATOR: StagePrompt(
        VALIDATOR_PROMPT, ("draftRequirements", "conflicts"), ("conflictResolution",)
    ),
    StageId.PRIORITIZER: StagePrompt(
        PRIORITIZER_PROMPT, ("feasibilityReport",), ("draftRequirements", "riskLevel")
    ),
}


# =============================================================================
# Helper Functions
# =============================================================================

def format_stage_prompt(stage: StageId, stage_input: dict[str, Any]) -> str:
    """Format the prompt for ``stage`` with its declared inputs only.

    Raises:
        KeyError: a required input is missing.
    """
    prompt = STAGE_PROMPTS[stage]
    missing = [key for key in prompt.required_inputs if key not in stage_input]
    if missing:
        raise KeyError(f"{stage.value} input is missing {', '.join(missing)}")

    declared = {
        key: stage_input[key]
        for key in prompt.required_inputs + prompt.optional_inputs
        if stage_input.get(key) is not None
    }
    return prompt.template.format(stage_input=json.dumps(declared, indent=2, ensure_ascii=False))
