"""Pydantic schemas for all stage and API contracts.

These schemas define the strict contracts between:
- API endpoints and clients (camelCase on the wire)
- The state machine and the records each stage must produce
- LLM provider inputs/outputs
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator
from pydantic.alias_generators import to_camel


# =============================================================================
# Enums
# =============================================================================

class SessionStatus(str, Enum):
    """Progress of a session, in workflow order."""
    STARTED = "started"
    CLARIFIED = "clarified"
    ANSWERS_SUBMITTED = "answers_submitted"
    CONFLICT_FOUND = "conflict_found"
    RESOLVED = "resolved"
    VALIDATED = "validated"
    PRIORITIZED = "prioritized"
    COMPLETE = "complete"

    @property
    def rank(self) -> int:
        return STATUS_ORDER.index(self)

    def reached(self, other: SessionStatus) -> bool:
        """True when this status is at or past ``other``."""
        return self.rank >= other.rank


STATUS_ORDER: tuple[SessionStatus, ...] = tuple(SessionStatus)


class StageId(str, Enum):
    """Generative stages, in pipeline order."""
    CLARIFIER = "clarifier"
    CONFLICT_RESOLVER = "conflict-resolver"
    VALIDATOR = "validator"
    PRIORITIZER = "prioritizer"


class RiskLevel(str, Enum):
    """Overall risk assessed by the validator."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# =============================================================================
# Base
# =============================================================================

class CamelModel(BaseModel):
    """Model serialized with camelCase keys, populated by either name."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict[str, Any]:
        """Dump to the JSON-compatible camelCase form stored on the session."""
        return self.model_dump(mode="json", by_alias=True)


# =============================================================================
# Stage Outputs
# =============================================================================

class DraftRequirements(CamelModel):
    """First-pass requirements drafted by the clarifier."""
    core_features: list[str] = Field(default_factory=list)
    aesthetics: str = ""
    target_audience: str = ""

    @field_validator("core_features")
    @classmethod
    def _dedupe_features(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))


class ClarifierOutput(CamelModel):
    """Output from the clarifier stage."""
    questions: list[str] = Field(..., min_length=1, description="Clarifying questions, in order")
    draft_requirements: DraftRequirements


class Conflict(CamelModel):
    """A contradiction between requirements and the ways out of it."""
    issue: str
    options: list[str] = Field(default_factory=list)


class ConflictOutput(CamelModel):
    """Output from the conflict-resolver stage."""
    conflicts: list[Conflict] = Field(default_factory=list)


class ConflictResolution(CamelModel):
    """User's choice among the options of the recorded conflicts."""
    chosen_option: int = Field(..., ge=0)
    original_conflicts: list[Conflict] = Field(default_factory=list)


class FeasibilityReport(CamelModel):
    technical: str
    market: str
    business: str


class ValidatorOutput(CamelModel):
    """Output from the validator stage."""
    feasibility_report: FeasibilityReport
    risk_level: RiskLevel

    @field_validator("risk_level", mode="before")
    @classmethod
    def _normalize_risk(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class PrioritizerOutput(CamelModel):
    """Output from the prioritizer stage (MoSCoW-style roadmap)."""
    must_have: list[str] = Field(default_factory=list)
    should_have: list[str] = Field(default_factory=list)
    nice_to_have: list[str] = Field(default_factory=list)


# =============================================================================
# API Request Schemas
# =============================================================================

class SessionStartRequest(CamelModel):
    """API request to start a session."""
    user_idea: str = Field(..., min_length=1, description="Raw product idea")
    user_id: str = Field(..., min_length=1)

    @field_validator("user_idea")
    @classmethod
    def _strip_idea(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("userIdea must not be blank")
        return value

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "userIdea": "pet social app",
                "userId": "6f1c2b7e9d6a4c1f8e3b2a1d0c9e8f7a",
            }
        }
    )


class SessionRef(CamelModel):
    """API request that only names a session."""
    session_id: str = Field(..., min_length=1)


class SubmitAnswersRequest(SessionRef):
    user_answers: Any = Field(..., description="Free-form answers to the clarifier's questions")


class ResolveConflictRequest(SessionRef):
    chosen_option_index: StrictInt


class UserCreateRequest(CamelModel):
    """API request to register a user."""
    username: str = Field(..., min_length=1, max_length=64)
    email: str = Field(..., min_length=3, max_length=254)

    @field_validator("username")
    @classmethod
    def _strip_username(cls, value: str) -> str:
        return value.strip()

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        value = value.strip().lower()
        if "@" not in value:
            raise ValueError("email must contain '@'")
        return value


# =============================================================================
# API Response Schemas
# =============================================================================

class SessionStartResponse(CamelModel):
    session_id: str
    status: SessionStatus
    message: str | None = None


class SessionAck(CamelModel):
    """Acknowledges a mutation that returns no stage output."""
    session_id: str
    status: SessionStatus


class ClarifierResponse(CamelModel):
    session_id: str
    questions: list[str]


class ConflictResponse(CamelModel):
    session_id: str
    conflicts: list[Conflict]


class ValidatorResponse(CamelModel):
    session_id: str
    validator_output: ValidatorOutput


class PrioritizerResponse(CamelModel):
    session_id: str
    final_output: PrioritizerOutput


class SessionView(CamelModel):
    """Raw view of every field of a session."""
    session_id: str
    user_id: str
    user_idea: str
    status: SessionStatus
    revision: int
    clarifier_output: dict[str, Any] | None = None
    clarifier_answers: Any | None = None
    conflict_output: dict[str, Any] | None = None
    conflict_resolution: dict[str, Any] | None = None
    validator_output: dict[str, Any] | None = None
    prioritizer_output: dict[str, Any] | None = None
    stage_revisions: dict[str, int] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class BlueprintView(CamelModel):
    """Denormalized read view of a prioritized session."""
    session_id: str
    user_idea: str
    project_name: str
    requirements: dict[str, Any] = Field(default_factory=dict)
    clarifier_questions: list[str] = Field(default_factory=list)
    clarifier_answers: Any = Field(default_factory=dict)
    conflicts_resolved: list[dict[str, Any]] = Field(default_factory=list)
    conflict_resolution: dict[str, Any] = Field(default_factory=dict)
    feasibility_report: dict[str, Any] = Field(default_factory=dict)
    risk_level: str | None = None
    roadmap: dict[str, Any] = Field(default_factory=dict)
    stale_stages: list[str] = Field(default_factory=list)
    status: SessionStatus
    created_at: datetime
    last_updated: datetime


class ClarifierSummary(CamelModel):
    questions: list[str] = Field(default_factory=list)
    draft_requirements: dict[str, Any] = Field(default_factory=dict)
    user_answers: Any = Field(default_factory=dict)


class ValidationSummary(CamelModel):
    feasibility_report: dict[str, Any] = Field(default_factory=dict)
    risk_level: str = "Not assessed"


class SessionSummary(CamelModel):
    """Whatever subset of stage outputs a session has, plus a text digest."""
    session_id: str
    user_id: str
    project_idea: str
    status: SessionStatus
    created_at: datetime
    updated_at: datetime
    clarifier: ClarifierSummary = Field(default_factory=ClarifierSummary)
    conflicts: list[dict[str, Any]] = Field(default_factory=list)
    conflict_resolution: dict[str, Any] = Field(default_factory=dict)
    validation: ValidationSummary = Field(default_factory=ValidationSummary)
    prioritization: dict[str, Any] = Field(default_factory=dict)
    stale_stages: list[str] = Field(default_factory=list)
    final_summary: str = ""


class UserResponse(CamelModel):
    user_id: str
    username: str
    email: str
    created_at: datetime


class UserCreateResponse(CamelModel):
    user_id: str
    message: str = "User created successfully."


class ErrorResponse(BaseModel):
    """Body of every failed request."""
    message: str


# =============================================================================
# LLM Schemas
# =============================================================================

class LLMMessage(BaseModel):
    """A single message in an LLM conversation."""
    role: Literal["system", "user", "assistant"] = Field(...)
    content: str = Field(...)


class LLMResponse(BaseModel):
    """Response from an LLM provider."""
    content: str | None = None
    model: str
    usage: dict[str, Any] = Field(default_factory=dict)
    finish_reason: str | None = None
    error_kind: Literal["timeout", "unreachable", "http_status"] | None = None
    raw_response: dict[str, Any] | None = None
    latency_ms: int | None = None

    @property
    def failed(self) -> bool:
        return self.finish_reason == "error"
