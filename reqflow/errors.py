"""Error taxonomy for the requirement-gathering workflow.

Every error a client can see derives from ``ReqFlowError`` and carries the
HTTP status it maps to plus a message that is safe to return verbatim.
``ParseError`` is internal to the agent layer and never leaves it unwrapped.
"""

from __future__ import annotations

from enum import Enum


class ReqFlowError(Exception):
    """Base class for errors surfaced to API clients."""

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ReqFlowError):
    """Missing or malformed request fields."""

    status_code = 400


class PreconditionError(ReqFlowError):
    """A stage was requested before its prerequisites were met."""

    status_code = 400

    def __init__(self, message: str, missing: str | None = None):
        super().__init__(message)
        self.missing = missing


class NotReadyError(ReqFlowError):
    """A read view was requested before the session can produce it."""

    status_code = 400


class NotFoundError(ReqFlowError):
    """A session or user id does not resolve."""

    status_code = 404

    def __init__(self, entity: str, entity_id: str | None = None):
        super().__init__(f"{entity} not found.")
        self.entity = entity
        self.entity_id = entity_id


class ConflictError(ReqFlowError):
    """A unique key is already taken."""

    status_code = 409


class ConcurrentModificationError(ConflictError):
    """The session changed between load and commit."""

    def __init__(self, session_id: str, expected_revision: int):
        super().__init__("Session was modified concurrently. Retry the request.")
        self.session_id = session_id
        self.expected_revision = expected_revision


class AgentErrorCause(str, Enum):
    """Why a generative stage failed."""
    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    INVALID_RESPONSE = "invalid_response"


class AgentError(ReqFlowError):
    """The generative capability failed to produce a usable stage output."""

    status_code = 500

    def __init__(self, cause: AgentErrorCause, stage: str, detail: str = ""):
        super().__init__(f"Agent '{stage}' failed ({cause.value}).")
        self.cause = cause
        self.stage = stage
        # Diagnostic only, never returned to clients.
        self.detail = detail

    @property
    def retryable(self) -> bool:
        return self.cause in (AgentErrorCause.TIMEOUT, AgentErrorCause.UNREACHABLE)


class ParseError(Exception):
    """No structured record could be recovered from model output."""

    def __init__(self, reason: str, raw_text: str):
        super().__init__(reason)
        self.reason = reason
        self.raw_text = raw_text
