"""SQLModel database tables.

Tables:
- User: owners of sessions (identity only; authentication lives elsewhere)
- RequirementSession: one idea's progress through the stages, stored as a
  self-contained document with JSON columns for every stage output
"""

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Column, Index
from sqlmodel import Field, SQLModel


def new_id() -> str:
    """Opaque, immutable identifier for users and sessions."""
    return uuid4().hex


def utcnow() -> datetime:
    """Timezone-aware current time; timestamp columns reject naive values."""
    return datetime.now(timezone.utc)


# =============================================================================
# User Model
# =============================================================================

class User(SQLModel, table=True):
    """A user who can own sessions."""

    __tablename__ = "users"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    username: str = Field(unique=True, index=True, max_length=64)
    email: str = Field(unique=True, index=True, max_length=254)
    created_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Session Model
# =============================================================================

class RequirementSession(SQLModel, table=True):
    """A requirement-gathering session."""

    __tablename__ = "sessions"
    __table_args__ = (
        Index("ix_sessions_user_created", "user_id", "created_at"),
    )

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    user_id: str = Field(foreign_key="users.id", index=True, max_length=32)
    user_idea: str = Field(description="The user's raw product idea")

    # Status (SessionStatus values); only the state machine writes it
    status: str = Field(default="started", index=True)
    # Compare-and-swap counter, bumped by every committed transition
    revision: int = Field(default=0)

    # Stage outputs (camelCase documents)
    clarifier_output: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    clarifier_answers: Any = Field(default=None, sa_column=Column(JSON))
    conflict_output: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    conflict_resolution: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    validator_output: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    prioritizer_output: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))

    # Revision at which each stage output was last written
    stage_revisions: dict[str, int] = Field(
        default_factory=dict, sa_column=Column(JSON, nullable=False)
    )

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
