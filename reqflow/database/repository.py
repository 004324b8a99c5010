"""Document-style access to users and sessions.

Every call opens its own short-lived database session, so nothing is cached
between operations and no connection is held while an agent call runs.
Sessions are handed out as detached ``SessionDocument`` copies; ``save``
writes one back with a compare-and-swap on ``revision``.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from reqflow.errors import ConcurrentModificationError, ConflictError, NotFoundError, ValidationError
from reqflow.schemas import SessionStatus
from reqflow.database.models import RequirementSession, User, utcnow


logger = logging.getLogger(__name__)


def parse_id(value: Any, entity: str) -> str:
    """Normalize an id to its stored form.

    Raises:
        ValidationError: ``value`` is not a UUID.
    """
    if not value or not isinstance(value, str):
        raise ValidationError(f"{entity} ID is required.")
    try:
        return UUID(value).hex
    except ValueError:
        raise ValidationError(f"A valid {entity} ID is required.") from None


@dataclass
class SessionDocument:
    """In-memory copy of one session record."""
    id: str
    user_id: str
    user_idea: str
    status: SessionStatus
    revision: int
    created_at: datetime
    updated_at: datetime
    clarifier_output: dict[str, Any] | None = None
    clarifier_answers: Any = None
    conflict_output: dict[str, Any] | None = None
    conflict_resolution: dict[str, Any] | None = None
    validator_output: dict[str, Any] | None = None
    prioritizer_output: dict[str, Any] | None = None
    stage_revisions: dict[str, int] = field(default_factory=dict)

    # Fields the state machine may change; identity and owner are fixed
    MUTABLE_FIELDS = (
        "status",
        "clarifier_output",
        "clarifier_answers",
        "conflict_output",
        "conflict_resolution",
        "validator_output",
        "prioritizer_output",
        "stage_revisions",
    )

    @classmethod
    def from_record(cls, record: RequirementSession) -> SessionDocument:
        return cls(
            id=record.id,
            user_id=record.user_id,
            user_idea=record.user_idea,
            status=SessionStatus(record.status),
            revision=record.revision,
            created_at=record.created_at,
            updated_at=record.updated_at,
            clarifier_output=copy.deepcopy(record.clarifier_output),
            clarifier_answers=copy.deepcopy(record.clarifier_answers),
            conflict_output=copy.deepcopy(record.conflict_output),
            conflict_resolution=copy.deepcopy(record.conflict_resolution),
            validator_output=copy.deepcopy(record.validator_output),
            prioritizer_output=copy.deepcopy(record.prioritizer_output),
            stage_revisions=dict(record.stage_revisions or {}),
        )

    def snapshot(self) -> SessionDocument:
        return copy.deepcopy(self)


class SessionRepository:
    """Loads and saves session documents by id."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def create(self, user_idea: str, user_id: str) -> SessionDocument:
        async with self._session_maker() as db:
            owner = await db.get(User, user_id)
            if owner is None:
                raise NotFoundError("User", user_id)

            record = RequirementSession(
                user_id=user_id,
                user_idea=user_idea,
                status=SessionStatus.STARTED.value,
            )
            db.add(record)
            await db.commit()
            await db.refresh(record)
            return SessionDocument.from_record(record)

    async def get(self, session_id: str) -> SessionDocument:
        async with self._session_maker() as db:
            record = await db.get(RequirementSession, session_id)
            if record is None:
                raise NotFoundError("Session", session_id)
            return SessionDocument.from_record(record)

    async def save(self, document: SessionDocument) -> SessionDocument:
        """Write back ``document`` if nobody committed since it was loaded.

        Raises:
            ConcurrentModificationError: the stored revision moved on.
        """
        expected = document.revision
        now = utcnow()
        values = {name: getattr(document, name) for name in SessionDocument.MUTABLE_FIELDS}
        values["status"] = document.status.value
        values["revision"] = expected + 1
        values["updated_at"] = now

        async with self._session_maker() as db:
            result = await db.execute(
                update(RequirementSession)
                .where(RequirementSession.id == document.id)
                .where(RequirementSession.revision == expected)
                .values(**values)
            )
            if result.rowcount != 1:
                await db.rollback()
                logger.warning(f"[{document.id}] revision {expected} is stale, commit rejected")
                raise ConcurrentModificationError(document.id, expected)
            await db.commit()

        saved = document.snapshot()
        saved.revision = expected + 1
        saved.updated_at = now
        return saved


class UserRepository:
    """Creates and looks up users."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def create(self, username: str, email: str) -> User:
        async with self._session_maker() as db:
            result = await db.execute(
                select(User).where(or_(User.username == username, User.email == email))
            )
            if result.scalars().first() is not None:
                raise ConflictError("User with this username or email already exists.")

            user = User(username=username, email=email)
            db.add(user)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise ConflictError("User with this username or email already exists.") from None
            await db.refresh(user)
            return user

    async def get(self, user_id: str) -> User:
        async with self._session_maker() as db:
            user = await db.get(User, user_id)
            if user is None:
                raise NotFoundError("User", user_id)
            return user
