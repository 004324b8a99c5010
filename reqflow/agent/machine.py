"""Session state machine.

State = ``SessionStatus``. Every mutation goes through one table lookup:
``(status, operation) -> Transition(guard, target)``. Anything missing from
the table is rejected with ``PreconditionError`` before the session is
touched.

Flow of a transition, strictly in this order:

    load -> table lookup -> guard -> effect (maybe an agent call) -> save

Re-running a stage is allowed from any state at or past the stage's target
(except ``complete``); it overwrites the output and keeps the status, so
status never moves backward. Each output records the revision it was
written at, which is what ``stale_stages`` uses to spot outputs computed
from inputs that were later rewritten.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from reqflow.errors import AgentError, AgentErrorCause, PreconditionError, ValidationError
from reqflow.schemas import (
    ClarifierOutput,
    ConflictOutput,
    ConflictResolution,
    PrioritizerOutput,
    SessionStatus,
    StageId,
    ValidatorOutput,
)
from reqflow.database.repository import SessionDocument, SessionRepository, UserRepository, parse_id
from reqflow.agent.invoker import AgentInvoker


logger = logging.getLogger(__name__)

S = SessionStatus
M = TypeVar("M", bound=BaseModel)


class Operation(str, Enum):
    """Mutations a caller can request on a session."""
    RUN_CLARIFIER = "run_clarifier"
    SUBMIT_ANSWERS = "submit_answers"
    RUN_CONFLICT_RESOLVER = "run_conflict_resolver"
    RESOLVE_CONFLICT = "resolve_conflict"
    RUN_VALIDATOR = "run_validator"
    RUN_PRIORITIZER = "run_prioritizer"
    FINALIZE = "finalize"


# =============================================================================
# Guards (return the name of the missing prerequisite, or None)
# =============================================================================

Guard = Callable[[SessionDocument], "str | None"]


def _draft_requirements(doc: SessionDocument) -> dict[str, Any] | None:
    return (doc.clarifier_output or {}).get("draftRequirements")


def guard_user_idea(doc: SessionDocument) -> str | None:
    return None if doc.user_idea and doc.user_idea.strip() else "userIdea"


def guard_clarifier_output(doc: SessionDocument) -> str | None:
    return None if doc.clarifier_output else "clarifierOutput"


def guard_draft_requirements(doc: SessionDocument) -> str | None:
    return None if _draft_requirements(doc) is not None else "clarifierOutput.draftRequirements"


def guard_conflict_output(doc: SessionDocument) -> str | None:
    return None if doc.conflict_output is not None else "conflictOutput"


def guard_requirements_and_conflicts(doc: SessionDocument) -> str | None:
    return guard_draft_requirements(doc) or guard_conflict_output(doc)


def guard_feasibility_report(doc: SessionDocument) -> str | None:
    report = (doc.validator_output or {}).get("feasibilityReport")
    return None if report is not None else "validatorOutput.feasibilityReport"


def guard_none(doc: SessionDocument) -> str | None:
    return None


# =============================================================================
# Transition Table
# =============================================================================

@dataclass(frozen=True)
class Transition:
    operation: Operation
    source: SessionStatus
    target: SessionStatus
    guard: Guard


@dataclass(frozen=True)
class _Rule:
    operation: Operation
    sources: tuple[SessionStatus, ...]
    target: SessionStatus
    guard: Guard
    requires: str


_RULES: tuple[_Rule, ...] = (
    _Rule(Operation.RUN_CLARIFIER, (S.STARTED,), S.CLARIFIED,
          guard_user_idea, "Session must be started first."),
    _Rule(Operation.SUBMIT_ANSWERS, (S.CLARIFIED,), S.ANSWERS_SUBMITTED,
          guard_clarifier_output, "Clarifier agent must be run first."),
    _Rule(Operation.RUN_CONFLICT_RESOLVER, (S.CLARIFIED, S.ANSWERS_SUBMITTED), S.CONFLICT_FOUND,
          guard_draft_requirements, "Clarifier agent must be run first."),
    _Rule(Operation.RESOLVE_CONFLICT, (S.CONFLICT_FOUND,), S.RESOLVED,
          guard_conflict_output, "Conflict resolver agent must be run first."),
    _Rule(Operation.RUN_VALIDATOR, (S.CONFLICT_FOUND, S.RESOLVED), S.VALIDATED,
          guard_requirements_and_conflicts, "Conflict resolver agent must be run first."),
    _Rule(Operation.RUN_PRIORITIZER, (S.VALIDATED,), S.PRIORITIZED,
          guard_feasibility_report, "Validator agent must be run first."),
    _Rule(Operation.FINALIZE, (S.PRIORITIZED,), S.COMPLETE,
          guard_none, "Prioritizer agent must be run first."),
)

_REQUIRES: dict[Operation, str] = {rule.operation: rule.requires for rule in _RULES}


def build_transition_table() -> dict[tuple[SessionStatus, Operation], Transition]:
    """Expand the rules into explicit ``(state, operation)`` entries.

    First runs move to the rule's target. Re-runs (from the target or any
    later state) stay put. ``complete`` accepts only a repeated finalize.
    """
    table: dict[tuple[SessionStatus, Operation], Transition] = {}
    for rule in _RULES:
        for source in rule.sources:
            table[(source, rule.operation)] = Transition(rule.operation, source, rule.target, rule.guard)
        for state in SessionStatus:
            if state.reached(rule.target) and (state is not S.COMPLETE or rule.operation is Operation.FINALIZE):
                table[(state, rule.operation)] = Transition(rule.operation, state, state, rule.guard)
    return table


TRANSITIONS = build_transition_table()


def lookup_transition(status: SessionStatus, operation: Operation) -> Transition:
    """Return the table entry or raise ``PreconditionError``."""
    transition = TRANSITIONS.get((status, operation))
    if transition is None:
        if status is S.COMPLETE:
            raise PreconditionError("Session is complete and can no longer change.", missing=None)
        raise PreconditionError(_REQUIRES[operation], missing=operation.value)
    return transition


# =============================================================================
# Stage Versioning
# =============================================================================

ANSWERS_KEY = "answers"
RESOLUTION_KEY = "resolution"

# Which recorded writes each output was computed from
STAGE_DEPENDENCIES: dict[str, tuple[str, ...]] = {
    StageId.CLARIFIER.value: (),
    ANSWERS_KEY: (StageId.CLARIFIER.value,),
    StageId.CONFLICT_RESOLVER.value: (StageId.CLARIFIER.value, ANSWERS_KEY),
    RESOLUTION_KEY: (StageId.CONFLICT_RESOLVER.value,),
    StageId.VALIDATOR.value: (
        StageId.CLARIFIER.value, StageId.CONFLICT_RESOLVER.value, RESOLUTION_KEY,
    ),
    StageId.PRIORITIZER.value: (StageId.CLARIFIER.value, StageId.VALIDATOR.value),
}


def stale_stages(stage_revisions: dict[str, int]) -> list[str]:
    """Outputs written before one of their (transitive) inputs was rewritten."""
    memo: dict[str, bool] = {}

    def is_stale(key: str) -> bool:
        if key not in memo:
            written = stage_revisions[key]
            memo[key] = any(
                dep in stage_revisions
                and (stage_revisions[dep] > written or is_stale(dep))
                for dep in STAGE_DEPENDENCIES.get(key, ())
            )
        return memo[key]

    return [key for key in STAGE_DEPENDENCIES if key in stage_revisions and is_stale(key)]


# =============================================================================
# State Machine
# =============================================================================

class SessionStateMachine:
    """Sole writer of session status and stage outputs."""

    def __init__(
        self,
        sessions: SessionRepository,
        users: UserRepository,
        invoker: AgentInvoker,
    ):
        self.sessions = sessions
        self.users = users
        self.invoker = invoker

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start_session(self, user_idea: str, user_id: str) -> SessionDocument:
        """Create a session in ``started`` for an existing user."""
        if not user_idea or not user_idea.strip():
            raise ValidationError("User idea and User ID are required.")
        owner_id = parse_id(user_id, "User")

        document = await self.sessions.create(user_idea.strip(), owner_id)
        logger.info(f"[{document.id}] session started for user {owner_id}")
        return document

    async def get_session(self, session_id: str) -> SessionDocument:
        return await self.sessions.get(parse_id(session_id, "Session"))

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def run_clarifier(self, session_id: str) -> tuple[SessionDocument, ClarifierOutput]:
        async def effect(doc: SessionDocument) -> ClarifierOutput:
            record = await self.invoker.invoke(StageId.CLARIFIER, {"userIdea": doc.user_idea})
            output = _conform(ClarifierOutput, record, StageId.CLARIFIER)
            doc.clarifier_output = output.to_document()
            _mark_written(doc, StageId.CLARIFIER.value)
            return output

        return await self._transition(session_id, Operation.RUN_CLARIFIER, effect)

    async def submit_answers(self, session_id: str, answers: Any) -> SessionDocument:
        if not answers:
            raise PreconditionError("Answers payload is required.", missing="userAnswers")

        async def effect(doc: SessionDocument) -> None:
            doc.clarifier_answers = answers
            _mark_written(doc, ANSWERS_KEY)

        document, _ = await self._transition(session_id, Operation.SUBMIT_ANSWERS, effect)
        return document

    async def run_conflict_resolver(self, session_id: str) -> tuple[SessionDocument, ConflictOutput]:
        async def effect(doc: SessionDocument) -> ConflictOutput:
            stage_input = {
                "draftRequirements": _draft_requirements(doc),
                "userAnswers": doc.clarifier_answers,
            }
            record = await self.invoker.invoke(StageId.CONFLICT_RESOLVER, stage_input)
            output = _conform(ConflictOutput, record, StageId.CONFLICT_RESOLVER)
            doc.conflict_output = output.to_document()
            _mark_written(doc, StageId.CONFLICT_RESOLVER.value)
            return output

        return await self._transition(session_id, Operation.RUN_CONFLICT_RESOLVER, effect)

    async def resolve_conflict(self, session_id: str, chosen_option_index: int) -> SessionDocument:
        if isinstance(chosen_option_index, bool) or not isinstance(chosen_option_index, int):
            raise ValidationError("chosenOptionIndex must be an integer.")
        if chosen_option_index < 0:
            raise ValidationError("chosenOptionIndex must not be negative.")

        async def effect(doc: SessionDocument) -> None:
            conflicts = ConflictOutput.model_validate(doc.conflict_output).conflicts
            option_count = max((len(c.options) for c in conflicts), default=0)
            if option_count and chosen_option_index >= option_count:
                raise ValidationError(
                    f"chosenOptionIndex must be between 0 and {option_count - 1}."
                )
            resolution = ConflictResolution(
                chosen_option=chosen_option_index,
                original_conflicts=conflicts,
            )
            doc.conflict_resolution = resolution.to_document()
            _mark_written(doc, RESOLUTION_KEY)

        document, _ = await self._transition(session_id, Operation.RESOLVE_CONFLICT, effect)
        return document

    async def run_validator(self, session_id: str) -> tuple[SessionDocument, ValidatorOutput]:
        async def effect(doc: SessionDocument) -> ValidatorOutput:
            stage_input = {
                "draftRequirements": _draft_requirements(doc),
                "conflicts": (doc.conflict_output or {}).get("conflicts", []),
                "conflictResolution": doc.conflict_resolution,
            }
            record = await self.invoker.invoke(StageId.VALIDATOR, stage_input)
            output = _conform(ValidatorOutput, record, StageId.VALIDATOR)
            doc.validator_output = output.to_document()
            _mark_written(doc, StageId.VALIDATOR.value)
            return output

        return await self._transition(session_id, Operation.RUN_VALIDATOR, effect)

    async def run_prioritizer(self, session_id: str) -> tuple[SessionDocument, PrioritizerOutput]:
        async def effect(doc: SessionDocument) -> PrioritizerOutput:
            validator_output = doc.validator_output or {}
            stage_input = {
                "feasibilityReport": validator_output.get("feasibilityReport"),
                "riskLevel": validator_output.get("riskLevel"),
                "draftRequirements": _draft_requirements(doc),
            }
            record = await self.invoker.invoke(StageId.PRIORITIZER, stage_input)
            output = _conform(PrioritizerOutput, record, StageId.PRIORITIZER)
            doc.prioritizer_output = output.to_document()
            _mark_written(doc, StageId.PRIORITIZER.value)
            return output

        return await self._transition(session_id, Operation.RUN_PRIORITIZER, effect)

    async def finalize(self, session_id: str) -> SessionDocument:
        async def effect(doc: SessionDocument) -> None:
            return None

        document, _ = await self._transition(session_id, Operation.FINALIZE, effect)
        return document

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _transition(
        self,
        session_id: str,
        operation: Operation,
        effect: Callable[[SessionDocument], Awaitable[Any]],
    ) -> tuple[SessionDocument, Any]:
        document = await self.sessions.get(parse_id(session_id, "Session"))

        try:
            transition = lookup_transition(document.status, operation)
            missing = transition.guard(document)
            if missing:
                raise PreconditionError(f"Missing prerequisite: {missing}.", missing=missing)
        except PreconditionError as e:
            logger.info(f"[{document.id}] {operation.value} rejected in {document.status.value}: {e.message}")
            raise

        # The effect works on the loaded copy; nothing is stored unless save succeeds.
        result = await effect(document)
        document.status = transition.target
        saved = await self.sessions.save(document)

        logger.info(
            f"[{saved.id}] {operation.value}: {transition.source.value} -> "
            f"{transition.target.value} (rev {saved.revision})"
        )
        return saved, result


def _mark_written(doc: SessionDocument, key: str) -> None:
    # Stamped with the revision the upcoming save will produce
    doc.stage_revisions = {**doc.stage_revisions, key: doc.revision + 1}


def _conform(model: type[M], record: dict[str, Any], stage: StageId) -> M:
    """Validate a decoded record against the stage's output shape."""
    try:
        return model.model_validate(record)
    except SchemaError as e:
        raise AgentError(
            AgentErrorCause.INVALID_RESPONSE,
            stage.value,
            f"output does not match {model.__name__}: {e.error_count()} error(s)",
        ) from e
