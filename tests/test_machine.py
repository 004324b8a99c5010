"""Tests for the session state machine."""

import pytest

from reqflow.agent.machine import (
    TRANSITIONS,
    Operation,
    SessionStateMachine,
    lookup_transition,
)
from reqflow.errors import (
    AgentError,
    AgentErrorCause,
    ConcurrentModificationError,
    NotFoundError,
    PreconditionError,
    ValidationError,
)
from reqflow.llm.mock import CANNED_OUTPUTS
from reqflow.schemas import SessionStatus

from conftest import ScriptedAdapter, fenced, make_invoker


S = SessionStatus


async def advance(machine, session_id, *steps):
    """Run the named operations in order."""
    for step in steps:
        if step == "clarify":
            await machine.run_clarifier(session_id)
        elif step == "answer":
            await machine.submit_answers(session_id, {"q1": "Pet owners"})
        elif step == "conflicts":
            await machine.run_conflict_resolver(session_id)
        elif step == "resolve":
            await machine.resolve_conflict(session_id, 0)
        elif step == "validate":
            await machine.run_validator(session_id)
        elif step == "prioritize":
            await machine.run_prioritizer(session_id)
        elif step == "finalize":
            await machine.finalize(session_id)


# =============================================================================
# Transition table
# =============================================================================

def test_first_runs_move_forward():
    assert lookup_transition(S.STARTED, Operation.RUN_CLARIFIER).target is S.CLARIFIED
    assert lookup_transition(S.CLARIFIED, Operation.RUN_CONFLICT_RESOLVER).target is S.CONFLICT_FOUND
    assert lookup_transition(S.CONFLICT_FOUND, Operation.RUN_VALIDATOR).target is S.VALIDATED
    assert lookup_transition(S.PRIORITIZED, Operation.FINALIZE).target is S.COMPLETE


def test_reruns_never_move_status_backward():
    for (state, _), transition in TRANSITIONS.items():
        assert transition.target.reached(state)


def test_skipping_ahead_is_rejected():
    with pytest.raises(PreconditionError) as excinfo:
        lookup_transition(S.STARTED, Operation.RUN_VALIDATOR)

    assert excinfo.value.message == "Conflict resolver agent must be run first."


def test_complete_accepts_only_finalize():
    assert lookup_transition(S.COMPLETE, Operation.FINALIZE).target is S.COMPLETE
    for operation in Operation:
        if operation is not Operation.FINALIZE:
            with pytest.raises(PreconditionError):
                lookup_transition(S.COMPLETE, operation)


# =============================================================================
# Lifecycle
# =============================================================================

@pytest.mark.asyncio
async def test_start_session(machine, user_id):
    document = await machine.start_session("  pet social app  ", user_id)

    assert document.status is S.STARTED
    assert document.user_idea == "pet social app"
    assert document.revision == 0
    assert document.clarifier_output is None


@pytest.mark.asyncio
async def test_start_session_requires_idea(machine, user_id):
    with pytest.raises(ValidationError):
        await machine.start_session("   ", user_id)


@pytest.mark.asyncio
async def test_start_session_for_unknown_user(machine):
    with pytest.raises(NotFoundError) as excinfo:
        await machine.start_session("pet social app", "0" * 32)

    assert excinfo.value.message == "User not found."


@pytest.mark.asyncio
@pytest.mark.parametrize("session_id", ["", "not-an-id", "1234"])
async def test_malformed_session_id(machine, session_id):
    with pytest.raises(ValidationError):
        await machine.run_clarifier(session_id)


@pytest.mark.asyncio
async def test_unknown_session(machine):
    with pytest.raises(NotFoundError):
        await machine.run_clarifier("f" * 32)


# =============================================================================
# Operations
# =============================================================================

@pytest.mark.asyncio
async def test_pet_social_app_flow(machine, user_id):
    document = await machine.start_session("pet social app", user_id)
    session_id = document.id

    document, clarifier = await machine.run_clarifier(session_id)
    assert document.status is S.CLARIFIED
    assert len(clarifier.questions) == 3
    assert document.clarifier_output == CANNED_OUTPUTS["clarifier"]

    document = await machine.submit_answers(session_id, {"q1": "Pet owners", "q2": "Playful"})
    assert document.status is S.ANSWERS_SUBMITTED
    assert document.clarifier_answers == {"q1": "Pet owners", "q2": "Playful"}

    document, conflicts = await machine.run_conflict_resolver(session_id)
    assert document.status is S.CONFLICT_FOUND
    assert len(conflicts.conflicts) == 1

    document = await machine.resolve_conflict(session_id, 1)
    assert document.status is S.RESOLVED
    assert document.conflict_resolution["chosenOption"] == 1
    assert document.conflict_resolution["originalConflicts"] == CANNED_OUTPUTS["conflict-resolver"]["conflicts"]

    document, validator = await machine.run_validator(session_id)
    assert document.status is S.VALIDATED
    assert validator.risk_level.value == "medium"

    document, roadmap = await machine.run_prioritizer(session_id)
    assert document.status is S.PRIORITIZED
    assert "User profiles" in roadmap.must_have

    document = await machine.finalize(session_id)
    assert document.status is S.COMPLETE
    assert document.revision == 7

    stored = await machine.get_session(session_id)
    assert stored.status is S.COMPLETE
    assert stored.prioritizer_output == CANNED_OUTPUTS["prioritizer"]


@pytest.mark.asyncio
async def test_answers_are_optional(machine, user_id):
    document = await machine.start_session("pet social app", user_id)
    await advance(machine, document.id, "clarify", "conflicts", "validate", "prioritize")

    stored = await machine.get_session(document.id)
    assert stored.status is S.PRIORITIZED
    assert stored.clarifier_answers is None
    assert stored.conflict_resolution is None


@pytest.mark.asyncio
async def test_guard_failure_leaves_session_untouched(machine, user_id, sessions):
    document = await machine.start_session("pet social app", user_id)
    before = await sessions.get(document.id)

    for call in (
        machine.run_conflict_resolver(document.id),
        machine.run_validator(document.id),
        machine.run_prioritizer(document.id),
        machine.resolve_conflict(document.id, 0),
        machine.submit_answers(document.id, {"q1": "a"}),
        machine.finalize(document.id),
    ):
        with pytest.raises(PreconditionError):
            await call

    assert await sessions.get(document.id) == before


@pytest.mark.asyncio
async def test_validator_requires_conflict_resolver(machine, user_id):
    document = await machine.start_session("pet social app", user_id)
    await advance(machine, document.id, "clarify")

    with pytest.raises(PreconditionError) as excinfo:
        await machine.run_validator(document.id)

    assert excinfo.value.message == "Conflict resolver agent must be run first."


@pytest.mark.asyncio
async def test_empty_answers_rejected(machine, user_id):
    document = await machine.start_session("pet social app", user_id)
    await advance(machine, document.id, "clarify")

    with pytest.raises(PreconditionError):
        await machine.submit_answers(document.id, {})


@pytest.mark.asyncio
async def test_rerun_overwrites_without_moving_status_back(sessions, users, user_id):
    first = {"conflicts": [{"issue": "Speed vs. cost", "options": ["Fast", "Cheap"]}]}
    second = {"conflicts": []}
    adapter = ScriptedAdapter(
        fenced(CANNED_OUTPUTS["clarifier"]),
        fenced(first),
        fenced(CANNED_OUTPUTS["validator"]),
        fenced(second),
    )
    machine = SessionStateMachine(sessions, users, make_invoker(adapter))

    document = await machine.start_session("pet social app", user_id)
    await advance(machine, document.id, "clarify", "conflicts", "validate")

    document, output = await machine.run_conflict_resolver(document.id)

    assert output.conflicts == []
    assert document.status is S.VALIDATED
    assert document.conflict_output == second


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "bad_output",
    [
        {"questions": [], "draftRequirements": {}},
        {"questions": ["Who?"]},
        {"draftRequirements": {"coreFeatures": []}},
    ],
)
async def test_shape_mismatch_is_invalid_response(sessions, users, user_id, bad_output):
    machine = SessionStateMachine(sessions, users, make_invoker(ScriptedAdapter(fenced(bad_output))))
    document = await machine.start_session("pet social app", user_id)

    with pytest.raises(AgentError) as excinfo:
        await machine.run_clarifier(document.id)

    assert excinfo.value.cause is AgentErrorCause.INVALID_RESPONSE
    stored = await sessions.get(document.id)
    assert stored.status is S.STARTED
    assert stored.revision == 0
    assert stored.clarifier_output is None


@pytest.mark.asyncio
async def test_agent_failure_keeps_previous_output(sessions, users, user_id):
    adapter = ScriptedAdapter(fenced(CANNED_OUTPUTS["clarifier"]), "no json at all")
    machine = SessionStateMachine(sessions, users, make_invoker(adapter))
    document = await machine.start_session("pet social app", user_id)
    await advance(machine, document.id, "clarify")

    with pytest.raises(AgentError):
        await machine.run_clarifier(document.id)

    stored = await sessions.get(document.id)
    assert stored.status is S.CLARIFIED
    assert stored.clarifier_output == CANNED_OUTPUTS["clarifier"]


@pytest.mark.asyncio
@pytest.mark.parametrize("index", [-1, 2, 99])
async def test_resolve_conflict_index_out_of_range(machine, user_id, index):
    document = await machine.start_session("pet social app", user_id)
    await advance(machine, document.id, "clarify", "conflicts")

    with pytest.raises(ValidationError):
        await machine.resolve_conflict(document.id, index)

    stored = await machine.get_session(document.id)
    assert stored.status is S.CONFLICT_FOUND
    assert stored.conflict_resolution is None


@pytest.mark.asyncio
async def test_resolve_conflict_rejects_non_integers(machine, user_id):
    document = await machine.start_session("pet social app", user_id)
    await advance(machine, document.id, "clarify", "conflicts")

    with pytest.raises(ValidationError):
        await machine.resolve_conflict(document.id, True)


@pytest.mark.asyncio
async def test_complete_session_is_frozen(machine, user_id):
    document = await machine.start_session("pet social app", user_id)
    await advance(
        machine, document.id,
        "clarify", "conflicts", "validate", "prioritize", "finalize",
    )

    with pytest.raises(PreconditionError) as excinfo:
        await machine.run_clarifier(document.id)
    assert excinfo.value.message == "Session is complete and can no longer change."

    document = await machine.finalize(document.id)
    assert document.status is S.COMPLETE


# =============================================================================
# Persistence
# =============================================================================

@pytest.mark.asyncio
async def test_stale_document_cannot_be_saved(machine, sessions, user_id):
    document = await machine.start_session("pet social app", user_id)
    loaded = await sessions.get(document.id)

    await machine.run_clarifier(document.id)

    loaded.status = S.CLARIFIED
    with pytest.raises(ConcurrentModificationError):
        await sessions.save(loaded)

    stored = await sessions.get(document.id)
    assert stored.revision == 1


@pytest.mark.asyncio
async def test_save_bumps_revision(sessions, user_id, machine):
    document = await machine.start_session("pet social app", user_id)

    saved = await sessions.save(document)

    assert saved.revision == 1
    assert (await sessions.get(document.id)).revision == 1
    with pytest.raises(ConcurrentModificationError):
        await sessions.save(document)


@pytest.mark.asyncio
async def test_clarifier_rerun_marks_downstream_stale(machine, user_id):
    document = await machine.start_session("pet social app", user_id)
    await advance(machine, document.id, "clarify", "answer", "conflicts", "resolve", "validate")

    document, _ = await machine.run_clarifier(document.id)

    assert document.status is S.VALIDATED
    assert document.stage_revisions["clarifier"] == document.revision
    assert document.stage_revisions["validator"] < document.revision


@pytest.mark.asyncio
async def test_timestamps_are_timezone_aware(machine, users, sessions, user_id):
    user = await users.get(user_id)
    document = await machine.start_session("pet social app", user_id)

    saved, _ = await machine.run_clarifier(document.id)
    stored = await sessions.get(document.id)

    assert user.created_at.tzinfo is not None
    assert stored.created_at.tzinfo is not None
    assert stored.updated_at.tzinfo is not None
    assert saved.updated_at.tzinfo is not None
    assert stored.updated_at >= stored.created_at
