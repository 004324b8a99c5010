"""Blueprint and summary read views.

Both views tolerate any missing stage output and substitute an empty
structure. Only the blueprint has a readiness guard.
"""

from __future__ import annotations

from typing import Any

from reqflow.errors import NotReadyError
from reqflow.schemas import (
    BlueprintView,
    ClarifierSummary,
    SessionStatus,
    SessionSummary,
    SessionView,
    ValidationSummary,
)
from reqflow.database.repository import SessionDocument, SessionRepository, parse_id
from reqflow.agent.machine import stale_stages


BLUEPRINT_READY = (SessionStatus.PRIORITIZED, SessionStatus.COMPLETE)


def _mapping(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _sequence(value: Any) -> list[Any]:
    return list(value) if isinstance(value, list) else []


def build_blueprint(doc: SessionDocument) -> BlueprintView:
    """Merge every stage output of a prioritized session into one document.

    Raises:
        NotReadyError: the session has not been prioritized yet.
    """
    if doc.status not in BLUEPRINT_READY:
        raise NotReadyError("Blueprint is not ready. Please run all agents first.")

    clarifier = _mapping(doc.clarifier_output)
    validator = _mapping(doc.validator_output)

    return BlueprintView(
        session_id=doc.id,
        user_idea=doc.user_idea,
        project_name=doc.user_idea,
        requirements=_mapping(clarifier.get("draftRequirements")),
        clarifier_questions=_sequence(clarifier.get("questions")),
        clarifier_answers=doc.clarifier_answers if doc.clarifier_answers is not None else {},
        conflicts_resolved=_sequence(_mapping(doc.conflict_output).get("conflicts")),
        conflict_resolution=_mapping(doc.conflict_resolution),
        feasibility_report=_mapping(validator.get("feasibilityReport")),
        risk_level=validator.get("riskLevel"),
        roadmap=_mapping(doc.prioritizer_output),
        stale_stages=stale_stages(doc.stage_revisions),
        status=doc.status,
        created_at=doc.created_at,
        last_updated=doc.updated_at,
    )


def _joined(items: list[Any]) -> str:
    return ", ".join(str(item) for item in items) or "None"


def build_summary(doc: SessionDocument) -> SessionSummary:
    """Render whatever the session has so far, plus a text digest. Never raises."""
    clarifier = _mapping(doc.clarifier_output)
    validator = _mapping(doc.validator_output)
    prioritization = _mapping(doc.prioritizer_output)
    conflicts = _sequence(_mapping(doc.conflict_output).get("conflicts"))

    summary = SessionSummary(
        session_id=doc.id,
        user_id=doc.user_id,
        project_idea=doc.user_idea,
        status=doc.status,
        created_at=doc.created_at,
        updated_at=doc.updated_at,
        clarifier=ClarifierSummary(
            questions=_sequence(clarifier.get("questions")),
            draft_requirements=_mapping(clarifier.get("draftRequirements")),
            user_answers=doc.clarifier_answers if doc.clarifier_answers is not None else {},
        ),
        conflicts=conflicts,
        conflict_resolution=_mapping(doc.conflict_resolution),
        validation=ValidationSummary(
            feasibility_report=_mapping(validator.get("feasibilityReport")),
            risk_level=validator.get("riskLevel") or "Not assessed",
        ),
        prioritization=prioritization,
        stale_stages=stale_stages(doc.stage_revisions),
    )

    lines = [
        f"Project Idea: {summary.project_idea}",
        f"Status: {summary.status.value}",
        f"Feasibility: {summary.validation.risk_level}",
        f"Number of Clarifier Questions: {len(summary.clarifier.questions)}",
        f"Number of Conflicts: {len(conflicts)}",
        f"Core Features: {_joined(_sequence(summary.clarifier.draft_requirements.get('coreFeatures')))}",
        f"Must-Have Features: {_joined(_sequence(prioritization.get('mustHave')))}",
        f"Should-Have Features: {_joined(_sequence(prioritization.get('shouldHave')))}",
        f"Nice-to-Have Features: {_joined(_sequence(prioritization.get('niceToHave')))}",
    ]
    if summary.stale_stages:
        lines.append(f"Stale Stages: {', '.join(summary.stale_stages)}")
    summary.final_summary = "\n".join(lines)
    return summary


def session_view(doc: SessionDocument) -> SessionView:
    """Every field of the session, as stored."""
    return SessionView(
        session_id=doc.id,
        user_id=doc.user_id,
        user_idea=doc.user_idea,
        status=doc.status,
        revision=doc.revision,
        clarifier_output=doc.clarifier_output,
        clarifier_answers=doc.clarifier_answers,
        conflict_output=doc.conflict_output,
        conflict_resolution=doc.conflict_resolution,
        validator_output=doc.validator_output,
        prioritizer_output=doc.prioritizer_output,
        stage_revisions=doc.stage_revisions,
        created_at=doc.created_at,
        updated_at=doc.updated_at,
    )


async def compile_blueprint(sessions: SessionRepository, session_id: str) -> BlueprintView:
    """Load the session and build its blueprint."""
    return build_blueprint(await sessions.get(parse_id(session_id, "Session")))


async def compile_summary(sessions: SessionRepository, session_id: str) -> SessionSummary:
    """Load the session and build its summary."""
    return build_summary(await sessions.get(parse_id(session_id, "Session")))
