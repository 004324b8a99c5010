"""LangGraph autopilot that drives one session through every stage.

Graph structure:
START → start → clarify → answer → detect_conflicts → resolve → validate → prioritize → finalize → END
             (any node that fails routes straight to END)

Each node is one state machine operation, so the autopilot obeys exactly the
same guards and persistence rules as the HTTP API. A failed node leaves the
session at its last committed status.
"""

from __future__ import annotations

import logging
from typing import Any, Literal, TypedDict

from langgraph.graph import END, StateGraph

from reqflow.errors import ReqFlowError
from reqflow.agent.machine import SessionStateMachine


logger = logging.getLogger(__name__)


# =============================================================================
# State Definition
# =============================================================================

class PipelineState(TypedDict, total=False):
    """State for the autopilot.

    Attributes:
        user_idea: The raw product idea
        user_id: Owner of the new session
        answers: Optional answers to submit after the clarifier
        chosen_option: Option index used to resolve conflicts (None skips it)
        finalize: Whether to mark the session complete at the end
        session_id: Id of the session created by the start node
        status: Last committed session status
        questions: Clarifier questions
        conflicts: Conflicts found (camelCase dicts)
        risk_level: Validator's risk rating
        roadmap: Prioritizer output (camelCase dict)
        error: Client-safe message of the failure that stopped the graph
        failed_step: Node that failed
    """
    user_idea: str
    user_id: str
    answers: Any
    chosen_option: int | None
    finalize: bool
    session_id: str
    status: str
    questions: list[str]
    conflicts: list[dict[str, Any]]
    risk_level: str
    roadmap: dict[str, Any]
    error: str
    failed_step: str


STEPS = ("start", "clarify", "answer", "detect_conflicts", "resolve", "validate", "prioritize", "finalize")


# =============================================================================
# Workflow Builder
# =============================================================================

def build_workflow(machine: SessionStateMachine) -> StateGraph:
    """Build the LangGraph workflow around ``machine``."""

    async def start_node(state: PipelineState) -> dict[str, Any]:
        document = await machine.start_session(state["user_idea"], state["user_id"])
        return {"session_id": document.id, "status": document.status.value}

    async def clarify_node(state: PipelineState) -> dict[str, Any]:
        document, output = await machine.run_clarifier(state["session_id"])
        return {"status": document.status.value, "questions": output.questions}

    async def answer_node(state: PipelineState) -> dict[str, Any]:
        if not state.get("answers"):
            return {}
        document = await machine.submit_answers(state["session_id"], state["answers"])
        return {"status": document.status.value}

    async def detect_conflicts_node(state: PipelineState) -> dict[str, Any]:
        document, output = await machine.run_conflict_resolver(state["session_id"])
        return {
            "status": document.status.value,
            "conflicts": [c.to_document() for c in output.conflicts],
        }

    async def resolve_node(state: PipelineState) -> dict[str, Any]:
        option = state.get("chosen_option")
        if option is None or not state.get("conflicts"):
            return {}
        document = await machine.resolve_conflict(state["session_id"], option)
        return {"status": document.status.value}

    async def validate_node(state: PipelineState) -> dict[str, Any]:
        document, output = await machine.run_validator(state["session_id"])
        return {"status": document.status.value, "risk_level": output.risk_level.value}

    async def prioritize_node(state: PipelineState) -> dict[str, Any]:
        document, output = await machine.run_prioritizer(state["session_id"])
        return {"status": document.status.value, "roadmap": output.to_document()}

    async def finalize_node(state: PipelineState) -> dict[str, Any]:
        if not state.get("finalize"):
            return {}
        document = await machine.finalize(state["session_id"])
        return {"status": document.status.value}

    nodes = {
        "start": start_node,
        "clarify": clarify_node,
        "answer": answer_node,
        "detect_conflicts": detect_conflicts_node,
        "resolve": resolve_node,
        "validate": validate_node,
        "prioritize": prioritize_node,
        "finalize": finalize_node,
    }

    workflow = StateGraph(PipelineState)

    for name in STEPS:
        workflow.add_node(name, _guarded(name, nodes[name]))

    workflow.set_entry_point(STEPS[0])

    for name, following in zip(STEPS, STEPS[1:]):
        workflow.add_conditional_edges(
            name,
            should_continue,
            {
                "continue": following,
                "stop": END,
            },
        )

    workflow.add_edge(STEPS[-1], END)

    return workflow


def _guarded(name: str, node):
    """Record a workflow error in the state instead of aborting the graph."""

    async def run(state: PipelineState) -> dict[str, Any]:
        try:
            return await node(state)
        except ReqFlowError as e:
            logger.error(f"[{state.get('session_id', '-')}] autopilot stopped at {name}: {e.message}")
            return {"error": e.message, "failed_step": name}

    return run


def should_continue(state: PipelineState) -> Literal["continue", "stop"]:
    """Stop the graph once a node has failed."""
    return "stop" if state.get("error") else "continue"


# =============================================================================
# Public API
# =============================================================================

async def run_pipeline(
    machine: SessionStateMachine,
    user_idea: str,
    user_id: str,
    answers: Any = None,
    chosen_option: int | None = 0,
    finalize: bool = False,
) -> PipelineState:
    """Create a session and run every automated stage on it.

    Args:
        machine: State machine used for every step
        user_idea: The raw product idea
        user_id: Owner of the new session
        answers: Optional answers submitted after the clarifier
        chosen_option: Conflict option to pick (None leaves conflicts unresolved)
        finalize: Mark the session complete after prioritizing

    Returns:
        Final pipeline state; ``error`` is set when a step failed
    """
    graph = build_workflow(machine).compile()

    initial: PipelineState = {
        "user_idea": user_idea,
        "user_id": user_id,
        "answers": answers,
        "chosen_option": chosen_option,
        "finalize": finalize,
    }

    logger.info(f"Starting autopilot for user {user_id}")
    state: PipelineState = await graph.ainvoke(initial)
    logger.info(
        f"Autopilot for session {state.get('session_id', '-')} ended at "
        f"{state.get('status', 'not started')}"
    )
    return state
