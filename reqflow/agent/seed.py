"""Demo data for local development.

Creates three users and one session per user at different points of the
flow, so the API and the digest views have something to show right away.
Every session is driven through the state machine, so the stored outputs
are exactly what the stages would have produced.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from reqflow.errors import ReqFlowError
from reqflow.agent.machine import SessionStateMachine
from reqflow.agent.workflow import run_pipeline
from reqflow.schemas import SessionStatus


logger = logging.getLogger(__name__)


DEMO_USERS = (
    ("user1", "user1@example.com"),
    ("testuser", "testuser@example.com"),
    ("devuser", "devuser@example.com"),
)


@dataclass
class SeededSession:
    username: str
    user_id: str
    session_id: str
    status: SessionStatus


async def seed_demo_data(machine: SessionStateMachine) -> list[SeededSession]:
    """Create the demo users and their sessions; the tables should be empty."""
    user_ids = {}
    for username, email in DEMO_USERS:
        user = await machine.users.create(username, email)
        user_ids[username] = user.id
    logger.info(f"Created {len(user_ids)} demo users")

    seeded = []

    # user1: every stage, finalized
    state = await run_pipeline(
        machine,
        "A mobile app for finding hiking trails",
        user_ids["user1"],
        answers={"q1": "Hikers of every level", "q2": "Offline trail maps"},
        finalize=True,
    )
    if state.get("error"):
        raise ReqFlowError(f"Seeding stopped at {state.get('failed_step')}: {state['error']}")
    seeded.append(_seeded("user1", user_ids, state["session_id"], state["status"]))

    # testuser: just started
    document = await machine.start_session("A social media platform for pet owners", user_ids["testuser"])
    seeded.append(_seeded("testuser", user_ids, document.id, document.status))

    # devuser: clarified and answered, waiting on conflict detection
    document = await machine.start_session("A budgeting app for students", user_ids["devuser"])
    await machine.run_clarifier(document.id)
    document = await machine.submit_answers(
        document.id,
        {"q1": "University students", "q2": "Track spending against a monthly allowance"},
    )
    seeded.append(_seeded("devuser", user_ids, document.id, document.status))

    for entry in seeded:
        logger.info(f"[{entry.session_id}] {entry.username}: {entry.status.value}")
    return seeded


def _seeded(username: str, user_ids: dict[str, str], session_id: str, status) -> SeededSession:
    return SeededSession(
        username=username,
        user_id=user_ids[username],
        session_id=session_id,
        status=SessionStatus(status),
    )
