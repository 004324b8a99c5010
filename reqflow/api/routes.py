"""FastAPI routes for the ReqFlow API.

Endpoints:
- POST /session/start                      - Start a session for a user
- GET  /session/{id}                       - Raw session view
- GET  /session/{id}/blueprint             - Final blueprint (prioritized sessions)
- POST /session/{id}/finalize              - Mark a prioritized session complete
- GET  /summarize/{id}                     - Summary of whatever exists so far
- POST /agents/clarifier/start             - Run the clarifier
- POST /agents/clarifier/submit-answers    - Store the user's answers
- GET  /agents/conflict-resolver           - Run the conflict resolver (POST accepted too)
- POST /agents/conflict-resolver/resolve   - Record the chosen option
- POST /agents/validator                   - Run the validator
- POST /agents/prioritizer                 - Run the prioritizer

Users:
- POST /users                              - Register a user
- GET  /users/{id}                         - Look up a user
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Body, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reqflow.config import get_settings
from reqflow.errors import ValidationError
from reqflow.database.session import get_session_maker
from reqflow.database.repository import SessionRepository, UserRepository, parse_id
from reqflow.schemas import (
    BlueprintView,
    ClarifierResponse,
    ConflictResponse,
    ErrorResponse,
    PrioritizerResponse,
    ResolveConflictRequest,
    SessionAck,
    SessionRef,
    SessionStartRequest,
    SessionStartResponse,
    SessionSummary,
    SessionView,
    SubmitAnswersRequest,
    UserCreateRequest,
    UserCreateResponse,
    UserResponse,
    ValidatorResponse,
)
from reqflow.agent.compiler import build_blueprint, build_summary, session_view
from reqflow.agent.invoker import AgentInvoker, get_invoker
from reqflow.agent.machine import SessionStateMachine


logger = logging.getLogger(__name__)
router = APIRouter()

settings = get_settings()

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


# =============================================================================
# Dependencies
# =============================================================================

def get_sessions(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
) -> SessionRepository:
    return SessionRepository(session_maker)


def get_users(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
) -> UserRepository:
    return UserRepository(session_maker)


def get_machine(
    sessions: SessionRepository = Depends(get_sessions),
    users: UserRepository = Depends(get_users),
    invoker: AgentInvoker = Depends(get_invoker),
) -> SessionStateMachine:
    return SessionStateMachine(sessions, users, invoker)


# =============================================================================
# Health Check
# =============================================================================

@router.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {
        "status": "ok",
        "version": settings.app_version,
        "environment": settings.environment,
    }


@router.get("/info")
async def info(request: Request) -> dict:
    """List every available endpoint."""
    routes = [
        {
            "endpoint": f"{method.upper()} {path}",
            "description": (operation.get("description") or operation.get("summary", "")).split("\n")[0],
        }
        for path, operations in request.app.openapi()["paths"].items()
        for method, operation in sorted(operations.items())
    ]
    return {
        "api": {
            "name": settings.app_name,
            "version": settings.app_version,
            "description": "Turns a raw product idea into a prioritized blueprint, one agent stage at a time.",
        },
        "routes": routes,
    }


# =============================================================================
# Session Endpoints
# =============================================================================

@router.post(
    "/session/start",
    response_model=SessionStartResponse,
    status_code=201,
    responses=ERROR_RESPONSES,
)
async def start_session(
    request: SessionStartRequest,
    machine: SessionStateMachine = Depends(get_machine),
) -> SessionStartResponse:
    """Start a new requirement-gathering session."""
    document = await machine.start_session(request.user_idea, request.user_id)
    return SessionStartResponse(
        session_id=document.id,
        status=document.status,
        message="Session created. Next: run clarifier agent.",
    )


@router.get("/session/{session_id}", response_model=SessionView, responses=ERROR_RESPONSES)
async def get_session(
    session_id: str,
    machine: SessionStateMachine = Depends(get_machine),
) -> SessionView:
    """Get every stored field of a session."""
    return session_view(await machine.get_session(session_id))


@router.get("/session/{session_id}/blueprint", response_model=BlueprintView, responses=ERROR_RESPONSES)
async def get_blueprint(
    session_id: str,
    machine: SessionStateMachine = Depends(get_machine),
) -> BlueprintView:
    """Get the final project blueprint of a prioritized session."""
    return build_blueprint(await machine.get_session(session_id))


@router.post("/session/{session_id}/finalize", response_model=SessionAck, responses=ERROR_RESPONSES)
async def finalize_session(
    session_id: str,
    machine: SessionStateMachine = Depends(get_machine),
) -> SessionAck:
    """Mark a prioritized session complete."""
    document = await machine.finalize(session_id)
    return SessionAck(session_id=document.id, status=document.status)


@router.get("/summarize/{session_id}", response_model=SessionSummary, responses=ERROR_RESPONSES)
async def summarize_session(
    session_id: str,
    machine: SessionStateMachine = Depends(get_machine),
) -> SessionSummary:
    """Summarize a session at any stage."""
    return build_summary(await machine.get_session(session_id))


# =============================================================================
# Agent Endpoints
# =============================================================================

@router.post("/agents/clarifier/start", response_model=ClarifierResponse, responses=ERROR_RESPONSES)
async def start_clarifier(
    request: SessionRef,
    machine: SessionStateMachine = Depends(get_machine),
) -> ClarifierResponse:
    """Run the clarifier agent on the session's idea."""
    document, output = await machine.run_clarifier(request.session_id)
    return ClarifierResponse(session_id=document.id, questions=output.questions)


@router.post("/agents/clarifier/submit-answers", response_model=SessionAck, responses=ERROR_RESPONSES)
async def submit_clarifier_answers(
    request: SubmitAnswersRequest,
    machine: SessionStateMachine = Depends(get_machine),
) -> SessionAck:
    """Store the user's answers to the clarifying questions."""
    document = await machine.submit_answers(request.session_id, request.user_answers)
    return SessionAck(session_id=document.id, status=document.status)


@router.get(
    "/agents/conflict-resolver",
    response_model=ConflictResponse,
    responses=ERROR_RESPONSES,
    operation_id="run_conflict_resolver_get",
)
@router.post(
    "/agents/conflict-resolver",
    response_model=ConflictResponse,
    responses=ERROR_RESPONSES,
    operation_id="run_conflict_resolver_post",
)
async def run_conflict_resolver(
    body: SessionRef | None = Body(default=None),
    session_id: str | None = Query(default=None, alias="sessionId"),
    machine: SessionStateMachine = Depends(get_machine),
) -> ConflictResponse:
    """Analyze the draft requirements for contradictions.

    The session id is read from the JSON body, or from ``?sessionId=``.
    """
    target = body.session_id if body is not None else session_id
    if not target:
        raise ValidationError("Session ID is required.")
    document, output = await machine.run_conflict_resolver(target)
    return ConflictResponse(session_id=document.id, conflicts=output.conflicts)


@router.post("/agents/conflict-resolver/resolve", response_model=SessionAck, responses=ERROR_RESPONSES)
async def resolve_conflict(
    request: ResolveConflictRequest,
    machine: SessionStateMachine = Depends(get_machine),
) -> SessionAck:
    """Record which option resolves the conflicts."""
    document = await machine.resolve_conflict(request.session_id, request.chosen_option_index)
    return SessionAck(session_id=document.id, status=document.status)


@router.post("/agents/validator", response_model=ValidatorResponse, responses=ERROR_RESPONSES)
async def run_validator(
    request: SessionRef,
    machine: SessionStateMachine = Depends(get_machine),
) -> ValidatorResponse:
    """Check the feasibility of the requirements."""
    document, output = await machine.run_validator(request.session_id)
    return ValidatorResponse(session_id=document.id, validator_output=output)


@router.post("/agents/prioritizer", response_model=PrioritizerResponse, responses=ERROR_RESPONSES)
async def run_prioritizer(
    request: SessionRef,
    machine: SessionStateMachine = Depends(get_machine),
) -> PrioritizerResponse:
    """Organize the requirements into a prioritized roadmap."""
    document, output = await machine.run_prioritizer(request.session_id)
    return PrioritizerResponse(session_id=document.id, final_output=output)


# =============================================================================
# User Endpoints
# =============================================================================

@router.post(
    "/users",
    response_model=UserCreateResponse,
    status_code=201,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def create_user(
    request: UserCreateRequest,
    users: UserRepository = Depends(get_users),
) -> UserCreateResponse:
    """Register a new user."""
    user = await users.create(request.username, request.email)
    logger.info(f"Created user {user.id}")
    return UserCreateResponse(user_id=user.id)


@router.get("/users/{user_id}", response_model=UserResponse, responses=ERROR_RESPONSES)
async def get_user(
    user_id: str,
    users: UserRepository = Depends(get_users),
) -> UserResponse:
    """Get a user by id."""
    user = await users.get(parse_id(user_id, "User"))
    return UserResponse(
        user_id=user.id,
        username=user.username,
        email=user.email,
        created_at=user.created_at,
    )
