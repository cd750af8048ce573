"""Drill session API: create, message, finish, and read back sessions.

Every endpoint resolves the caller from the bearer token and checks that the
caller owns the session or topic.  Mutations that involve the model return
immediately; the work runs as a durable workflow and its output arrives on
``GET /api/drill/stream/{session_id}``.

Endpoints:
- ``POST /api/drill/sessions``: create, starts plan generation
- ``GET  /api/drill/sessions/{id}``: full session (without transcript)
- ``POST /api/drill/sessions/{id}/messages``: send a student turn
- ``POST /api/drill/sessions/{id}/finish``: end the chat, starts summarization
- ``GET  /api/drill/sessions/{id}/results``: status, plan and completion data
- ``GET  /api/drill/topics/{topic_id}/recent-sessions``: last completed sessions
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from errors.exceptions import InvalidRequestError
from models.drill import (
    DrillSession,
    PriorSessionFocus,
    SessionStatus,
    generate_event_id,
    utcnow,
)
from models.request import (
    CreateSessionRequest,
    CreateSessionResponse,
    FinishSessionResponse,
    RecentSessionsResponse,
    SendMessageRequest,
    SendMessageResponse,
    SessionResultsResponse,
)
from services.auth import get_verified_user_id
from services.session_store import get_session_store, get_topic_store
from workflows import (
    DrillMessageInput,
    reply_in_flight,
    start_drill_message,
    start_drill_plan,
    start_drill_summary,
)
from workflows.drill_message import record_user_turn

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/drill", tags=["drill"])

# Transcript internals stay server-side.
_SESSION_EXCLUDE = {"session_data": {"model_messages", "transcript_turn_ids"}}


def _results(session: DrillSession) -> SessionResultsResponse:
    return SessionResultsResponse(
        session_id=session.id,
        status=session.status,
        drill_plan=session.drill_plan,
        completion_data=session.completion_data,
        chat_completed_at=session.chat_completed_at,
    )


@router.post("/sessions", response_model=CreateSessionResponse)
async def create_session(
    req: CreateSessionRequest,
    user_id: str = Depends(get_verified_user_id),
) -> CreateSessionResponse:
    """Create a session in ``preparing`` and start plan generation."""
    await get_topic_store().require(req.topic_id, user_id)
    if isinstance(req.focus_selection, PriorSessionFocus):
        await get_session_store().require(req.focus_selection.source_session_id, user_id)

    session = DrillSession(
        topic_id=req.topic_id,
        owner_id=user_id,
        focus_selection=req.focus_selection,
    )
    await get_session_store().save(session)
    start_drill_plan(session.id, user_id)

    logger.info(
        "Created drill session %s (topic=%s, focus=%s)",
        session.id, req.topic_id, req.focus_selection.focus_type,
    )
    return CreateSessionResponse(session_id=session.id)


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, user_id: str = Depends(get_verified_user_id)) -> dict:
    session = await get_session_store().require(session_id, user_id)
    return session.model_dump(mode="json", exclude=_SESSION_EXCLUDE)


@router.post("/sessions/{session_id}/messages", response_model=SendMessageResponse)
async def send_message(
    session_id: str,
    req: SendMessageRequest,
    user_id: str = Depends(get_verified_user_id),
) -> SendMessageResponse:
    """Record the student turn; the tutor reply streams in the background."""
    session = await get_session_store().require(session_id, user_id)
    if session.status != SessionStatus.READY:
        raise InvalidRequestError(
            f"Session {session_id} is '{session.status.value}', not accepting messages"
        )

    # Checked and claimed with no await in between, so two sends cannot both pass.
    if reply_in_flight(session_id):
        raise InvalidRequestError(
            "The tutor is still replying; send the next message once it finishes"
        )

    message_id = generate_event_id()
    start_drill_message(DrillMessageInput(
        session_id=session_id,
        owner_id=user_id,
        turn_message_id=message_id,
        user_message=req.message,
    ))
    # Visible in the log right away; the workflow's own record step is then a no-op.
    await record_user_turn(session_id, message_id, req.message)
    return SendMessageResponse(message_id=message_id)


@router.post("/sessions/{session_id}/finish", response_model=FinishSessionResponse)
async def finish_session(
    session_id: str,
    user_id: str = Depends(get_verified_user_id),
) -> FinishSessionResponse:
    """Close the chat and start summarization.  Repeating the call is harmless."""
    store = get_session_store()
    session = await store.require(session_id, user_id)
    if session.status == SessionStatus.PREPARING:
        raise InvalidRequestError(f"Session {session_id} has not started yet")

    def apply(s: DrillSession) -> None:
        if s.status == SessionStatus.READY:
            s.advance_status(SessionStatus.CHAT_COMPLETED)
            s.chat_completed_at = utcnow()

    if session.status == SessionStatus.READY:
        session = await store.mutate(session_id, apply)
        await get_topic_store().touch_last_practiced(session.topic_id)

    if session.completion_data is None:
        start_drill_summary(session_id, user_id)
    return FinishSessionResponse(success=True)


@router.get("/sessions/{session_id}/results", response_model=SessionResultsResponse)
async def get_results(
    session_id: str,
    user_id: str = Depends(get_verified_user_id),
) -> SessionResultsResponse:
    session = await get_session_store().require(session_id, user_id)
    return _results(session)


@router.get("/topics/{topic_id}/recent-sessions", response_model=RecentSessionsResponse)
async def recent_sessions(
    topic_id: str,
    user_id: str = Depends(get_verified_user_id),
) -> RecentSessionsResponse:
    """Most recent completed sessions; feeds the prior-session focus option."""
    await get_topic_store().require(topic_id, user_id)
    sessions = await get_session_store().recent_completed(topic_id, user_id, limit=3)
    return RecentSessionsResponse(sessions=[_results(s) for s in sessions])
