"""Drill event stream: ``GET /api/drill/stream/{session_id}`` (text/event-stream).

Relays the session's broadcast channel to one client.  The connection stays
open until the client disconnects or the app shuts down; a heartbeat comment
is sent every ``sse_heartbeat_interval_s`` of idle time.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from starlette.responses import StreamingResponse

from config.settings import get_settings
from services.auth import get_verified_user_id
from services.broadcast import get_broadcast_hub, session_channel
from services.datastream import drill_event_stream, get_stream_registry
from services.session_store import get_session_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/drill", tags=["drill-stream"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.get("/stream/{session_id}")
async def drill_stream(
    session_id: str,
    request: Request,
    user_id: str = Depends(get_verified_user_id),
) -> StreamingResponse:
    """Subscribe the caller to a session's live events.

    Ownership is checked before subscribing, so a 403/404 is a plain JSON
    error response the client treats as terminal.
    """
    await get_session_store().require(session_id, user_id)

    subscription = await get_broadcast_hub().subscribe(session_channel(session_id))
    logger.info("Stream opened for session %s by %s", session_id, user_id)
    return StreamingResponse(
        drill_event_stream(
            subscription,
            heartbeat_interval_s=get_settings().sse_heartbeat_interval_s,
            registry=get_stream_registry(),
            is_disconnected=request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
