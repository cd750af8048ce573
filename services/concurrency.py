"""Per-worker concurrency controls for model calls and SSE connections.

Model calls share one asyncio.Semaphore so a burst of drill turns cannot
exceed provider rate limits.  Event-stream endpoints are capped by a pure
ASGI middleware (not BaseHTTPMiddleware) so streaming is left intact.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import AsyncIterator

from starlette.types import ASGIApp, Receive, Scope, Send

from config.settings import get_settings

logger = logging.getLogger(__name__)

# ── Model call semaphore ─────────────────────────────────────

_llm_semaphore: asyncio.Semaphore | None = None


def _get_llm_semaphore() -> asyncio.Semaphore:
    """Lazy-init so the semaphore binds to the running event loop."""
    global _llm_semaphore
    if _llm_semaphore is None:
        limit = get_settings().max_concurrent_llm
        _llm_semaphore = asyncio.Semaphore(limit)
        logger.info("LLM concurrency semaphore initialized (max=%d)", limit)
    return _llm_semaphore


@contextlib.asynccontextmanager
async def llm_slot() -> AsyncIterator[None]:
    """Hold one model-call slot for the duration of the block.

    Usage::

        async with llm_slot():
            result = await agent.run(prompt, model=model)
    """
    async with _get_llm_semaphore():
        yield


# ── Stream endpoint limiter (pure ASGI) ──────────────────────
# Connections over the limit receive 503 instead of queuing forever.

STREAM_PATH_PREFIX = "/api/drill/stream/"

_stream_semaphore: asyncio.Semaphore | None = None


def _get_stream_semaphore() -> asyncio.Semaphore:
    global _stream_semaphore
    if _stream_semaphore is None:
        limit = get_settings().max_concurrent_streams
        _stream_semaphore = asyncio.Semaphore(limit)
        logger.info("Stream connection semaphore initialized (max=%d)", limit)
    return _stream_semaphore


def reset_concurrency_limits() -> None:
    """Drop both semaphores (tests, or after a settings change)."""
    global _llm_semaphore, _stream_semaphore
    _llm_semaphore = None
    _stream_semaphore = None


class ConcurrencyLimitMiddleware:
    """Reject new event-stream connections when the worker is at capacity.

    Returns HTTP 503 with a Retry-After header; other paths pass through.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not scope.get("path", "").startswith(STREAM_PATH_PREFIX):
            await self.app(scope, receive, send)
            return

        sem = _get_stream_semaphore()
        if sem.locked():
            logger.warning("Stream limit reached for %s; returning 503", scope.get("path"))
            body = json.dumps(
                {"code": "SERVER_BUSY", "detail": "Too many open streams. Please retry."}
            ).encode()
            await send({
                "type": "http.response.start",
                "status": 503,
                "headers": [
                    (b"content-type", b"application/json"),
                    (b"retry-after", b"5"),
                ],
            })
            await send({"type": "http.response.body", "body": body})
            return

        async with sem:
            await self.app(scope, receive, send)
