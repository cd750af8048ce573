"""FastAPI middleware: request id tracking (pure ASGI, streaming-safe)."""

from __future__ import annotations

import logging
import time
import uuid

from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger(__name__)


class RequestIdMiddleware:
    """Stamp ``X-Request-ID`` on every HTTP response and log the request.

    Pure ASGI (no BaseHTTPMiddleware) so event-stream responses are not
    buffered.  A client-supplied id is reused; otherwise a short one is
    generated and stored in ``scope["state"]["request_id"]``.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        request_id = headers.get(b"x-request-id", b"").decode() or uuid.uuid4().hex[:8]
        scope.setdefault("state", {})
        scope["state"]["request_id"] = request_id
        started = time.monotonic()
        status_holder: dict[str, int] = {}

        async def send_with_request_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                status_holder["status"] = message["status"]
                response_headers = list(message.get("headers", []))
                response_headers.append((b"x-request-id", request_id.encode()))
                message["headers"] = response_headers
            await send(message)

        try:
            await self.app(scope, receive, send_with_request_id)
        finally:
            logger.debug(
                "%s %s -> %s in %.1fms [%s]",
                scope.get("method"),
                scope.get("path"),
                status_holder.get("status", "-"),
                (time.monotonic() - started) * 1000,
                request_id,
            )
