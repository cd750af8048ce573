"""Server-sent events encoder for the drill event stream.

Relays broadcast payloads (``delta`` / ``complete`` / ``phase-complete``)
to one client as SSE records::

    data: {"type":"delta","messageId":"...","content":"..."}\\n\\n

A comment record (``: heartbeat``) goes out whenever the connection has been
idle for the heartbeat interval so proxies keep it open.  Clients must
ignore comment records.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator, Awaitable, Callable

from pydantic import ValidationError

from models.sse_events import parse_stream_event
from services.broadcast import Subscription

logger = logging.getLogger(__name__)

# Upper bound on how long the loop waits before re-checking disconnect/shutdown.
_POLL_INTERVAL_S = 1.0


class DrillStreamEncoder:
    """Encode stream events as SSE text.  Every method returns a ready-to-yield string."""

    @staticmethod
    def _sse(data: str) -> str:
        lines = data.splitlines() or [""]
        return "".join(f"data: {line}\n" for line in lines) + "\n"

    def event(self, payload: str) -> str:
        return self._sse(payload)

    def heartbeat(self) -> str:
        return ": heartbeat\n\n"

    def opened(self) -> str:
        return ": connected\n\n"


class StreamRegistry:
    """Tracks open event streams so shutdown can end all of them."""

    def __init__(self) -> None:
        self._shutdown = asyncio.Event()
        self._open: set[Subscription] = set()

    @property
    def shutting_down(self) -> bool:
        return self._shutdown.is_set()

    @property
    def open_count(self) -> int:
        return len(self._open)

    def add(self, subscription: Subscription) -> None:
        self._open.add(subscription)

    def discard(self, subscription: Subscription) -> None:
        self._open.discard(subscription)

    async def close_all(self) -> None:
        self._shutdown.set()
        for sub in list(self._open):
            await sub.close()
        if self._open:
            logger.info("Closed %d open drill streams on shutdown", len(self._open))
        self._open.clear()


async def drill_event_stream(
    subscription: Subscription,
    *,
    heartbeat_interval_s: float,
    registry: StreamRegistry | None = None,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
) -> AsyncIterator[str]:
    """Yield SSE records from *subscription* until disconnect or shutdown.

    The subscription is always closed on exit, however the generator ends.
    """
    enc = DrillStreamEncoder()
    loop = asyncio.get_running_loop()
    if registry is not None:
        registry.add(subscription)
    last_sent = loop.time()
    relayed = 0
    try:
        yield enc.opened()
        while not (registry is not None and registry.shutting_down):
            idle = loop.time() - last_sent
            wait = max(0.0, min(heartbeat_interval_s - idle, _POLL_INTERVAL_S))
            payload = await subscription.get(timeout=wait)

            if payload is None:
                if subscription.closed:
                    break
                if is_disconnected is not None and await is_disconnected():
                    break
                if loop.time() - last_sent >= heartbeat_interval_s:
                    logger.debug("Heartbeat on %s", subscription.channel)
                    yield enc.heartbeat()
                    last_sent = loop.time()
                continue

            try:
                parse_stream_event(payload)
            except ValidationError:
                logger.warning("Dropping malformed payload on %s: %.200s", subscription.channel, payload)
                continue
            yield enc.event(payload)
            relayed += 1
            last_sent = loop.time()
    finally:
        if registry is not None:
            registry.discard(subscription)
        await subscription.close()
        logger.info(json.dumps({
            "event": "stream_closed",
            "channel": subscription.channel,
            "relayed": relayed,
        }))


# ── Module-level Singleton ───────────────────────────────────

_registry: StreamRegistry | None = None


def get_stream_registry() -> StreamRegistry:
    global _registry
    if _registry is None:
        _registry = StreamRegistry()
    return _registry


def reset_stream_registry() -> None:
    """Start accepting streams again (app startup, tests)."""
    global _registry
    _registry = None
