"""Delta publisher: batch streamed tokens into rate-limited broadcast events.

Model tokens arrive far faster than the broadcast channel's message ceiling,
so text is buffered and flushed on a fixed timer.  Each flush publishes one
``delta`` event; message boundaries flush whatever is pending and then
publish ``complete``.  Phase completions bypass the buffer.

All publishes go through one lock, so events for a message reach the channel
in the order they were produced.

Usage::

    async with DeltaPublisher(hub, session_id) as publisher:
        await publisher.push(message_id, token)
        ...
        await publisher.complete(message_id)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

from models.sse_events import CompleteEvent, DeltaEvent, PhaseCompleteBroadcast
from services.broadcast import BroadcastHub, session_channel

logger = logging.getLogger(__name__)


class DeltaPublisher:
    """Buffered publisher for one session's channel."""

    def __init__(
        self,
        hub: BroadcastHub,
        session_id: str,
        flush_interval_ms: int | None = None,
    ) -> None:
        if flush_interval_ms is None:
            from config.settings import get_settings

            flush_interval_ms = get_settings().delta_flush_interval_ms
        if flush_interval_ms <= 0:
            raise ValueError("flush_interval_ms must be positive")
        self._hub = hub
        self.channel = session_channel(session_id)
        self._interval = flush_interval_ms / 1000
        self._buffer: list[str] = []
        self._buffer_message_id: str | None = None
        self._lock = asyncio.Lock()
        self._timer: asyncio.Task[None] | None = None
        self.delta_count = 0
        self.event_count = 0

    # ── Lifecycle ────────────────────────────────────────────

    async def __aenter__(self) -> DeltaPublisher:
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def start(self) -> None:
        if self._timer is None:
            self._timer = asyncio.create_task(self._run_timer())

    async def aclose(self) -> None:
        """Stop the timer and flush anything still buffered."""
        if self._timer is not None:
            self._timer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._timer
            self._timer = None
        await self.flush()

    async def _run_timer(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.flush()
            except Exception:
                logger.exception("Timed delta flush failed on %s", self.channel)

    # ── Events ───────────────────────────────────────────────

    async def push(self, message_id: str, text: str) -> None:
        """Buffer *text* for *message_id*; published on the next flush."""
        if not text:
            return
        if self._buffer_message_id is not None and self._buffer_message_id != message_id:
            await self.flush()
        self._buffer_message_id = message_id
        self._buffer.append(text)

    async def flush(self) -> None:
        """Publish the pending buffer as one ``delta``.  No-op when empty."""
        async with self._lock:
            await self._flush_locked()

    async def complete(self, message_id: str) -> None:
        """Flush pending text, then publish ``complete`` for *message_id*."""
        async with self._lock:
            await self._flush_locked()
            await self._publish(CompleteEvent(message_id=message_id))

    async def phase_complete(self, phase_id: str) -> None:
        """Publish ``phase-complete`` right away (never batched)."""
        async with self._lock:
            await self._publish(PhaseCompleteBroadcast(phase_id=phase_id))

    async def _flush_locked(self) -> None:
        if not self._buffer:
            return
        count = len(self._buffer)
        content = "".join(self._buffer[:count])
        await self._publish(DeltaEvent(message_id=self._buffer_message_id, content=content))
        # Dropped only once published; a failed publish leaves the text for the next flush.
        del self._buffer[:count]
        if not self._buffer:
            self._buffer_message_id = None
        self.delta_count += 1

    async def _publish(self, event: DeltaEvent | CompleteEvent | PhaseCompleteBroadcast) -> None:
        await self._hub.publish(self.channel, event)
        self.event_count += 1
