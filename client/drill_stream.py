"""Resumable consumer for ``GET /api/drill/stream/{session_id}``.

Keeps one event stream open for a session and survives flaky networks:

- a fresh bearer token is fetched for every connection attempt; a failed
  fetch counts as a retryable network error
- 400/401/403/404 on open are terminal; anything else (network errors,
  5xx, an unexpected close) is retried with exponential backoff
  ``min(initial * 2 ** (n - 1), max)`` up to ``max_retry_attempts``, after
  which the consumer sits in ``failed`` until :meth:`manual_retry`
- a successful open resets the retry counter
- going to the background cancels the stream at once; coming back to the
  foreground reconnects immediately without backoff
- :meth:`close` is a normal shutdown, never reported as an error

Incoming ``delta`` text accumulates per message id in ``pending_messages``;
``complete`` moves it to ``completed_messages``.  Callback errors are logged
and never stop the stream.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

import httpx
from pydantic import ValidationError

from client.sse_parser import SSEParser, SSERecord
from config.settings import get_settings
from errors.exceptions import StreamTransportError
from models.sse_events import (
    CompleteEvent,
    DeltaEvent,
    PhaseCompleteBroadcast,
    parse_stream_event,
)

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[str]]
T = TypeVar("T")


class StreamState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass
class CompletedMessage:
    message_id: str
    content: str


class DrillStreamConsumer:
    """Async state machine around one session's event stream."""

    def __init__(
        self,
        base_url: str,
        session_id: str,
        token_provider: TokenProvider,
        *,
        http_client: httpx.AsyncClient | None = None,
        max_retry_attempts: int | None = None,
        initial_retry_delay_s: float | None = None,
        max_retry_delay_s: float | None = None,
        on_message_complete: Callable[[CompletedMessage], None] | None = None,
        on_phase_complete: Callable[[str], None] | None = None,
        on_state_change: Callable[[StreamState], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        settings = get_settings()
        self.url = f"{base_url.rstrip('/')}/api/drill/stream/{session_id}"
        self.session_id = session_id
        self._token_provider = token_provider
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient()
        self._timeout = httpx.Timeout(10.0, read=settings.sse_heartbeat_interval_s * 2.5)
        self.max_retry_attempts = max_retry_attempts or settings.stream_max_retry_attempts
        self.initial_retry_delay_s = initial_retry_delay_s or settings.stream_initial_retry_delay_s
        self.max_retry_delay_s = max_retry_delay_s or settings.stream_max_retry_delay_s
        self._on_message_complete = on_message_complete
        self._on_phase_complete = on_phase_complete
        self._on_state_change = on_state_change
        self._sleep = sleep

        self.state = StreamState.IDLE
        self.retry_count = 0
        self.connection_error: StreamTransportError | None = None
        self.pending_messages: dict[str, str] = {}
        self.completed_messages: list[CompletedMessage] = []
        self.completed_phases: list[str] = []
        self._completed_ids: set[str] = set()
        self._reconnect_on_foreground = False
        self._task: asyncio.Task[None] | None = None

    # ── Public API ───────────────────────────────────────────

    @property
    def is_reconnecting(self) -> bool:
        return self.state == StreamState.RECONNECTING

    @property
    def is_active(self) -> bool:
        return self._task is not None and not self._task.done()

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number *attempt* (1-based)."""
        return min(self.initial_retry_delay_s * 2 ** (attempt - 1), self.max_retry_delay_s)

    async def start(self) -> None:
        if self.state == StreamState.CLOSED:
            raise RuntimeError("Consumer is closed")
        if self.is_active:
            return
        self._launch()

    async def on_app_state_change(self, app_state: str) -> None:
        """React to the host app moving between ``active`` and background states."""
        if self.state == StreamState.CLOSED:
            return
        if app_state == "active":
            if self._reconnect_on_foreground:
                self._reconnect_on_foreground = False
                self.retry_count = 0
                logger.info("Foregrounded; reconnecting stream for %s", self.session_id)
                await self._cancel_task()
                self._launch()
            return

        if self.is_active:
            await self._cancel_task()
            self._reconnect_on_foreground = True
            self._set_state(StreamState.IDLE)
            logger.info("Backgrounded (%s); stream for %s cancelled", app_state, self.session_id)

    async def manual_retry(self) -> None:
        """User-triggered retry: skip any pending backoff and reconnect now."""
        if self.state == StreamState.CLOSED:
            return
        await self._cancel_task()
        self.retry_count = 0
        self.connection_error = None
        self._launch()

    async def close(self) -> None:
        """Tear down the stream and timers.  Not an error."""
        await self._cancel_task()
        self._reconnect_on_foreground = False
        self._set_state(StreamState.CLOSED)
        if self._owns_client:
            await self._http.aclose()

    async def wait(self) -> None:
        """Block until the connection loop stops (failed, closed or cancelled)."""
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

    # ── Connection loop ──────────────────────────────────────

    def _launch(self) -> None:
        self._task = asyncio.create_task(self._run())

    async def _cancel_task(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _run(self) -> None:
        while True:
            try:
                await self._connect_once()
                error = StreamTransportError("Stream closed by server")
            except StreamTransportError as exc:
                error = exc
            except (httpx.HTTPError, httpx.StreamError) as exc:
                error = StreamTransportError(f"Network error: {type(exc).__name__}: {exc}")

            if not error.retryable:
                self._fail(error)
                logger.error("Stream for %s failed terminally: %s", self.session_id, error)
                return

            self.retry_count += 1
            if self.retry_count > self.max_retry_attempts:
                self._fail(error)
                logger.error(
                    "Stream for %s lost after %d retries; waiting for manual retry: %s",
                    self.session_id, self.max_retry_attempts, error,
                )
                return

            delay = self.backoff_delay(self.retry_count)
            self._set_state(StreamState.RECONNECTING)
            logger.warning(
                "Stream for %s dropped (%s), retry %d/%d in %.1fs",
                self.session_id, error, self.retry_count, self.max_retry_attempts, delay,
            )
            await self._sleep(delay)

    async def _connect_once(self) -> None:
        self._set_state(StreamState.CONNECTING)
        try:
            token = await self._token_provider()
        except Exception as exc:
            raise StreamTransportError(f"Token fetch failed: {type(exc).__name__}: {exc}") from exc
        headers = {"Authorization": f"Bearer {token}", "Accept": "text/event-stream"}
        parser = SSEParser()

        async with self._http.stream("GET", self.url, headers=headers, timeout=self._timeout) as resp:
            if resp.status_code != 200:
                await resp.aread()
                raise StreamTransportError(
                    f"Stream open failed: HTTP {resp.status_code}",
                    http_status=resp.status_code,
                )
            self.retry_count = 0
            self.connection_error = None
            self._set_state(StreamState.STREAMING)
            async for chunk in resp.aiter_text():
                for record in parser.feed(chunk):
                    self._handle_record(record)

    def _fail(self, error: StreamTransportError) -> None:
        self.connection_error = error
        self._set_state(StreamState.FAILED)

    def _set_state(self, state: StreamState) -> None:
        if state == self.state:
            return
        self.state = state
        self._notify(self._on_state_change, state)

    def _notify(self, callback: Callable[[T], None] | None, arg: T) -> None:
        if callback is None:
            return
        try:
            callback(arg)
        except Exception:
            logger.exception("Stream callback %r failed for %s", callback, self.session_id)

    # ── Event handling ───────────────────────────────────────

    def _handle_record(self, record: SSERecord) -> None:
        try:
            event = parse_stream_event(record.data)
        except ValidationError:
            logger.warning("Ignoring unrecognised stream record: %.200s", record.data)
            return

        match event:
            case DeltaEvent(message_id=message_id, content=content):
                if message_id in self._completed_ids:
                    return
                self.pending_messages[message_id] = self.pending_messages.get(message_id, "") + content
            case CompleteEvent(message_id=message_id):
                if message_id in self._completed_ids:
                    return
                message = CompletedMessage(message_id, self.pending_messages.pop(message_id, ""))
                self._completed_ids.add(message_id)
                self.completed_messages.append(message)
                self._notify(self._on_message_complete, message)
            case PhaseCompleteBroadcast(phase_id=phase_id):
                if phase_id not in self.completed_phases:
                    self.completed_phases.append(phase_id)
                self._notify(self._on_phase_complete, phase_id)
