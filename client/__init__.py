"""Client-side helpers for consuming the drill event stream."""

from __future__ import annotations

from client.drill_stream import CompletedMessage, DrillStreamConsumer, StreamState  # noqa: F401
from client.sse_parser import SSEParser, SSERecord  # noqa: F401
