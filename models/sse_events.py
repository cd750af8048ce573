"""Broadcast event payload models for drill chat streaming.

Three event types travel on the per-session channel and out through SSE:

- ``delta``:          Incremental assistant text for one message.
- ``complete``:       A message is finished; no more deltas for that id.
- ``phase-complete``: The tutor marked a plan phase complete.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import Field, TypeAdapter

from models.base import CamelModel


class DeltaEvent(CamelModel):
    """A batch of text appended to ``message_id``."""

    type: Literal["delta"] = "delta"
    message_id: str
    content: str


class CompleteEvent(CamelModel):
    """Terminates ``message_id``; always follows its last delta."""

    type: Literal["complete"] = "complete"
    message_id: str


class PhaseCompleteBroadcast(CamelModel):
    """Published immediately (never batched) when a phase flips to complete."""

    type: Literal["phase-complete"] = "phase-complete"
    phase_id: str


DrillStreamEvent = Annotated[
    Union[DeltaEvent, CompleteEvent, PhaseCompleteBroadcast],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter[DrillStreamEvent] = TypeAdapter(DrillStreamEvent)


def parse_stream_event(payload: str | bytes | dict) -> DeltaEvent | CompleteEvent | PhaseCompleteBroadcast:
    """Validate a JSON string or dict against the event union."""
    if isinstance(payload, dict):
        return _event_adapter.validate_python(payload)
    return _event_adapter.validate_json(payload)
