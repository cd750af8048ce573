"""Drill session data model: sessions, plans, and the chat event log.

``DrillSession`` is the single persisted record shared by the plan generator,
the conversation step engine and the summarizer.  Mutation helpers on the
model enforce the record's invariants:

- the chat event log is append-only and event ids are unique,
- phase progress only moves ``incomplete → complete``,
- session status only moves forward
  (``preparing → ready → chat-completed → completed``).

``model_messages`` holds the raw PydanticAI transcript (JSON form) so the
exact model context, tool calls and tool returns included, can be rebuilt.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import Field, field_validator, model_validator
from pydantic_ai.messages import ModelMessage, ModelMessagesTypeAdapter
from pydantic_core import to_jsonable_python

from errors.exceptions import InvalidRequestError
from models.base import CamelModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_session_id() -> str:
    """Generate a new drill session ID."""
    return f"drill-{uuid.uuid4().hex[:12]}"


def generate_event_id() -> str:
    """Generate a chat event / message ID (also used as broadcast ``messageId``)."""
    return str(uuid.uuid4())


# ── Status ───────────────────────────────────────────────────


class SessionStatus(str, Enum):
    PREPARING = "preparing"
    READY = "ready"
    CHAT_COMPLETED = "chat-completed"
    COMPLETED = "completed"


_STATUS_ORDER = [
    SessionStatus.PREPARING,
    SessionStatus.READY,
    SessionStatus.CHAT_COMPLETED,
    SessionStatus.COMPLETED,
]


# ── Focus Selection (tagged variant) ─────────────────────────


class NoFocus(CamelModel):
    """Cover the whole topic."""

    focus_type: Literal["none"] = "none"


class CustomFocus(CamelModel):
    """Student-written focus area."""

    focus_type: Literal["custom"] = "custom"
    value: str = Field(min_length=1, max_length=500)

    @field_validator("value")
    @classmethod
    def _strip(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("custom focus must not be blank")
        return v


class PriorSessionFocus(CamelModel):
    """Focus areas suggested by an earlier session's summary."""

    focus_type: Literal["previous-focus-areas"] = "previous-focus-areas"
    source_session_id: str
    focus_areas: list[str] = Field(min_length=1, max_length=10)


FocusSelection = Annotated[
    Union[NoFocus, CustomFocus, PriorSessionFocus],
    Field(discriminator="focus_type"),
]


# ── Drill Plan ───────────────────────────────────────────────


class PhaseStatus(str, Enum):
    INCOMPLETE = "incomplete"
    COMPLETE = "complete"


class DrillPhase(CamelModel):
    id: str
    title: str


class PhaseProgress(CamelModel):
    status: PhaseStatus = PhaseStatus.INCOMPLETE


class DrillPlan(CamelModel):
    """Ordered phases plus a per-phase progress map.

    Persisted as ``{phases: [{id, title}], planProgress: {id: {status}}}``.
    The phase list is fixed once stored; only ``plan_progress`` changes.
    """

    phases: list[DrillPhase] = Field(default_factory=list)
    plan_progress: dict[str, PhaseProgress] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_progress(self) -> DrillPlan:
        ids = [p.id for p in self.phases]
        if len(ids) != len(set(ids)):
            raise ValueError(f"phase ids must be unique: {ids}")
        for phase_id in ids:
            self.plan_progress.setdefault(phase_id, PhaseProgress())
        unknown = set(self.plan_progress) - set(ids)
        if unknown:
            raise ValueError(f"progress for unknown phases: {sorted(unknown)}")
        return self

    @classmethod
    def from_phases(cls, phases: list[DrillPhase]) -> DrillPlan:
        """New plan with every phase ``incomplete``."""
        return cls(
            phases=phases,
            plan_progress={p.id: PhaseProgress() for p in phases},
        )

    def has_phase(self, phase_id: str) -> bool:
        return phase_id in self.plan_progress

    def status_of(self, phase_id: str) -> PhaseStatus:
        return self.plan_progress[phase_id].status

    def current_phase(self) -> DrillPhase | None:
        """Earliest phase not yet complete, or None when all are done."""
        for phase in self.phases:
            if self.status_of(phase.id) != PhaseStatus.COMPLETE:
                return phase
        return None

    def mark_complete(self, phase_id: str) -> bool:
        """Flip a phase to complete.  Returns False if it already was."""
        if not self.has_phase(phase_id):
            raise KeyError(phase_id)
        if self.status_of(phase_id) == PhaseStatus.COMPLETE:
            return False
        self.plan_progress[phase_id] = PhaseProgress(status=PhaseStatus.COMPLETE)
        return True

    def merge_progress(self, other: DrillPlan) -> None:
        """Absorb completions recorded on another copy of this plan."""
        for phase_id, progress in other.plan_progress.items():
            if progress.status == PhaseStatus.COMPLETE and self.has_phase(phase_id):
                self.mark_complete(phase_id)


# ── Chat Event Log (tagged union) ────────────────────────────


class ChatMessageData(CamelModel):
    role: Literal["user", "assistant"]
    content: str


class ChatMessageEvent(CamelModel):
    event_type: Literal["chat-message"] = "chat-message"
    id: str
    event_data: ChatMessageData


class PhaseCompleteData(CamelModel):
    phase_id: str


class PhaseCompleteEvent(CamelModel):
    event_type: Literal["phase-complete"] = "phase-complete"
    id: str
    event_data: PhaseCompleteData


ChatEvent = Annotated[
    Union[ChatMessageEvent, PhaseCompleteEvent],
    Field(discriminator="event_type"),
]


class SessionData(CamelModel):
    chat_events: list[ChatEvent] = Field(default_factory=list)
    # JSON form of list[ModelMessage]; see load_model_messages()
    model_messages: list[dict[str, Any]] = Field(default_factory=list)
    # Turn ids whose transcript entries are already in model_messages
    transcript_turn_ids: list[str] = Field(default_factory=list)


# ── Completion ───────────────────────────────────────────────


class PhaseRating(CamelModel):
    phase_id: str
    rating: Literal["strong", "so-so", "weak", "incomplete"]


class CompletionData(CamelModel):
    """Summary produced once the chat is finished."""

    phases_ratings: list[PhaseRating]
    next_focus_areas: list[str] = Field(min_length=2, max_length=3)


# ── Topic ────────────────────────────────────────────────────


class Topic(CamelModel):
    """Learning material owned by a user.  Created and edited elsewhere."""

    id: str
    owner_id: str
    title: str
    content: str
    last_practiced_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)


# ── Session ──────────────────────────────────────────────────


class DrillSession(CamelModel):
    """One tutoring conversation tied to a topic and (once ready) a plan."""

    id: str = Field(default_factory=generate_session_id)
    topic_id: str
    owner_id: str
    focus_selection: FocusSelection = Field(default_factory=NoFocus)
    status: SessionStatus = SessionStatus.PREPARING
    drill_plan: DrillPlan | None = None
    session_data: SessionData = Field(default_factory=SessionData)
    completion_data: CompletionData | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    chat_completed_at: datetime | None = None

    def touch(self) -> None:
        self.updated_at = utcnow()

    # -- status --

    def advance_status(self, target: SessionStatus) -> bool:
        """Move status forward.  Same status is a no-op (returns False)."""
        current = _STATUS_ORDER.index(self.status)
        wanted = _STATUS_ORDER.index(target)
        if wanted < current:
            raise InvalidRequestError(
                f"Cannot move session {self.id} from '{self.status.value}' back to '{target.value}'"
            )
        if wanted == current:
            return False
        self.status = target
        self.touch()
        return True

    # -- chat events --

    @property
    def chat_events(self) -> list[ChatMessageEvent | PhaseCompleteEvent]:
        return self.session_data.chat_events

    def has_event(self, event_id: str) -> bool:
        return any(e.id == event_id for e in self.session_data.chat_events)

    def append_event(self, event: ChatMessageEvent | PhaseCompleteEvent) -> bool:
        """Append unless an event with the same id exists.  Returns True if appended."""
        if self.has_event(event.id):
            return False
        self.session_data.chat_events.append(event)
        self.touch()
        return True

    def append_chat_message(
        self, event_id: str, role: Literal["user", "assistant"], content: str
    ) -> bool:
        return self.append_event(
            ChatMessageEvent(id=event_id, event_data=ChatMessageData(role=role, content=content))
        )

    def chat_messages(self) -> list[ChatMessageEvent]:
        return [e for e in self.session_data.chat_events if isinstance(e, ChatMessageEvent)]

    def user_turn_count(self) -> int:
        return sum(1 for e in self.chat_messages() if e.event_data.role == "user")

    # -- plan progress --

    def complete_phase(self, phase_id: str, event_id: str | None = None) -> bool:
        """Mark a plan phase complete and log a ``phase-complete`` event.

        Returns False when the phase was already complete (nothing logged).
        Raises KeyError for a phase id the plan does not contain.
        """
        if self.drill_plan is None:
            raise KeyError(phase_id)
        if not self.drill_plan.mark_complete(phase_id):
            return False
        self.append_event(
            PhaseCompleteEvent(
                id=event_id or generate_event_id(),
                event_data=PhaseCompleteData(phase_id=phase_id),
            )
        )
        return True

    # -- model transcript --

    def load_model_messages(self) -> list[ModelMessage]:
        return ModelMessagesTypeAdapter.validate_python(self.session_data.model_messages)

    def extend_model_messages(self, turn_id: str, messages: list[ModelMessage] | list[dict[str, Any]]) -> bool:
        """Append one turn's transcript entries.  Returns False if *turn_id* was already applied."""
        if turn_id in self.session_data.transcript_turn_ids:
            return False
        self.session_data.model_messages.extend(to_jsonable_python(messages))
        self.session_data.transcript_turn_ids.append(turn_id)
        self.touch()
        return True
