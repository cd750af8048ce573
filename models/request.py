"""API request / response models."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field, field_validator

from models.base import CamelModel
from models.drill import (
    CompletionData,
    DrillPlan,
    FocusSelection,
    NoFocus,
    SessionStatus,
)


class CreateSessionRequest(CamelModel):
    """POST /api/drill/sessions: request body."""

    topic_id: str = Field(min_length=1)
    focus_selection: FocusSelection = Field(default_factory=NoFocus)


class CreateSessionResponse(CamelModel):
    session_id: str


class SendMessageRequest(CamelModel):
    """POST /api/drill/sessions/{id}/messages: request body."""

    message: str = Field(max_length=8000)

    @field_validator("message")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("message must not be empty")
        return v


class SendMessageResponse(CamelModel):
    """Returned immediately; the reply arrives on the event stream."""

    message_id: str


class FinishSessionResponse(CamelModel):
    success: bool = True


class SessionResultsResponse(CamelModel):
    """GET /api/drill/sessions/{id}/results: response body."""

    session_id: str
    status: SessionStatus
    drill_plan: DrillPlan | None = None
    completion_data: CompletionData | None = None
    chat_completed_at: datetime | None = None


class RecentSessionsResponse(CamelModel):
    sessions: list[SessionResultsResponse] = Field(default_factory=list)
