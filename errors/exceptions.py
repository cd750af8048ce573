"""Domain-specific exceptions for the drill tutor service.

These exceptions let the workflow runtime decide what is worth retrying and
let the API layer respond with the right HTTP status.  Every error carries an
:class:`~models.errors.ErrorCode` and a ``retryable`` flag; the runtime only
retries failures that are not a ``DrillError`` or that set ``retryable``.
"""

from __future__ import annotations

from models.errors import HTTP_STATUS, ErrorCode


class DrillError(Exception):
    """Base class for drill domain errors."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    retryable: bool = False

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    @property
    def status_code(self) -> int:
        return HTTP_STATUS.get(self.code, 500)

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code.value, "detail": self.message}


class NotFoundError(DrillError):
    """A session or topic does not exist (permanent)."""

    code = ErrorCode.NOT_FOUND

    def __init__(self, entity_type: str, entity_id: str) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} '{entity_id}' not found")


class AccessDeniedError(DrillError):
    """The caller does not own the session or topic (permanent)."""

    code = ErrorCode.FORBIDDEN

    def __init__(self, entity_type: str, entity_id: str) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"Access denied to {entity_type} '{entity_id}'")


class InvalidRequestError(DrillError):
    """Malformed caller input, rejected before any workflow starts."""

    code = ErrorCode.INVALID_REQUEST


class UpstreamUnavailableError(DrillError):
    """The model provider kept failing after step-level retries.

    The session stays at its last persisted state, so the workflow can be
    re-triggered from outside.
    """

    code = ErrorCode.LLM_PROVIDER_ERROR

    def __init__(self, step_name: str, attempts: int, detail: str) -> None:
        self.step_name = step_name
        self.attempts = attempts
        super().__init__(f"Step '{step_name}' failed after {attempts} attempt(s): {detail}")


class WorkflowError(DrillError):
    """Runtime misuse: unknown workflow/step or a corrupt step record."""

    code = ErrorCode.INTERNAL_ERROR


class StreamTransportError(DrillError):
    """Client-side event stream failure.

    ``status_code`` of the HTTP response is kept when the failure came from a
    non-2xx open; ``None`` means a network-level read error or unexpected close.
    """

    code = ErrorCode.TRANSPORT_ERROR

    # Opening the stream with one of these means retrying cannot help.
    TERMINAL_STATUSES = frozenset({400, 401, 403, 404})

    def __init__(self, message: str, http_status: int | None = None) -> None:
        self.http_status = http_status
        super().__init__(message)

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.http_status not in self.TERMINAL_STATUSES
