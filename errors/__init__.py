"""Custom exception hierarchy for the drill tutor service."""

from errors.exceptions import (
    AccessDeniedError,
    DrillError,
    InvalidRequestError,
    NotFoundError,
    StreamTransportError,
    UpstreamUnavailableError,
    WorkflowError,
)

__all__ = [
    "AccessDeniedError",
    "DrillError",
    "InvalidRequestError",
    "NotFoundError",
    "StreamTransportError",
    "UpstreamUnavailableError",
    "WorkflowError",
]
