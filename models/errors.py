"""Structured error codes shared by the HTTP surface and the stream client.

HTTP error bodies follow the shape::

    {"code": "{ERROR_CODE}", "detail": "{human_readable_detail}"}
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Canonical error codes."""

    INVALID_REQUEST = "INVALID_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    LLM_PROVIDER_ERROR = "LLM_PROVIDER_ERROR"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"


# HTTP status for each code surfaced by the API layer.
HTTP_STATUS: dict[ErrorCode, int] = {
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INTERNAL_ERROR: 500,
    ErrorCode.LLM_PROVIDER_ERROR: 502,
    ErrorCode.TRANSPORT_ERROR: 502,
}

