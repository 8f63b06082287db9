"""
Error taxonomy shared by the HTTP surface, the WebSocket handshake and the
stream orchestrator.

Every domain failure carries a machine-readable ``code`` and the HTTP-equivalent
``status_code``. HTTP routes turn them into the standard ``ErrorResponse`` body:

    {
        "error": "TOO_MANY_SESSIONS",
        "message": "Too many sessions from this IP",
        "code": 429,
        "details": {...}
    }

while the orchestrator surfaces them in-band as ``error`` stream events.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status
from pydantic import BaseModel, Field


# Auth codes
MISSING_TOKEN = "MISSING_TOKEN"
INVALID_TOKEN = "INVALID_TOKEN"
INVALID_PAYLOAD = "INVALID_PAYLOAD"
# Quota codes
TOO_MANY_SESSIONS = "TOO_MANY_SESSIONS"
TOKEN_LIMIT_EXCEEDED = "TOKEN_LIMIT_EXCEEDED"


class ErrorResponse(BaseModel):
    """
    Standard error payload used by the HTTP endpoints and the WebSocket handshake.
    """

    error: str = Field(..., description="Machine-readable error type")
    message: str = Field(..., description="Human-readable error message")
    code: int = Field(..., description="HTTP status code for this error")
    details: Optional[Dict[str, Any]] = Field(
        default=None, description="Optional structured error details"
    )


class ChatRelayError(Exception):
    """Base class for every expected failure in the relay."""

    code: str = "INTERNAL_ERROR"
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(
            error=self.code,
            message=self.message,
            code=self.status_code,
            details=self.details,
        )


class ValidationError(ChatRelayError):
    """Malformed or missing payload."""

    code = "VALIDATION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST


class AuthError(ChatRelayError):
    """Missing, invalid or expired credential."""

    code = INVALID_TOKEN
    status_code = status.HTTP_401_UNAUTHORIZED


class QuotaError(ChatRelayError):
    """Too many sessions for an IP, or the session's token quota is spent."""

    code = TOO_MANY_SESSIONS
    status_code = status.HTTP_429_TOO_MANY_REQUESTS


class NoSessionError(ChatRelayError):
    """A connection id is not (or no longer) bound to a session."""

    code = "NO_SESSION"
    status_code = status.HTTP_401_UNAUTHORIZED


class UpstreamError(ChatRelayError):
    """Inference service or tool transport failure."""

    code = "UPSTREAM_ERROR"
    status_code = status.HTTP_502_BAD_GATEWAY


class InternalError(ChatRelayError):
    code = "INTERNAL_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


def http_error(
    status_code: int,
    *,
    error: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> HTTPException:
    """
    Helper to create an HTTPException with a standardised error body.
    """
    payload = ErrorResponse(
        error=error,
        message=message,
        code=status_code,
        details=details,
    )
    return HTTPException(status_code=status_code, detail=payload.model_dump())


__all__ = [
    "AuthError",
    "ChatRelayError",
    "ErrorResponse",
    "INVALID_PAYLOAD",
    "INVALID_TOKEN",
    "InternalError",
    "MISSING_TOKEN",
    "NoSessionError",
    "QuotaError",
    "TOKEN_LIMIT_EXCEEDED",
    "TOO_MANY_SESSIONS",
    "UpstreamError",
    "ValidationError",
    "http_error",
]
