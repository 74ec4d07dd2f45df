"""
Error taxonomy for the identity layer.

Client-side failures are exceptions rooted at SSOError. Server-side guard
failures are Rejection values carrying an ErrorCode and an HTTP status; they
terminate the request and are rendered as structured JSON.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SSOError(Exception):
    """Base class for identity service failures."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthenticationError(SSOError):
    """Credentials rejected by the identity service."""


class RefreshError(SSOError):
    """Refresh token expired, revoked or otherwise rejected."""


class CallbackError(SSOError):
    """OAuth authorization-code exchange or follow-up validation failed."""


class NetworkError(SSOError):
    """Identity service unreachable, timed out, or answered with a server error.

    The outcome of the operation is unknown. Callers must not treat this as
    proof that a token is invalid. ``retry_after`` carries the server's
    Retry-After hint in seconds when it sent one.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status_code)
        self.retry_after = retry_after


class ErrorCode(str, Enum):
    """Machine-readable codes used in guard rejection bodies."""

    NO_TOKEN = "NO_TOKEN"
    INVALID_TOKEN = "INVALID_TOKEN"
    NO_USER = "NO_USER"
    AGE_NOT_VERIFIED = "AGE_NOT_VERIFIED"
    FORBIDDEN = "FORBIDDEN"
    NO_PLATFORM_ACCESS = "NO_PLATFORM_ACCESS"
    NOT_CREATOR = "NOT_CREATOR"
    CREATOR_NOT_VERIFIED = "CREATOR_NOT_VERIFIED"
    RATE_LIMITED = "RATE_LIMITED"
    IDENTITY_UNAVAILABLE = "IDENTITY_UNAVAILABLE"


@dataclass(frozen=True)
class Rejection:
    """Structured, terminal guard failure.

    Attributes:
        status_code: HTTP status (401, 403, 429 or 503)
        code: Machine-readable error code
        error: Human-readable message
        extra: Contextual fields merged into the body (verifyUrl, subscribeUrl, ...)
        headers: Extra response headers (Retry-After for rate limiting)
    """

    status_code: int
    code: ErrorCode
    error: str
    extra: dict[str, Any] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)

    def body(self) -> dict[str, Any]:
        """Render the JSON body: ``{error, code, ...extra}``."""
        payload: dict[str, Any] = {"error": self.error, "code": self.code.value}
        payload.update(self.extra)
        return payload


def no_user() -> Rejection:
    return Rejection(401, ErrorCode.NO_USER, "Authentication required")


def create_error_response(error: Exception, context: str) -> dict[str, Any]:
    """
    Create a structured description of a client-side failure.

    Args:
        error: The exception that occurred
        context: Operation that failed (login, refresh, callback, ...)

    Returns:
        Dict with error details and a recovery hint for the caller's UI
    """
    response: dict[str, Any] = {
        "success": False,
        "error": str(error),
        "error_type": type(error).__name__,
        "context": context,
    }

    if isinstance(error, AuthenticationError):
        response["action"] = "Check the email and password and try again"
    elif isinstance(error, RefreshError):
        response["action"] = "Session expired, sign in again"
    elif isinstance(error, CallbackError):
        response["action"] = "Restart the sign-in flow from the login page"
    elif isinstance(error, NetworkError):
        response["action"] = "Identity service unreachable, retry shortly"
        response["retryable"] = True
    else:
        response["action"] = f"Unexpected error during {context}"

    if isinstance(error, SSOError) and error.status_code is not None:
        response["status_code"] = error.status_code

    return response
