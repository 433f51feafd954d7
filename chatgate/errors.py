"""
Error taxonomy for Chatgate.

Every failure that reaches a caller is one of these kinds, so the UI can render
a stable, kind-specific message instead of a raw exception string.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Kinds of gateway failures."""
    AUTH_EXPIRED = "AuthExpired"
    FORBIDDEN = "Forbidden"
    QUOTA_EXCEEDED = "QuotaExceeded"
    RATE_LIMITED = "RateLimited"
    UPSTREAM_UNAVAILABLE = "UpstreamUnavailable"
    UPSTREAM_HTTP_ERROR = "UpstreamHTTPError"
    EMPTY_STREAM = "EmptyStream"
    EMPTY_RESPONSE = "EmptyResponse"
    MALFORMED_FRAME = "MalformedFrame"
    CANCELLED = "Cancelled"
    REQUEST_IN_PROGRESS = "RequestInProgress"


# Kinds a caller may retry immediately without changing anything.
RETRYABLE_KINDS = frozenset({
    ErrorKind.UPSTREAM_UNAVAILABLE,
    ErrorKind.EMPTY_STREAM,
    ErrorKind.EMPTY_RESPONSE,
    ErrorKind.REQUEST_IN_PROGRESS,
})


class GatewayError(Exception):
    """Base class for typed gateway failures."""

    kind: ErrorKind = ErrorKind.UPSTREAM_HTTP_ERROR

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        self.status = status
        self.details = details or {}
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        if self.kind == ErrorKind.UPSTREAM_HTTP_ERROR:
            return self.status is not None and (self.status >= 500 or self.status == 408)
        return self.kind in RETRYABLE_KINDS


class AuthExpiredError(GatewayError):
    """Credential is invalid or expired (HTTP 401)."""
    kind = ErrorKind.AUTH_EXPIRED


class ForbiddenError(GatewayError):
    """Caller is not allowed to use this backend (HTTP 403)."""
    kind = ErrorKind.FORBIDDEN


class QuotaExceededError(GatewayError):
    """Daily or plan message quota is used up."""
    kind = ErrorKind.QUOTA_EXCEEDED

    def __init__(
        self,
        message: str,
        limit: Optional[int] = None,
        current: Optional[int] = None,
        tier: Optional[str] = None,
        status: Optional[int] = 429,
        details: Optional[dict[str, Any]] = None,
    ):
        merged = {"limit": limit, "current": current, "tier": tier}
        merged.update(details or {})
        super().__init__(message, status=status, details=merged)
        self.limit = limit
        self.current = current
        self.tier = tier


class RateLimitedError(GatewayError):
    """Requests are arriving faster than allowed."""
    kind = ErrorKind.RATE_LIMITED


class UpstreamUnavailableError(GatewayError):
    """Connection or DNS failure talking to the upstream backend."""
    kind = ErrorKind.UPSTREAM_UNAVAILABLE


class UpstreamHTTPError(GatewayError):
    """Upstream answered with a non-success status."""
    kind = ErrorKind.UPSTREAM_HTTP_ERROR


class EmptyStreamError(GatewayError):
    """Stream ended without a single parsed frame."""
    kind = ErrorKind.EMPTY_STREAM


class EmptyResponseError(GatewayError):
    """Upstream produced only empty or whitespace text."""
    kind = ErrorKind.EMPTY_RESPONSE


class MalformedFrameError(GatewayError):
    """A frame or batch body could not be parsed."""
    kind = ErrorKind.MALFORMED_FRAME


class RequestCancelledError(GatewayError):
    """The request was cancelled by the caller."""
    kind = ErrorKind.CANCELLED


class RequestInProgressError(GatewayError):
    """Another request for the same client is still running."""
    kind = ErrorKind.REQUEST_IN_PROGRESS


ERROR_CLASSES: dict[ErrorKind, type[GatewayError]] = {
    cls.kind: cls
    for cls in (
        AuthExpiredError,
        ForbiddenError,
        QuotaExceededError,
        RateLimitedError,
        UpstreamUnavailableError,
        UpstreamHTTPError,
        EmptyStreamError,
        EmptyResponseError,
        MalformedFrameError,
        RequestCancelledError,
        RequestInProgressError,
    )
}


def error_for_kind(
    kind: ErrorKind,
    message: str,
    status: Optional[int] = None,
    details: Optional[dict[str, Any]] = None,
) -> GatewayError:
    """Build the typed exception for an error kind."""
    cls = ERROR_CLASSES.get(kind, GatewayError)
    if cls is QuotaExceededError:
        details = dict(details or {})
        return QuotaExceededError(
            message,
            limit=details.pop("limit", None),
            current=details.pop("current", None),
            tier=details.pop("tier", None),
            status=status,
            details=details,
        )
    return cls(message, status=status, details=details)


def error_for_status(status: int, body: Optional[dict[str, Any]] = None) -> GatewayError:
    """
    Translate an upstream HTTP status into a typed error.

    Args:
        status: HTTP status code (>= 400).
        body: Decoded JSON error body, if any.

    Returns:
        The matching GatewayError subclass instance.
    """
    body = body if isinstance(body, dict) else {}

    if status == 401:
        return AuthExpiredError("Authentication failed. Please login again.", status=status)

    if status == 403:
        return ForbiddenError("Access denied. Please check your permissions.", status=status)

    if status == 429:
        limit = body.get("limit")
        current = body.get("current")
        if limit is not None or current is not None:
            return QuotaExceededError(
                body.get("error") or "Message limit reached.",
                limit=limit,
                current=current,
                tier=body.get("subscription_tier") or body.get("tier"),
                status=status,
            )
        return RateLimitedError(
            "Rate limit exceeded. Please wait a moment and try again.",
            status=status,
        )

    if status == 408:
        return UpstreamHTTPError("The AI service timed out. Please try again.", status=status)

    if status >= 500:
        return UpstreamHTTPError("Server error. Please try again later.", status=status)

    return UpstreamHTTPError(
        f"Request failed with status {status}. Please try again.",
        status=status,
    )
