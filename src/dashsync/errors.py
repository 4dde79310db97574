"""
Classified error taxonomy for the data-sync layer.

Every failure that leaves the request pipeline is one of these classes, so
callers and the notification bridge can react by type instead of poking at
transport exceptions.
"""

from datetime import datetime, timezone
from typing import Any

import httpx

_DEFAULT_MESSAGES: dict[int, str] = {
    400: "Invalid request. Please check your input.",
    401: "Authentication required. Please log in.",
    403: "Access denied. You don't have permission.",
    404: "Resource not found.",
    409: "Conflict. The resource already exists.",
    422: "Validation error. Please check your input.",
    429: "Too many requests. Please try again later.",
    500: "Server error. Please try again later.",
    503: "Service unavailable. Please try again later.",
}


def default_error_message(status: int) -> str:
    """Human-readable message for an HTTP status."""
    return _DEFAULT_MESSAGES.get(status, "An unexpected error occurred.")


class SyncError(Exception):
    """Base exception for data-sync errors."""

    code = "SYNC_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        request_id: str | None = None,
        path: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        if code is not None:
            self.code = code
        self.request_id = request_id
        self.path = path
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "status": getattr(self, "status", None),
            "path": self.path,
            "request_id": self.request_id,
            "timestamp": self.timestamp.isoformat(),
        }


class NetworkError(SyncError):
    """The request never got a response from the server."""

    code = "NETWORK_ERROR"
    retryable = True

    def __init__(self, message: str = "Network error. Please check your connection.", **kwargs: Any):
        super().__init__(message, **kwargs)


class RequestTimeoutError(SyncError):
    """The request exceeded its timeout."""

    code = "TIMEOUT"
    retryable = True

    def __init__(self, timeout: float, **kwargs: Any):
        self.timeout = timeout
        super().__init__(f"Request timed out after {timeout:g}s", **kwargs)


class HttpError(SyncError):
    """The server responded with a failure status."""

    def __init__(self, status: int, message: str | None = None, **kwargs: Any):
        self.status = status
        kwargs.setdefault("code", f"HTTP_{status}")
        super().__init__(message or default_error_message(status), **kwargs)

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return 500 <= self.status < 600


class ValidationError(HttpError):
    """HTTP 422. Handled inline by forms, never retried or notified."""

    def __init__(self, message: str | None = None, **kwargs: Any):
        super().__init__(422, message, **kwargs)


class SessionExpiredError(SyncError):
    """Token refresh failed or is impossible; the session has been cleared."""

    code = "SESSION_EXPIRED"

    def __init__(self, message: str = "Your session has expired. Please log in again.", **kwargs: Any):
        super().__init__(message, **kwargs)


class TimeRangeError(SyncError, ValueError):
    """Misuse of the time-range resolver."""


class UnknownPresetError(TimeRangeError):
    """The preset identifier is not recognised."""

    code = "UNKNOWN_PRESET"

    def __init__(self, preset: str):
        self.preset = preset
        super().__init__(f"Unknown time-range preset: {preset!r}")


class InvalidRangeError(TimeRangeError):
    """A custom range is missing a bound or has start after end."""

    code = "INVALID_RANGE"


def classify_response(
    response: httpx.Response,
    *,
    request_id: str | None = None,
    path: str | None = None,
) -> HttpError:
    """Build the classified error for a failed HTTP response.

    The body's ``message``, ``code`` and ``details`` fields are used when the
    server sends JSON.
    """
    body: Any = None
    try:
        body = response.json()
    except ValueError:
        body = None

    message = None
    kwargs: dict[str, Any] = {"request_id": request_id, "path": path}
    if isinstance(body, dict):
        message = body.get("message") or None
        if body.get("code"):
            kwargs["code"] = str(body["code"])
        if isinstance(body.get("details"), dict):
            kwargs["details"] = body["details"]

    if response.status_code == 422:
        return ValidationError(message, **kwargs)
    return HttpError(response.status_code, message, **kwargs)


__all__ = [
    "HttpError",
    "InvalidRangeError",
    "NetworkError",
    "RequestTimeoutError",
    "SessionExpiredError",
    "SyncError",
    "TimeRangeError",
    "UnknownPresetError",
    "ValidationError",
    "classify_response",
    "default_error_message",
]
