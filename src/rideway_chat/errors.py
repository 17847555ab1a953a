"""Error types raised by the chat client and their user-facing descriptions."""

from __future__ import annotations

from typing import Any, Optional

SESSION_EXPIRED_REASON = "SessionExpired"


class ChatError(Exception):
    """Base class for every error raised by :mod:`rideway_chat`."""


class ApiError(ChatError):
    def __init__(
        self,
        message: str,
        status: int,
        code: Optional[str] = None,
        details: Any = None,
    ) -> None:
        self.message = message
        self.status = status
        self.code = code
        self.details = details
        super().__init__(message)

    def __repr__(self) -> str:
        return f"ApiError(status={self.status}, code={self.code!r}, message={self.message!r})"


class SessionExpiredError(ChatError):
    """The access token could not be refreshed; the user is signed out."""

    def __init__(self, reason: str = SESSION_EXPIRED_REASON) -> None:
        self.reason = reason
        super().__init__(f"session ended: {reason}")


class TransportUnavailableError(ChatError):
    """No live event channel when an emit was attempted."""


class AckTimeoutError(ChatError):
    def __init__(self, event: str, timeout_s: float) -> None:
        self.event = event
        self.timeout_s = timeout_s
        super().__init__(f"no acknowledgement for {event} within {timeout_s:g}s")


class AckFailedError(ChatError):
    """The server acknowledged an event with ``success: false``."""

    def __init__(self, event: str, error: Optional[str] = None) -> None:
        self.event = event
        self.error = error
        super().__init__(f"{event} rejected: {error or 'unknown error'}")


class UploadError(ChatError):
    pass


_CODE_MESSAGES = {
    "INVALID_TOKEN": "Your session has expired. Please sign in again.",
    "SESSION_EXPIRED": "Your session has expired. Please sign in again.",
    "RATE_LIMITED": "Too many requests. Please wait a moment.",
    "NETWORK_ERROR": "Unable to connect to the server. Please check your connection.",
    "TIMEOUT": "The request timed out. Please try again.",
}

_STATUS_MESSAGES = {
    401: "Please sign in to continue",
    403: "You do not have permission to perform this action",
    404: "The requested resource was not found",
    413: "The file is too large",
    429: "Too many requests. Please slow down.",
    500: "An internal server error occurred. Please try again later.",
}


def _format_validation_details(details: Any) -> str:
    if not details:
        return "Please check your input and try again"
    if isinstance(details, list):
        parts = []
        for item in details:
            if isinstance(item, dict):
                parts.append(str(item.get("message") or item))
            else:
                parts.append(str(item))
        return ". ".join(parts)
    if isinstance(details, dict):
        parts = []
        for field, message in details.items():
            if isinstance(message, list):
                message = ", ".join(str(m) for m in message)
            parts.append(f"{str(field)[:1].upper()}{str(field)[1:]}: {message}")
        return ". ".join(parts) or "Please check your input and try again"
    return str(details)


def describe_api_error(error: ApiError) -> str:
    if error.code == "VALIDATION_ERROR":
        return _format_validation_details(error.details)
    if error.code in _CODE_MESSAGES:
        return _CODE_MESSAGES[error.code]
    if error.status in (400, 409, 422):
        return error.message or "Invalid request"
    if error.status in (502, 503, 504):
        return "The server is temporarily unavailable. Please try again later."
    return _STATUS_MESSAGES.get(error.status) or error.message or "An error occurred"


def describe_error(error: BaseException) -> str:
    """Return a message suitable for showing to the user."""

    if isinstance(error, ApiError):
        return describe_api_error(error)
    if isinstance(error, SessionExpiredError):
        return _CODE_MESSAGES["SESSION_EXPIRED"]
    if isinstance(error, TransportUnavailableError):
        return "Chat is offline. Please try again once you are reconnected."
    if isinstance(error, AckTimeoutError):
        return "The server did not respond in time. Please try again."
    if isinstance(error, UploadError):
        return "Image upload failed. Please try again."
    return str(error) or "An unexpected error occurred"


def is_auth_error(error: BaseException) -> bool:
    if isinstance(error, SessionExpiredError):
        return True
    if isinstance(error, ApiError):
        return error.status == 401 or error.code in ("INVALID_TOKEN", "SESSION_EXPIRED")
    return False


def is_validation_error(error: BaseException) -> bool:
    return isinstance(error, ApiError) and error.status in (400, 422)


def is_retryable_error(error: BaseException) -> bool:
    if isinstance(error, (TransportUnavailableError, AckTimeoutError, UploadError)):
        return True
    if isinstance(error, ApiError):
        return error.status == 408 or error.status >= 500 or error.code in ("NETWORK_ERROR", "TIMEOUT")
    return False
