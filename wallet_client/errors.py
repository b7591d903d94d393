from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    CLIENT_ERROR = "CLIENT_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    SERVER_ERROR = "SERVER_ERROR"
    CANCELLED = "CANCELLED"


_RETRYABLE_KINDS = {ErrorKind.NETWORK_ERROR, ErrorKind.RATE_LIMITED, ErrorKind.SERVER_ERROR}

_FALLBACK_MESSAGES = {
    ErrorKind.TIMEOUT: "The request took too long. Please try again.",
    ErrorKind.NETWORK_ERROR: "Could not reach the server. Check your connection and try again.",
    ErrorKind.CLIENT_ERROR: "The request could not be completed.",
    ErrorKind.RATE_LIMITED: "Too many requests. Please wait a moment and try again.",
    ErrorKind.SERVER_ERROR: "The server ran into a problem. Please try again later.",
    ErrorKind.CANCELLED: "The request was cancelled.",
}


class ApiError(Exception):
    """A classified transport failure.

    `message` is taken from the backend payload when it carried one, so it is safe
    to show to users; `details` keeps the raw payload for logging.
    """

    kind: ErrorKind = ErrorKind.NETWORK_ERROR

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: int | None = None,
        details: Any | None = None,
        server_message: bool = False,
    ):
        self.message = message or _FALLBACK_MESSAGES[self.kind]
        self.status_code = status_code
        self.details = details
        self.server_message = server_message
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return self.kind in _RETRYABLE_KINDS

    @property
    def user_message(self) -> str:
        if self.server_message:
            return self.message
        return _FALLBACK_MESSAGES[self.kind]

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value}, status_code={self.status_code}, message={self.message!r})"


class RequestTimeoutError(ApiError):
    kind = ErrorKind.TIMEOUT


class NetworkError(ApiError):
    kind = ErrorKind.NETWORK_ERROR


class ClientError(ApiError):
    kind = ErrorKind.CLIENT_ERROR


class RateLimitedError(ApiError):
    kind = ErrorKind.RATE_LIMITED


class ServerError(ApiError):
    kind = ErrorKind.SERVER_ERROR


class RequestCancelledError(ApiError):
    """Raised when a superseded or torn-down request completes; callers drop it silently."""

    kind = ErrorKind.CANCELLED


def is_retryable_error(error: BaseException) -> bool:
    """Network failures, 429 and 5xx are retryable; everything else is not."""
    if isinstance(error, ApiError):
        return error.retryable
    return False


class AuthFlowError(Exception):
    pass


class InvalidTransitionError(AuthFlowError):
    def __init__(self, phase: Any, event: Any):
        self.phase = phase
        self.event = event
        super().__init__(f"No transition from {getattr(phase, 'value', phase)} on {getattr(event, 'value', event)}")
