"""Shared error types for settings_dispatch.

Transport raises only the closed ``TransportError`` variants. Everything a
caller can observe after submission is either a result, a
``RequestFailedError`` carrying an ``ErrorKind``, a ``CircuitOpenError`` or a
``RequestCancelledError``.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    """Retry classification of a failed attempt."""

    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    AUTH_EXPIRED = "auth_expired"
    FATAL = "fatal"


_USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.TRANSIENT: (
        "Connection problem while talking to the server. Please try again."
    ),
    ErrorKind.RATE_LIMITED: (
        "Too many requests. Please wait a moment before trying again."
    ),
    ErrorKind.AUTH_EXPIRED: (
        "Your session has expired. Please reload the page and try again."
    ),
    ErrorKind.FATAL: "The request was rejected by the server.",
}


class DispatchError(Exception):
    """Base exception for the settings_dispatch package."""


class RequestValidationError(DispatchError, ValueError):
    """Raised synchronously when a submission is malformed."""


class TransportError(DispatchError):
    """Base class for the failures a transport may raise."""


class NetworkError(TransportError):
    """The exchange did not reach the server or the connection dropped."""


class RequestTimeoutError(TransportError, TimeoutError):
    """The exchange exceeded its per-call timeout."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"request_timeout timeout_seconds={timeout:g}")


class HTTPError(TransportError):
    """The server answered with a failure status or failure envelope.

    Attributes:
        status: HTTP status, or the status equivalent of a failure envelope.
        retry_after: Server-provided retry hint in seconds, if any.
        code: Backend error code from a failure envelope, if any.
        message: Backend error message, if any.
    """

    def __init__(
        self,
        status: int,
        *,
        retry_after: float | None = None,
        code: str | None = None,
        message: str | None = None,
    ) -> None:
        self.status = status
        self.retry_after = retry_after
        self.code = code
        self.message = message
        detail = f"http_error status={status}"
        if code:
            detail = f"{detail} code={code}"
        if message:
            detail = f"{detail}: {message}"
        super().__init__(detail)


class TokenRefreshError(DispatchError):
    """Raised when the security token could not be refreshed."""


class RequestCancelledError(DispatchError):
    """Raised to waiters of a request that reached the cancelled state."""

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        super().__init__(f"request_cancelled: {request_id}")


class RequestFailedError(DispatchError):
    """Terminal failure of a request after classification and retries.

    Attributes:
        kind: Classification of the final failed attempt.
        attempts: Number of transport attempts made.
        cause: The final underlying error.
    """

    def __init__(self, kind: ErrorKind, *, attempts: int, cause: BaseException) -> None:
        self.kind = kind
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"request_failed kind={kind} attempts={attempts}: {cause}")

    @property
    def status(self) -> int | None:
        """HTTP status of the final failure, when it was an HTTP failure."""
        if isinstance(self.cause, HTTPError):
            return self.cause.status
        return None

    @property
    def user_message(self) -> str:
        """Message suitable for rendering in the settings UI."""
        if isinstance(self.cause, HTTPError) and self.cause.status in (401, 403):
            return _USER_MESSAGES[ErrorKind.AUTH_EXPIRED]
        if isinstance(self.cause, HTTPError) and self.cause.message:
            if self.kind == ErrorKind.FATAL:
                return self.cause.message
        if isinstance(self.cause, RequestTimeoutError):
            return "Request timed out. Please check your connection and try again."
        return _USER_MESSAGES[self.kind]


class BatchAbortedError(DispatchError):
    """Raised by a fail-fast batch when one member fails.

    Attributes:
        index: Input position of the member that failed first.
        error: The member's error.
        results: Per-item results collected before the abort, in input order;
            ``None`` for members that never finished.
    """

    def __init__(self, index: int, error: BaseException, results: list[object]) -> None:
        self.index = index
        self.error = error
        self.results = results
        super().__init__(f"batch_aborted index={index}: {error}")
