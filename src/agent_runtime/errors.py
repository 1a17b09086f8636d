"""Error taxonomy for the streaming core.

Every failure is reduced to one ErrorKind where it first appears (the HTTP
boundary, the SSE parser or the stream), so callers decide retry policy by
looking at `kind` instead of inspecting status codes or exception types.
"""

from enum import StrEnum

import httpx


class ErrorKind(StrEnum):
    """Closed set of failure classes."""

    # Bad input (e.g. empty prompt). Never retried, no network call made.
    VALIDATION = "validation"

    # 401, or a credential is required and missing. Never retried.
    AUTHENTICATION = "authentication"

    # Any other 4xx except 429. Never retried.
    CLIENT = "client"

    # 429. Retried with backoff, honouring server wait hints.
    RATE_LIMITED = "rate_limited"

    # 5xx. Retried with backoff.
    SERVER = "server"

    # Connection reset/refused, DNS, read timeout. Retried.
    NETWORK = "network"

    # Explicit cancellation. Never retried.
    CANCELLED = "cancelled"

    # Server pushed a response.failed event.
    RESPONSE_FAILED = "response_failed"

    # Quota / usage limit reported by the server. Never retried.
    USAGE_LIMIT = "usage_limit"

    # Stream ended badly (closed early, idle timeout, backpressure).
    STREAM = "stream"


_RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.RATE_LIMITED,
        ErrorKind.SERVER,
        ErrorKind.NETWORK,
        ErrorKind.RESPONSE_FAILED,
        ErrorKind.STREAM,
    }
)

# A whole turn is not worth repeating for these.
_TURN_FATAL_KINDS = frozenset(
    {
        ErrorKind.CANCELLED,
        ErrorKind.AUTHENTICATION,
        ErrorKind.USAGE_LIMIT,
        ErrorKind.VALIDATION,
        ErrorKind.CLIENT,
    }
)

# Error codes in response.failed payloads that mean the account is out of quota.
_USAGE_LIMIT_CODES = frozenset({"usage_limit_reached", "insufficient_quota"})


class ModelClientError(Exception):
    """A failure talking to the model provider."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        status_code: int | None = None,
        retry_after_ms: float | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status_code = status_code
        self.retry_after_ms = retry_after_ms

    @property
    def retryable(self) -> bool:
        return self.kind in _RETRYABLE_KINDS

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(kind={self.kind.value!r}, "
            f"status_code={self.status_code!r}, message={self.message!r})"
        )


class ResponseFailedError(ModelClientError):
    """The server ended the response with a response.failed event."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        retry_after_ms: float | None = None,
    ) -> None:
        kind = ErrorKind.USAGE_LIMIT if code in _USAGE_LIMIT_CODES else ErrorKind.RESPONSE_FAILED
        super().__init__(message, kind, retry_after_ms=retry_after_ms)
        self.code = code


class StreamErrorCode(StrEnum):
    # push() after complete()/fail().
    CLOSED = "closed"

    # push() or next() after abort() or an external cancel.
    ABORTED = "aborted"

    # push() with a full buffer and backpressure enabled.
    BACKPRESSURE = "backpressure"

    # No event arrived within the idle timeout.
    TIMEOUT = "timeout"

    # Transport closed without a response.completed event.
    INCOMPLETE = "incomplete"


class StreamError(ModelClientError):
    """A ResponseStream operation failed."""

    def __init__(self, message: str, code: StreamErrorCode) -> None:
        kind = ErrorKind.CANCELLED if code is StreamErrorCode.ABORTED else ErrorKind.STREAM
        super().__init__(message, kind)
        self.code = code


def classify_status(status_code: int) -> ErrorKind:
    """Map a non-success HTTP status to an error kind."""
    if status_code == 401:
        return ErrorKind.AUTHENTICATION
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code >= 500:
        return ErrorKind.SERVER
    return ErrorKind.CLIENT


def from_transport_error(exc: httpx.RequestError) -> ModelClientError:
    """Wrap an httpx request failure (connect, read, timeout, body decoding) as a network error."""
    detail = str(exc) or type(exc).__name__
    return ModelClientError(f"Network error: {detail}", ErrorKind.NETWORK)


def error_kind(exc: BaseException) -> ErrorKind | None:
    """The kind of a runtime error, or None for foreign exceptions."""
    if isinstance(exc, ModelClientError):
        return exc.kind
    return None


def is_turn_fatal(exc: BaseException) -> bool:
    """Whether a failed turn must not be retried."""
    return error_kind(exc) in _TURN_FATAL_KINDS
