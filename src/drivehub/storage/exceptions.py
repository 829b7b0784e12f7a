"""Storage gateway exceptions.

Normalized error taxonomy shared by every provider adapter, the governor,
the transfer coordinator and the gateway facade.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Normalized error kinds surfaced to callers."""

    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    QUOTA_EXCEEDED = "quota_exceeded"
    THROTTLED = "throttled"
    CONFLICT = "conflict"
    UNAVAILABLE = "unavailable"
    INVALID_CURSOR = "invalid_cursor"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class StorageError(Exception):
    """Base exception for all storage gateway errors.

    Attributes:
        kind: Normalized error kind
        message: Human readable description
        source_id: Storage source the error originated from (if known)
        retryable: Whether the governor may retry the failed call
        retry_after: Provider supplied retry delay in seconds
        status_code: Provider native status code (HTTP status where applicable)
    """

    kind: ErrorKind = ErrorKind.UNKNOWN
    retryable: bool = False

    def __init__(
        self,
        message: str,
        source_id: str | None = None,
        retry_after: float | None = None,
        status_code: int | None = None,
        provider_code: str | None = None,
    ) -> None:
        """Initialize storage error.

        Args:
            message: Error description
            source_id: Optional originating source id
            retry_after: Optional provider retry hint in seconds
            status_code: Optional native status code
            provider_code: Optional native error code (e.g. "NoSuchKey")
        """
        self.message = message
        self.source_id = source_id
        self.retry_after = retry_after
        self.status_code = status_code
        self.provider_code = provider_code
        self.attempts = 1
        super().__init__(message)

    def __str__(self) -> str:
        if self.source_id:
            return f"[{self.kind.value}] {self.message} (source={self.source_id})"
        return f"[{self.kind.value}] {self.message}"

    def to_dict(self) -> dict[str, object]:
        """Serialize error for API responses."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "source_id": self.source_id,
            "retryable": self.retryable,
        }


class NotFoundError(StorageError):
    """Entry, source or session does not exist (or is not visible to the caller)."""

    kind = ErrorKind.NOT_FOUND


class PermissionDeniedError(StorageError):
    """Caller or credential lacks permission for the operation."""

    kind = ErrorKind.PERMISSION_DENIED


class AuthExpiredError(PermissionDeniedError):
    """Provider rejected the access token (HTTP 401).

    The gateway refreshes the credential once and re-dispatches before
    surfacing this as a permission error.
    """


class SourceDisabledError(PermissionDeniedError):
    """Storage source is disabled or its credential does not resolve."""


class QuotaExceededError(StorageError):
    """Provider storage quota exhausted."""

    kind = ErrorKind.QUOTA_EXCEEDED


class ThrottledError(StorageError):
    """Provider rate limit hit (HTTP 429, SlowDown, Graph throttling)."""

    kind = ErrorKind.THROTTLED
    retryable = True


class ConflictError(StorageError):
    """Operation conflicts with current state.

    Raised for moves onto existing paths without overwrite, failed ETag
    preconditions, and invalid transfer session transitions.
    """

    kind = ErrorKind.CONFLICT


class UnavailableError(StorageError):
    """Transient backend outage (5xx, network failure)."""

    kind = ErrorKind.UNAVAILABLE
    retryable = True


class InvalidCursorError(StorageError):
    """Cursor is malformed, tampered, expired or replayed against another listing.

    Callers should restart the listing from the beginning.
    """

    kind = ErrorKind.INVALID_CURSOR


class StorageTimeoutError(StorageError):
    """Gateway operation exceeded its configured timeout."""

    kind = ErrorKind.TIMEOUT

    def __init__(
        self,
        operation: str,
        timeout_seconds: float,
        source_id: str | None = None,
    ) -> None:
        """Initialize timeout error.

        Args:
            operation: Operation that timed out
            timeout_seconds: Timeout value in seconds
            source_id: Optional originating source id
        """
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Operation '{operation}' timed out after {timeout_seconds}s",
            source_id=source_id,
        )


class OperationCancelledError(StorageError):
    """Operation was cancelled by the caller's cancellation signal."""

    kind = ErrorKind.CANCELLED


class UnknownError(StorageError):
    """Unclassified provider failure."""

    kind = ErrorKind.UNKNOWN


_ERROR_TYPES: dict[ErrorKind, type[StorageError]] = {
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.PERMISSION_DENIED: PermissionDeniedError,
    ErrorKind.QUOTA_EXCEEDED: QuotaExceededError,
    ErrorKind.THROTTLED: ThrottledError,
    ErrorKind.CONFLICT: ConflictError,
    ErrorKind.UNAVAILABLE: UnavailableError,
    ErrorKind.INVALID_CURSOR: InvalidCursorError,
    ErrorKind.CANCELLED: OperationCancelledError,
    ErrorKind.UNKNOWN: UnknownError,
}


def error_for_kind(kind: ErrorKind) -> type[StorageError]:
    """Get the exception class for a normalized error kind.

    Args:
        kind: Error kind (TIMEOUT is not constructible this way)

    Returns:
        StorageError subclass
    """
    return _ERROR_TYPES.get(kind, UnknownError)


def error_from_http_status(
    status_code: int,
    message: str,
    retry_after: float | None = None,
    provider_code: str | None = None,
) -> StorageError:
    """Map an HTTP status code to a normalized storage error.

    Args:
        status_code: HTTP response status
        message: Error message extracted from the response
        retry_after: Parsed Retry-After value in seconds
        provider_code: Native error code from the response body

    Returns:
        Normalized storage error (not raised)
    """
    kwargs = {
        "status_code": status_code,
        "retry_after": retry_after,
        "provider_code": provider_code,
    }

    if status_code == 401:
        return AuthExpiredError(message, **kwargs)
    if status_code == 403:
        return PermissionDeniedError(message, **kwargs)
    if status_code in (404, 410):
        return NotFoundError(message, **kwargs)
    if status_code in (409, 412):
        return ConflictError(message, **kwargs)
    if status_code in (413, 507):
        return QuotaExceededError(message, **kwargs)
    if status_code == 429:
        return ThrottledError(message, **kwargs)
    if status_code in (408, 425) or status_code >= 500:
        # 503 with Retry-After is how Graph and S3 signal soft throttling
        if status_code == 503 and retry_after is not None:
            return ThrottledError(message, **kwargs)
        return UnavailableError(message, **kwargs)

    return UnknownError(message, **kwargs)


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header value in delta-seconds form.

    HTTP-date values are ignored; providers in scope send seconds.

    Args:
        value: Raw header value

    Returns:
        Seconds to wait, or None if absent/unparseable
    """
    if not value:
        return None

    try:
        seconds = float(value.strip())
    except ValueError:
        return None

    return max(seconds, 0.0)
