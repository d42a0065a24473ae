"""
Error taxonomy for drivegallery.

``APIError`` subclasses are raised by the fetch cache service and the
Drive client and rendered by the API layer as RFC 7807 Problem Details;
each declares its HTTP status, its ``ErrorCode`` and whether the same
request may succeed if retried later. The scheduler errors never reach
HTTP clients.
"""

from __future__ import annotations

from typing import Any, ClassVar

from drivegallery.api.schemas.responses import ErrorCode


class DriveGalleryError(Exception):
    """Base exception for all drivegallery errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


# =============================================================================
# Download scheduler
# =============================================================================


class InvalidTransitionError(DriveGalleryError):
    """
    A download task was asked to move to a state its table forbids.

    Attributes
    ----------
    task_id : str
        The task whose transition was rejected.
    current : str
        State the task was in.
    requested : str
        State that was requested.
    """

    def __init__(self, task_id: str, current: str, requested: str) -> None:
        self.task_id = task_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Download task '{task_id}' cannot move from {current} to {requested}"
        )


class SchedulerNotRunningError(DriveGalleryError):
    """The scheduler was used before ``start()`` or after ``close()``."""

    def __init__(self, message: str = "Download scheduler is not running") -> None:
        super().__init__(message)


# =============================================================================
# Fetch cache / HTTP
# =============================================================================


class APIError(DriveGalleryError):
    """
    Error with an HTTP rendering.

    Attributes
    ----------
    status_code : int
        HTTP status of the Problem Detail response.
    error_code : ErrorCode
        Machine-readable code for API consumers.
    retryable : bool
        True when the failure is transient on the upstream side.
    details : dict[str, Any] | None
        Context for logs (object id, upstream status, ...). Not sent to
        clients.
    """

    status_code: ClassVar[int] = 500
    error_code: ClassVar[ErrorCode] = ErrorCode.INTERNAL_ERROR
    retryable: ClassVar[bool] = False

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.details = details
        super().__init__(message)


class InvalidIdentifierError(APIError):
    """
    Malformed object id or thumbnail hint (400).

    Raised before any upstream call is made.

    Examples
    --------
    >>> raise InvalidIdentifierError(identifier="../etc/passwd")
    """

    status_code = 400
    error_code = ErrorCode.INVALID_IDENTIFIER

    def __init__(
        self,
        identifier: str,
        reason: str = "malformed object identifier",
        field: str = "object_id",
    ) -> None:
        self.identifier = identifier
        super().__init__(
            f"Invalid {field} '{identifier}': {reason}",
            details={"field": field, "identifier": identifier},
        )


class AuthenticationError(APIError):
    """Missing or incorrect revalidation secret (401)."""

    status_code = 401
    error_code = ErrorCode.NOT_AUTHENTICATED

    def __init__(self, message: str = "Invalid or missing secret") -> None:
        super().__init__(message)


class NotFoundError(APIError):
    """
    The object no longer exists upstream (404). Never cached.

    Examples
    --------
    >>> raise NotFoundError(resource_type="File", identifier="1AbCdEf")
    """

    status_code = 404
    error_code = ErrorCode.NOT_FOUND

    def __init__(
        self,
        resource_type: str,
        identifier: str,
        hint: str | None = None,
    ) -> None:
        self.resource_type = resource_type
        self.identifier = identifier
        message = f"{resource_type} '{identifier}' not found"
        if hint:
            message = f"{message}. {hint}"
        super().__init__(
            message,
            details={"resource_type": resource_type, "identifier": identifier},
        )


class ThumbnailUnavailableError(APIError):
    """The object exists but has no preview (404); clients may fall back to the original."""

    status_code = 404
    error_code = ErrorCode.THUMBNAIL_UNAVAILABLE

    def __init__(self, identifier: str, reason: str = "no thumbnail link") -> None:
        self.identifier = identifier
        super().__init__(
            f"Thumbnail for '{identifier}' unavailable: {reason}",
            details={"identifier": identifier, "reason": reason},
        )


class RateLimitError(APIError):
    """
    The upstream is throttling (429).

    ``retry_after`` is the upstream's ``Retry-After`` in seconds, passed
    on to the client when known.
    """

    status_code = 429
    error_code = ErrorCode.RATE_LIMITED
    retryable = True

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        retry_after: int | None = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message, details=details)


class UpstreamUnavailableError(APIError):
    """
    Network failure or unexpected upstream response (502).

    Examples
    --------
    >>> raise UpstreamUnavailableError(
    ...     message="Drive API returned 503",
    ...     details={"status": 503},
    ... )
    """

    status_code = 502
    error_code = ErrorCode.UPSTREAM_UNAVAILABLE
    retryable = True

    def __init__(
        self,
        message: str = "Upstream object store unavailable",
        details: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        self.original_error = original_error
        super().__init__(message, details=details)
