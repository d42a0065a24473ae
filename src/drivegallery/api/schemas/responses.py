"""Response envelopes and RFC 7807 error bodies for the media proxy."""

from __future__ import annotations

from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from starlette.responses import JSONResponse


class ErrorCode(str, Enum):
    """Machine-readable error codes carried in Problem Detail bodies."""

    INVALID_IDENTIFIER = "INVALID_IDENTIFIER"  # 400
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"  # 401
    NOT_FOUND = "NOT_FOUND"  # 404
    THUMBNAIL_UNAVAILABLE = "THUMBNAIL_UNAVAILABLE"  # 404
    VALIDATION_ERROR = "VALIDATION_ERROR"  # 422
    RATE_LIMITED = "RATE_LIMITED"  # 429
    INTERNAL_ERROR = "INTERNAL_ERROR"  # 500
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"  # 502


ERROR_TYPE_BASE = "https://drivegallery.dev/errors"

ERROR_TITLES: dict[ErrorCode, str] = {
    ErrorCode.INVALID_IDENTIFIER: "Invalid Identifier",
    ErrorCode.NOT_AUTHENTICATED: "Authentication Required",
    ErrorCode.NOT_FOUND: "Object Not Found",
    ErrorCode.THUMBNAIL_UNAVAILABLE: "Thumbnail Unavailable",
    ErrorCode.VALIDATION_ERROR: "Validation Error",
    ErrorCode.RATE_LIMITED: "Upstream Rate Limited",
    ErrorCode.INTERNAL_ERROR: "Internal Server Error",
    ErrorCode.UPSTREAM_UNAVAILABLE: "Upstream Unavailable",
}


def get_error_type_uri(code: ErrorCode) -> str:
    """
    Build the RFC 7807 ``type`` URI for an error code.

    Examples
    --------
    >>> get_error_type_uri(ErrorCode.NOT_FOUND)
    'https://drivegallery.dev/errors/NOT_FOUND'
    """
    return f"{ERROR_TYPE_BASE}/{code.value}"


T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Envelope for successful JSON responses."""

    model_config = ConfigDict(strict=True)

    data: T


class ProblemDetail(BaseModel):
    """
    RFC 7807 Problem Details body.

    ``code`` repeats the last path segment of ``type`` so clients can
    switch on it without parsing URIs; ``request_id`` matches the
    ``X-Request-ID`` response header.
    """

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "type": "https://drivegallery.dev/errors/NOT_FOUND",
                "title": "Object Not Found",
                "status": 404,
                "detail": "File '1AbC' not found",
                "instance": "/api/drive-image/1AbC",
                "code": "NOT_FOUND",
                "request_id": "550e8400-e29b-41d4-a716-446655440000",
            }
        }
    )

    type: str
    title: str
    status: int = Field(..., ge=400, le=599)
    detail: str
    instance: str
    code: str
    request_id: str

    @classmethod
    def for_code(
        cls,
        code: ErrorCode,
        *,
        status: int,
        detail: str,
        instance: str,
        request_id: str,
        **extra: Any,
    ) -> ProblemDetail:
        """Fill ``type``, ``title`` and ``code`` from an ``ErrorCode``."""
        return cls(
            type=get_error_type_uri(code),
            title=ERROR_TITLES.get(code, "Error"),
            status=status,
            detail=detail,
            instance=instance,
            code=code.value,
            request_id=request_id,
            **extra,
        )


class FieldError(BaseModel):
    """One failed request parameter, e.g. ``loc=["query", "thumb"]``."""

    loc: list[str | int]
    msg: str
    type: str


class ValidationProblemDetail(ProblemDetail):
    """Problem Detail for 422 responses, listing each invalid parameter."""

    errors: list[FieldError] = Field(default_factory=list)


class ProblemJSONResponse(JSONResponse):
    """JSON response served as ``application/problem+json``."""

    media_type = "application/problem+json"
