"""Pydantic schemas for the drivegallery API."""

from drivegallery.api.schemas.responses import (
    ApiResponse,
    ErrorCode,
    ProblemDetail,
    ProblemJSONResponse,
)

__all__ = [
    "ApiResponse",
    "ErrorCode",
    "ProblemDetail",
    "ProblemJSONResponse",
]
