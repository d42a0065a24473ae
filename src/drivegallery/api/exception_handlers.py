"""Exception handlers rendering errors as RFC 7807 Problem Details.

Every error leaving the proxy, whether a domain ``APIError``, a request
validation failure or an unexpected exception, is returned as
``application/problem+json`` carrying the request ID.

RFC 7807 Reference: https://tools.ietf.org/html/rfc7807
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError

from drivegallery.api.middleware.request_id import get_request_id
from drivegallery.api.schemas.responses import (
    ErrorCode,
    FieldError,
    ProblemDetail,
    ProblemJSONResponse,
    ValidationProblemDetail,
)
from drivegallery.exceptions import APIError, RateLimitError, UpstreamUnavailableError

logger = logging.getLogger(__name__)

MAX_DETAIL_LENGTH = 4096

TRUNCATION_SUFFIX = "... (truncated)"

# Shown instead of upstream error text, which can name file ids and hosts
UPSTREAM_DETAIL = "Upstream object store unavailable"


def _truncate_detail(detail: str) -> str:
    """Cap ``detail`` at ``MAX_DETAIL_LENGTH`` characters, suffix included."""
    if len(detail) <= MAX_DETAIL_LENGTH:
        return detail
    return detail[: MAX_DETAIL_LENGTH - len(TRUNCATION_SUFFIX)] + TRUNCATION_SUFFIX


def _request_id(request: Request) -> str:
    # The context variable is already reset when the outermost error
    # middleware handles an exception; request.state still has the ID.
    return get_request_id() or str(getattr(request.state, "request_id", "") or "-")


def _render(
    problem: ProblemDetail, headers: dict[str, str] | None = None
) -> ProblemJSONResponse:
    return ProblemJSONResponse(
        content=problem.model_dump(),
        status_code=problem.status,
        headers=headers,
    )


async def api_error_handler(request: Request, exc: APIError) -> ProblemJSONResponse:
    """
    Render an ``APIError`` with its own status and code.

    Rate-limit errors carry ``Retry-After`` when the upstream sent one.
    Upstream failures are logged in full and answered with a generic
    detail.
    """
    detail = exc.message
    headers: dict[str, str] | None = None

    if isinstance(exc, RateLimitError) and exc.retry_after is not None:
        headers = {"Retry-After": str(exc.retry_after)}
    elif isinstance(exc, UpstreamUnavailableError):
        logger.error(
            "Upstream failure on %s: %s (details=%s)",
            request.url.path,
            exc.message,
            exc.details,
            exc_info=exc.original_error,
        )
        detail = UPSTREAM_DETAIL

    problem = ProblemDetail.for_code(
        exc.error_code,
        status=exc.status_code,
        detail=_truncate_detail(detail),
        instance=request.url.path,
        request_id=_request_id(request),
    )
    return _render(problem, headers)


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> ProblemJSONResponse:
    """Render query/path validation failures as 422 with per-field errors."""
    errors = [
        FieldError(
            loc=list(error.get("loc", ())),
            msg=error.get("msg", ""),
            type=error.get("type", ""),
        )
        for error in exc.errors()
    ]
    problem = ValidationProblemDetail.for_code(
        ErrorCode.VALIDATION_ERROR,
        status=422,
        detail="Request validation failed",
        instance=request.url.path,
        request_id=_request_id(request),
        errors=errors,
    )
    return _render(problem)


async def generic_error_handler(
    request: Request, exc: Exception
) -> ProblemJSONResponse:
    """Render anything unexpected as a bare 500; the traceback is only logged."""
    logger.exception("Unhandled exception on %s", request.url.path)
    problem = ProblemDetail.for_code(
        ErrorCode.INTERNAL_ERROR,
        status=500,
        detail="An unexpected error occurred",
        instance=request.url.path,
        request_id=_request_id(request),
    )
    return _render(problem)


def register_exception_handlers(app: FastAPI) -> None:
    """Install the Problem Detail handlers on ``app``."""
    app.add_exception_handler(APIError, api_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, generic_error_handler)
