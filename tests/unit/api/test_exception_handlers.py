"""Unit tests for API exception handlers.

Tests that every drivegallery error type is rendered as an RFC 7807
Problem Detail with the right status, code and headers.
"""

from __future__ import annotations

import logging
from typing import Any

import pytest
from fastapi import FastAPI, Query
from httpx import ASGITransport, AsyncClient, Response

from drivegallery.api.exception_handlers import (
    MAX_DETAIL_LENGTH,
    TRUNCATION_SUFFIX,
    _truncate_detail,
    register_exception_handlers,
)
from drivegallery.api.middleware import RequestIdMiddleware
from drivegallery.exceptions import (
    APIError,
    AuthenticationError,
    InvalidIdentifierError,
    NotFoundError,
    RateLimitError,
    ThumbnailUnavailableError,
    UpstreamUnavailableError,
)

# Mark all tests as async
pytestmark = pytest.mark.asyncio


def build_app(error: Exception) -> FastAPI:
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom() -> None:
        raise error

    @app.get("/typed")
    async def typed(count: int = Query(...)) -> dict[str, int]:
        return {"count": count}

    return app


async def fetch(app: FastAPI, path: str = "/boom", **kwargs: Any) -> Response:
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        return await client.get(path, **kwargs)


class TestProblemDetails:
    """Tests for APIError subclasses rendered as Problem Details."""

    @pytest.mark.parametrize(
        ("error", "status", "code"),
        [
            (InvalidIdentifierError(identifier="../x"), 400, "INVALID_IDENTIFIER"),
            (AuthenticationError(), 401, "NOT_AUTHENTICATED"),
            (NotFoundError(resource_type="File", identifier="1AbC"), 404, "NOT_FOUND"),
            (ThumbnailUnavailableError(identifier="1AbC"), 404, "THUMBNAIL_UNAVAILABLE"),
            (RateLimitError("slow down"), 429, "RATE_LIMITED"),
            (UpstreamUnavailableError(), 502, "UPSTREAM_UNAVAILABLE"),
            (APIError("generic"), 500, "INTERNAL_ERROR"),
        ],
    )
    async def test_status_and_code(
        self, error: APIError, status: int, code: str
    ) -> None:
        response = await fetch(build_app(error))

        assert response.status_code == status
        assert response.headers["content-type"] == "application/problem+json"
        body = response.json()
        assert body["code"] == code
        assert body["status"] == status
        assert body["type"] == f"https://drivegallery.dev/errors/{code}"
        assert body["instance"] == "/boom"
        assert body["request_id"]

    async def test_not_found_detail_names_the_object(self) -> None:
        error = NotFoundError(resource_type="File", identifier="1AbC")

        response = await fetch(build_app(error))

        assert response.json()["detail"] == "File '1AbC' not found"

    async def test_rate_limit_sets_retry_after(self) -> None:
        response = await fetch(build_app(RateLimitError("slow down", retry_after=30)))

        assert response.headers["Retry-After"] == "30"

    async def test_rate_limit_without_retry_after_has_no_header(self) -> None:
        response = await fetch(build_app(RateLimitError("slow down")))

        assert "Retry-After" not in response.headers

    async def test_upstream_detail_is_generic_and_logged(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        error = UpstreamUnavailableError(
            message="Drive API returned 503 for 'secret-file-id'",
            details={"status": 503},
        )

        with caplog.at_level(logging.ERROR):
            response = await fetch(build_app(error))

        assert response.json()["detail"] == "Upstream object store unavailable"
        assert "secret-file-id" in caplog.text

    async def test_request_id_is_echoed_in_body(self) -> None:
        response = await fetch(
            build_app(AuthenticationError()), headers={"X-Request-ID": "req-42"}
        )

        assert response.json()["request_id"] == "req-42"
        assert response.headers["X-Request-ID"] == "req-42"


class TestFallbackHandlers:
    """Tests for validation and unexpected errors."""

    async def test_validation_error_returns_422_with_errors(self) -> None:
        response = await fetch(build_app(AuthenticationError()), "/typed?count=abc")

        assert response.status_code == 422
        body = response.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["errors"][0]["loc"] == ["query", "count"]

    async def test_unexpected_error_returns_generic_500(self) -> None:
        response = await fetch(build_app(RuntimeError("database password is hunter2")))

        assert response.status_code == 500
        body = response.json()
        assert body["code"] == "INTERNAL_ERROR"
        assert "hunter2" not in body["detail"]


class TestTruncation:
    """Tests for detail truncation."""

    async def test_short_detail_unchanged(self) -> None:
        assert _truncate_detail("short") == "short"

    async def test_long_detail_truncated(self) -> None:
        result = _truncate_detail("x" * (MAX_DETAIL_LENGTH + 100))

        assert len(result) == MAX_DETAIL_LENGTH
        assert result.endswith(TRUNCATION_SUFFIX)
