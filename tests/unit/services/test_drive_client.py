"""
Unit tests for the Google Drive client.

Covers request construction for listing, metadata and media downloads,
the mapping of Drive HTTP failures onto the error taxonomy, and the
off-loop token refresh. All HTTP goes through httpx.MockTransport.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from typing import Any
from unittest.mock import patch

import httpx
import pytest
from google.auth.exceptions import RefreshError
from httpx import ASGITransport, AsyncClient

from drivegallery.api.main import create_app
from drivegallery.config.settings import Settings
from drivegallery.exceptions import (
    NotFoundError,
    RateLimitError,
    UpstreamUnavailableError,
)
from drivegallery.services.drive_client import (
    DRIVE_SCOPES,
    GoogleDriveClient,
    build_service_account_credentials,
)
from drivegallery.services.media_cache import MediaCache, MediaCacheService
from drivegallery.services.models import MediaVariant

pytestmark = pytest.mark.asyncio

API = "https://www.googleapis.com/drive/v3"


class StubCredentials:
    """Minimal stand-in for google-auth credentials."""

    def __init__(self, valid: bool = True, fail: bool = False) -> None:
        self.valid = valid
        self.token = "token-0" if valid else None
        self.fail = fail
        self.refresh_count = 0

    def refresh(self, request: Any) -> None:
        self.refresh_count += 1
        if self.fail:
            raise RefreshError("invalid_grant")
        self.token = f"token-{self.refresh_count}"
        self.valid = True


def make_client(
    handler: Callable[[httpx.Request], httpx.Response],
    credentials: StubCredentials | None = None,
) -> GoogleDriveClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GoogleDriveClient(
        credentials or StubCredentials(),  # type: ignore[arg-type]
        http_client=http_client,
    )


def drive_error(status: int, reason: str) -> httpx.Response:
    return httpx.Response(
        status,
        json={"error": {"code": status, "errors": [{"reason": reason}]}},
    )


class DroppedConnectionStream(httpx.AsyncByteStream):
    """Response body that sends one chunk and then loses the connection."""

    async def __aiter__(self) -> AsyncIterator[bytes]:
        yield b"partial"
        raise httpx.ReadError("connection reset by peer")


def dropped_media(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        stream=DroppedConnectionStream(),
        headers={"Content-Type": "image/jpeg", "Content-Length": "100"},
    )


# =============================================================================
# Request construction
# =============================================================================


class TestRequests:
    """Tests for Drive API request construction and parsing."""

    async def test_list_objects_builds_query_and_parses_page(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "nextPageToken": "page-2",
                    "files": [
                        {
                            "id": "1AbC",
                            "name": "sunset.jpg",
                            "mimeType": "image/jpeg",
                            "size": "2048",
                            "thumbnailLink": "https://lh3.googleusercontent.com/x=s220",
                            "imageMediaMetadata": {"width": 4000, "height": 3000},
                        }
                    ],
                },
            )

        client = make_client(handler)
        page = await client.list_objects("folder-1", "mimeType contains 'image/'")

        request = seen[0]
        assert request.url.path == "/drive/v3/files"
        assert request.url.params["q"] == (
            "'folder-1' in parents and trashed = false "
            "and mimeType contains 'image/'"
        )
        assert request.url.params["pageSize"] == "50"
        assert request.url.params["orderBy"] == "modifiedTime desc"
        assert "pageToken" not in request.url.params
        assert request.headers["Authorization"] == "Bearer token-0"

        assert page.next_page_token == "page-2"
        item = page.objects[0]
        assert item.id == "1AbC"
        assert item.size == 2048
        assert item.width == 4000
        assert item.thumbnail_url == "https://lh3.googleusercontent.com/x=s220"

    async def test_list_objects_passes_page_token(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"files": []})

        client = make_client(handler)
        page = await client.list_objects("folder-1", page_token="page-2")

        assert seen[0].url.params["pageToken"] == "page-2"
        assert page.objects == []
        assert page.next_page_token is None

    async def test_get_object_metadata(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/drive/v3/files/1AbC"
            assert "thumbnailLink" in request.url.params["fields"]
            return httpx.Response(200, json={"id": "1AbC", "name": "a.png"})

        client = make_client(handler)
        metadata = await client.get_object_metadata("1AbC")

        assert metadata.id == "1AbC"
        assert metadata.thumbnail_url is None

    async def test_open_object_streams_media(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["alt"] == "media"
            return httpx.Response(
                200,
                content=b"\x89PNG-bytes",
                headers={"Content-Type": "image/png; charset=binary"},
            )

        client = make_client(handler)
        stream = await client.open_object("1AbC")

        assert stream.content_type == "image/png"
        assert stream.content_length == len(b"\x89PNG-bytes")
        assert await stream.read() == b"\x89PNG-bytes"

    async def test_open_url_only_sends_token_to_google_hosts(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, content=b"thumb")

        client = make_client(handler)
        await client.open_url("https://lh3.googleusercontent.com/abc=s400")
        await client.open_url("https://cdn.example.com/abc.jpg")

        assert seen[0].headers["Authorization"] == "Bearer token-0"
        assert "Authorization" not in seen[1].headers


# =============================================================================
# Error mapping
# =============================================================================


class TestErrorMapping:
    """Tests for mapping Drive failures onto drivegallery errors."""

    async def test_404_is_not_found(self) -> None:
        client = make_client(lambda request: drive_error(404, "notFound"))

        with pytest.raises(NotFoundError) as exc_info:
            await client.open_object("gone")

        assert exc_info.value.identifier == "gone"

    async def test_429_is_rate_limited_with_retry_after(self) -> None:
        client = make_client(
            lambda request: httpx.Response(429, headers={"Retry-After": "30"})
        )

        with pytest.raises(RateLimitError) as exc_info:
            await client.open_object("1AbC")

        assert exc_info.value.retry_after == 30

    @pytest.mark.parametrize("reason", ["rateLimitExceeded", "userRateLimitExceeded"])
    async def test_403_rate_limit_reason_is_rate_limited(self, reason: str) -> None:
        client = make_client(lambda request: drive_error(403, reason))

        with pytest.raises(RateLimitError):
            await client.get_object_metadata("1AbC")

    async def test_other_403_is_upstream_failure(self) -> None:
        client = make_client(lambda request: drive_error(403, "insufficientFilePermissions"))

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await client.get_object_metadata("1AbC")

        assert exc_info.value.details is not None
        assert exc_info.value.details["status"] == 403
        assert exc_info.value.details["reason"] == "insufficientFilePermissions"

    async def test_5xx_is_upstream_failure(self) -> None:
        client = make_client(lambda request: httpx.Response(503, text="unavailable"))

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await client.open_object("1AbC")

        assert exc_info.value.status_code == 502
        assert exc_info.value.retryable is True

    @pytest.mark.parametrize(
        "error",
        [httpx.ConnectError("refused"), httpx.ReadTimeout("slow")],
    )
    async def test_transport_errors_are_upstream_failures(
        self, error: httpx.TransportError
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise error

        client = make_client(handler)

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await client.open_object("1AbC")

        assert exc_info.value.original_error is error

    async def test_malformed_json_is_upstream_failure(self) -> None:
        client = make_client(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(UpstreamUnavailableError):
            await client.get_object_metadata("1AbC")


# =============================================================================
# Connection lost mid-body
# =============================================================================


class TestDroppedConnection:
    """A connection that fails after the headers is an upstream failure."""

    async def test_reading_body_raises_upstream_failure(self) -> None:
        client = make_client(dropped_media)
        stream = await client.open_object("abc123")

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await stream.read()

        assert isinstance(exc_info.value.original_error, httpx.ReadError)
        assert exc_info.value.details == {
            "identifier": "abc123",
            "reason": "ReadError",
        }

    @pytest.mark.parametrize("content_length", ["100", None])
    async def test_partial_body_is_not_cached(
        self, content_length: str | None
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            headers = {"Content-Type": "image/jpeg"}
            if content_length is not None:
                headers["Content-Length"] = content_length
            return httpx.Response(
                200, stream=DroppedConnectionStream(), headers=headers
            )

        service = MediaCacheService(make_client(handler), MediaCache(max_entries=10))

        with pytest.raises(UpstreamUnavailableError):
            await service.resolve("abc123", MediaVariant.ORIGINAL)

        assert len(service.cache) == 0

    async def test_proxy_returns_502_and_caches_nothing(
        self, test_settings: Settings
    ) -> None:
        app = create_app(test_settings, store=make_client(dropped_media))
        transport = ASGITransport(app=app, raise_app_exceptions=False)

        async with AsyncClient(transport=transport, base_url="http://test") as http:
            response = await http.get("/api/drive-image/abc123")

        assert response.status_code == 502
        assert response.json()["code"] == "UPSTREAM_UNAVAILABLE"
        assert len(app.state.media_service.cache) == 0


# =============================================================================
# Credentials
# =============================================================================


class TestCredentials:
    """Tests for token refresh and credential construction."""

    async def test_invalid_token_is_refreshed_once(self) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers["Authorization"])
            return httpx.Response(200, json={"id": "1AbC"})

        credentials = StubCredentials(valid=False)
        client = make_client(handler, credentials)

        await client.get_object_metadata("1AbC")
        await client.get_object_metadata("1AbC")

        assert credentials.refresh_count == 1
        assert seen == ["Bearer token-1", "Bearer token-1"]

    async def test_refresh_failure_is_upstream_failure(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(200, json={})

        client = make_client(handler, StubCredentials(valid=False, fail=True))

        with pytest.raises(UpstreamUnavailableError):
            await client.get_object_metadata("1AbC")

        assert calls == 0

    async def test_build_service_account_credentials(self) -> None:
        with patch(
            "drivegallery.services.drive_client.service_account.Credentials"
            ".from_service_account_info"
        ) as mock_from_info:
            build_service_account_credentials("svc@project.iam.gserviceaccount.com", "KEY")

        info = mock_from_info.call_args.args[0]
        assert info["client_email"] == "svc@project.iam.gserviceaccount.com"
        assert info["private_key"] == "KEY"
        assert info["token_uri"] == "https://oauth2.googleapis.com/token"
        assert mock_from_info.call_args.kwargs["scopes"] == DRIVE_SCOPES

    async def test_aclose_leaves_injected_client_open(self) -> None:
        http_client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200))
        )
        client = GoogleDriveClient(StubCredentials(), http_client=http_client)  # type: ignore[arg-type]

        await client.aclose()

        assert not http_client.is_closed
        await http_client.aclose()
