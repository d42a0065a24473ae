"""
Google Drive client for the upstream object store.

Talks to the Drive v3 REST API over ``httpx`` with service-account
credentials from ``google-auth``. Token refreshes are blocking calls in
``google-auth`` and run in a worker thread so the event loop stays free.

HTTP failures are mapped onto the drivegallery error taxonomy; the client
never retries on its own.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import urlparse

import httpx
from google.auth.credentials import Credentials
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from drivegallery import __version__
from drivegallery.exceptions import (
    NotFoundError,
    RateLimitError,
    UpstreamUnavailableError,
)
from drivegallery.services.interfaces import ObjectStoreInterface
from drivegallery.services.models import ObjectMetadata, ObjectPage, ObjectStream

logger = logging.getLogger(__name__)

DRIVE_SCOPES = ["https://www.googleapis.com/auth/drive.readonly"]
_TOKEN_URI = "https://oauth2.googleapis.com/token"

_FILE_FIELDS = "id, name, mimeType, size, imageMediaMetadata, thumbnailLink"
_LIST_FIELDS = f"nextPageToken, files({_FILE_FIELDS})"
_LIST_PAGE_SIZE = 50

# Drive reports per-user throttling as 403 with one of these reasons
_RATE_LIMIT_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded"})

# Hosts that accept the Drive bearer token
_AUTHENTICATED_HOST_SUFFIXES = ("googleapis.com", "googleusercontent.com", "google.com")


def build_service_account_credentials(email: str, private_key: str) -> Credentials:
    """Create read-only Drive credentials for a service account.

    Parameters
    ----------
    email : str
        Service account email address.
    private_key : str
        PEM-encoded private key with real newlines.

    Returns
    -------
    Credentials
        Unrefreshed service-account credentials scoped to ``drive.readonly``.
    """
    info = {
        "type": "service_account",
        "client_email": email,
        "private_key": private_key,
        "token_uri": _TOKEN_URI,
    }
    return service_account.Credentials.from_service_account_info(
        info, scopes=DRIVE_SCOPES
    )


def _host_accepts_token(url: str) -> bool:
    host = (urlparse(url).hostname or "").lower()
    return any(
        host == suffix or host.endswith("." + suffix)
        for suffix in _AUTHENTICATED_HOST_SUFFIXES
    )


class GoogleDriveClient(ObjectStoreInterface):
    """
    Async Drive v3 client implementing ``ObjectStoreInterface``.

    Parameters
    ----------
    credentials : Credentials
        ``google-auth`` credentials; refreshed on demand.
    base_url : str
        Drive API base URL.
    timeout : float
        Per-request timeout in seconds.
    http_client : httpx.AsyncClient | None
        Client to use; one is created (and owned) when omitted.

    Examples
    --------
    >>> creds = build_service_account_credentials(email, key)
    >>> client = GoogleDriveClient(creds)
    >>> meta = await client.get_object_metadata("1AbCdEf")
    >>> meta.thumbnail_url
    'https://lh3.googleusercontent.com/...=s220'
    """

    def __init__(
        self,
        credentials: Credentials,
        *,
        base_url: str = "https://www.googleapis.com/drive/v3",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._credentials = credentials
        self._base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": f"drivegallery/{__version__}"},
        )
        self._token_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # ObjectStoreInterface
    # ------------------------------------------------------------------

    async def list_objects(
        self,
        folder_id: str,
        filter_query: str | None = None,
        page_token: str | None = None,
    ) -> ObjectPage:
        query = f"'{folder_id}' in parents and trashed = false"
        if filter_query:
            query += f" and {filter_query}"

        params: dict[str, Any] = {
            "q": query,
            "fields": _LIST_FIELDS,
            "orderBy": "modifiedTime desc",
            "pageSize": _LIST_PAGE_SIZE,
        }
        if page_token:
            params["pageToken"] = page_token

        response = await self._send(f"{self._base_url}/files", folder_id, params=params)
        payload = await self._read_json(response)

        return ObjectPage(
            objects=[self._parse_file(item) for item in payload.get("files", [])],
            next_page_token=payload.get("nextPageToken"),
        )

    async def get_object_metadata(self, object_id: str) -> ObjectMetadata:
        response = await self._send(
            f"{self._base_url}/files/{object_id}",
            object_id,
            params={"fields": _FILE_FIELDS, "supportsAllDrives": "true"},
        )
        return self._parse_file(await self._read_json(response))

    async def open_object(self, object_id: str) -> ObjectStream:
        response = await self._send(
            f"{self._base_url}/files/{object_id}",
            object_id,
            params={"alt": "media", "supportsAllDrives": "true"},
        )
        return self._to_stream(response, object_id)

    async def open_url(self, url: str) -> ObjectStream:
        response = await self._send(url, url, authenticate=_host_accepts_token(url))
        return self._to_stream(response, url)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _authorization_headers(self) -> dict[str, str]:
        """Return a bearer header, refreshing the token off-loop if needed."""
        async with self._token_lock:
            if not self._credentials.valid:
                logger.debug("Refreshing Drive access token")
                try:
                    await asyncio.to_thread(
                        self._credentials.refresh, GoogleAuthRequest()
                    )
                except GoogleAuthError as exc:
                    raise UpstreamUnavailableError(
                        message="Drive credentials could not be refreshed",
                        details={"reason": type(exc).__name__},
                        original_error=exc,
                    ) from exc
        return {"Authorization": f"Bearer {self._credentials.token}"}

    async def _send(
        self,
        url: str,
        identifier: str,
        *,
        params: dict[str, Any] | None = None,
        authenticate: bool = True,
    ) -> httpx.Response:
        """Send a streaming GET and map failures to domain errors.

        The returned response is open; callers read or stream the body.
        """
        headers = await self._authorization_headers() if authenticate else {}
        request = self._client.build_request("GET", url, params=params, headers=headers)

        try:
            response = await self._client.send(request, stream=True)
        except httpx.TimeoutException as exc:
            logger.warning("Timeout calling Drive for %s", identifier)
            raise UpstreamUnavailableError(
                message=f"Timeout fetching '{identifier}' from Drive",
                details={"identifier": identifier, "reason": "timeout"},
                original_error=exc,
            ) from exc
        except httpx.TransportError as exc:
            logger.warning("Network error calling Drive for %s: %s", identifier, exc)
            raise UpstreamUnavailableError(
                message=f"Network error fetching '{identifier}' from Drive",
                details={"identifier": identifier, "reason": type(exc).__name__},
                original_error=exc,
            ) from exc

        if response.status_code == 200:
            return response

        try:
            await response.aread()
        finally:
            await response.aclose()
        raise self._error_for(response, identifier)

    @staticmethod
    def _error_reason(response: httpx.Response) -> str | None:
        """Extract the first ``error.errors[].reason`` from a Drive error body."""
        try:
            return str(response.json()["error"]["errors"][0]["reason"])
        except (ValueError, KeyError, IndexError, TypeError):
            return None

    def _error_for(self, response: httpx.Response, identifier: str) -> Exception:
        status = response.status_code
        reason = self._error_reason(response)

        if status in (404, 410):
            logger.info("Drive object not found (%d): %s", status, identifier)
            return NotFoundError(resource_type="File", identifier=identifier)

        if status == 429 or (status == 403 and reason in _RATE_LIMIT_REASONS):
            retry_after = response.headers.get("retry-after")
            logger.warning("Drive rate limit hit (%d, %s) for %s", status, reason, identifier)
            return RateLimitError(
                message="Drive API rate limit exceeded",
                details={"identifier": identifier, "status": status},
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
            )

        logger.warning(
            "Drive returned %d (%s) for %s", status, reason or "no reason", identifier
        )
        return UpstreamUnavailableError(
            message=f"Drive API returned {status} for '{identifier}'",
            details={"identifier": identifier, "status": status, "reason": reason},
        )

    @staticmethod
    async def _read_json(response: httpx.Response) -> dict[str, Any]:
        try:
            await response.aread()
        finally:
            await response.aclose()
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamUnavailableError(
                message="Drive API returned a malformed JSON body",
                original_error=exc,
            ) from exc
        return payload if isinstance(payload, dict) else {}

    @staticmethod
    async def _body_chunks(
        response: httpx.Response, identifier: str
    ) -> AsyncIterator[bytes]:
        """Yield the response body; a dropped connection is an upstream failure."""
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        except httpx.TransportError as exc:
            logger.warning(
                "Connection lost reading %s from Drive after %d bytes: %s",
                identifier,
                response.num_bytes_downloaded,
                exc,
            )
            raise UpstreamUnavailableError(
                message=f"Connection lost while reading '{identifier}' from Drive",
                details={"identifier": identifier, "reason": type(exc).__name__},
                original_error=exc,
            ) from exc

    def _to_stream(self, response: httpx.Response, identifier: str) -> ObjectStream:
        content_type = response.headers.get("content-type", "").split(";")[0].strip()
        length_header = response.headers.get("content-length")
        content_length = (
            int(length_header)
            if length_header and length_header.isdigit()
            and "content-encoding" not in response.headers
            else None
        )
        return ObjectStream(
            self._body_chunks(response, identifier),
            content_type=content_type or None,
            content_length=content_length,
            close=response.aclose,
        )

    @staticmethod
    def _parse_file(item: dict[str, Any]) -> ObjectMetadata:
        image_meta = item.get("imageMediaMetadata") or {}
        size = item.get("size")
        return ObjectMetadata(
            id=str(item.get("id", "")),
            name=item.get("name"),
            mime_type=item.get("mimeType"),
            thumbnail_url=item.get("thumbnailLink"),
            size=int(size) if size is not None else None,
            width=image_meta.get("width"),
            height=image_meta.get("height"),
        )
