"""
Data models shared by the media services.

Pydantic models describe upstream metadata and cache statistics; the
stream and resolution types are plain classes because they wrap live
transport objects.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, Field


class MediaVariant(str, Enum):
    """Which rendition of an object is requested."""

    ORIGINAL = "original"
    THUMBNAIL = "thumbnail"


class CacheStatus(str, Enum):
    """Value of the ``X-Cache`` response header."""

    HIT = "HIT"
    MISS = "MISS"
    BYPASS = "BYPASS"


class ObjectMetadata(BaseModel):
    """Metadata for a single object in the upstream store.

    Attributes
    ----------
    id : str
        Upstream object identifier.
    name : str | None
        File name as stored upstream.
    mime_type : str | None
        MIME type reported by the upstream.
    thumbnail_url : str | None
        Address of a derived preview, if the upstream offers one.
    size : int | None
        Size of the original content in bytes, when known.
    width : int | None
        Image width in pixels, when known.
    height : int | None
        Image height in pixels, when known.
    """

    id: str
    name: str | None = None
    mime_type: str | None = None
    thumbnail_url: str | None = None
    size: int | None = None
    width: int | None = None
    height: int | None = None


class ObjectPage(BaseModel):
    """One page of an upstream folder listing."""

    objects: list[ObjectMetadata] = Field(default_factory=list)
    next_page_token: str | None = None


class CacheStats(BaseModel):
    """Statistics about the in-process media cache.

    Attributes
    ----------
    entries : int
        Number of cached entries.
    max_entries : int
        Configured capacity.
    total_bytes : int
        Sum of all cached payload sizes.
    original_ttl_seconds : int
        TTL applied to original renditions.
    thumbnail_ttl_seconds : int
        TTL applied to thumbnails.
    """

    entries: int
    max_entries: int
    total_bytes: int
    original_ttl_seconds: int
    thumbnail_ttl_seconds: int


class ObjectStream:
    """An open upstream response body.

    Wraps an async byte iterator together with the metadata the upstream
    reported for it. The stream must be consumed or closed exactly once.

    Parameters
    ----------
    chunks : AsyncIterator[bytes]
        Body chunks in order.
    content_type : str | None
        MIME type from the upstream, if any.
    content_length : int | None
        Declared body length, if known.
    close : Callable[[], Awaitable[None]] | None
        Releases the underlying connection.
    """

    def __init__(
        self,
        chunks: AsyncIterator[bytes],
        content_type: str | None = None,
        content_length: int | None = None,
        close: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self._chunks = chunks
        self.content_type = content_type
        self.content_length = content_length
        self._close = close
        self._closed = False

    @classmethod
    def from_bytes(cls, data: bytes, content_type: str | None = None) -> ObjectStream:
        """Build a stream over an in-memory payload."""

        async def _one_chunk() -> AsyncIterator[bytes]:
            yield data

        return cls(_one_chunk(), content_type=content_type, content_length=len(data))

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """Yield the body chunks and close the stream afterwards."""
        try:
            async for chunk in self._chunks:
                yield chunk
        finally:
            await self.aclose()

    async def read(self) -> bytes:
        """Read the whole body into memory."""
        return b"".join([chunk async for chunk in self.iter_bytes()])

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._close is not None:
            await self._close()

    async def __aenter__(self) -> ObjectStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


@dataclass
class ResolvedMedia:
    """Outcome of resolving an object through the fetch cache.

    Exactly one of ``payload`` and ``stream`` is set: buffered content
    (cache hits and cacheable misses) or an uncached passthrough stream.
    """

    content_type: str
    cache_status: CacheStatus
    payload: bytes | None = None
    stream: AsyncIterator[bytes] | None = None
    content_length: int | None = None

    @property
    def is_streaming(self) -> bool:
        return self.stream is not None
