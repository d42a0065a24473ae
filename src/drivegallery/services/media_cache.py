"""
Fetch cache for Drive media.

Resolves an object id and variant (original or thumbnail) to bytes, serving
from a bounded in-process cache when a fresh entry exists and pulling from
the upstream object store otherwise. Entries expire by age and are evicted
oldest-first in batches once the cache grows past its capacity.
"""

from __future__ import annotations

import itertools
import logging
import math
import re
import threading
import time
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from drivegallery.config.settings import Settings
from drivegallery.exceptions import (
    InvalidIdentifierError,
    NotFoundError,
    ThumbnailUnavailableError,
    UpstreamUnavailableError,
)
from drivegallery.services.interfaces import ObjectStoreInterface
from drivegallery.services.models import (
    CacheStats,
    CacheStatus,
    MediaVariant,
    ResolvedMedia,
)

logger = logging.getLogger(__name__)

_OBJECT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,256}$")

# Trailing Google image-size token: =s220, =w200-h150-c, =s1600-rw ...
_SIZE_TOKEN_PATTERN = re.compile(r"=(?:[swh]\d+)(?:-[a-z0-9]+)*$", re.IGNORECASE)

_DEFAULT_CONTENT_TYPE = "image/jpeg"

_KEY_PREFIXES = {
    MediaVariant.ORIGINAL: "img_",
    MediaVariant.THUMBNAIL: "thumb_",
}


# ----------------------------------------------------------------------
# Cache storage
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class CacheEntry:
    """A cached payload.

    Attributes
    ----------
    key : str
        ``img_<id>`` or ``thumb_<id>``.
    payload : bytes
        The object bytes.
    content_type : str
        MIME type served with the payload.
    stored_at : float
        Clock reading at insertion, used for TTL and eviction order.
    sequence : int
        Insertion counter breaking ``stored_at`` ties.
    """

    key: str
    payload: bytes
    content_type: str
    stored_at: float
    sequence: int

    @property
    def size(self) -> int:
        return len(self.payload)


class MediaCache:
    """Bounded, age-limited key/value store for media payloads.

    Writers serialize on a lock; readers do a plain dict lookup and always
    see a complete entry because entries are immutable and replaced by a
    single assignment.

    Parameters
    ----------
    max_entries : int
        Capacity. The cache never holds more entries than this once a
        call returns.
    evict_fraction : float
        Share of ``max_entries`` removed in one eviction batch.
    clock : Callable[[], float]
        Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        max_entries: int = 200,
        evict_fraction: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        if not 0 < evict_fraction <= 1:
            raise ValueError("evict_fraction must be in (0, 1]")

        self._max_entries = max_entries
        self._evict_fraction = evict_fraction
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._sequence = itertools.count()

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get(self, key: str, ttl: float) -> CacheEntry | None:
        """Return the entry for ``key`` if it is younger than ``ttl`` seconds.

        A stale entry is removed and ``None`` returned.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at < ttl:
            return entry

        with self._lock:
            # A concurrent refresh may already have replaced it
            if self._entries.get(key) is entry:
                del self._entries[key]
        logger.debug("Cache entry expired: %s", key)
        return None

    def put(self, key: str, payload: bytes, content_type: str) -> CacheEntry:
        """Store ``payload`` under ``key``, evicting the oldest entries if full."""
        with self._lock:
            entry = CacheEntry(
                key=key,
                payload=payload,
                content_type=content_type,
                stored_at=self._clock(),
                sequence=next(self._sequence),
            )
            self._entries[key] = entry
            if len(self._entries) > self._max_entries:
                self._evict_oldest()
        return entry

    def _evict_oldest(self) -> None:
        # Caller holds self._lock
        batch = max(1, math.ceil(self._max_entries * self._evict_fraction))
        low_water = max(1, self._max_entries - batch)
        excess = len(self._entries) - low_water
        victims = sorted(
            self._entries.values(), key=lambda e: (e.stored_at, e.sequence)
        )[:excess]
        for victim in victims:
            del self._entries[victim.key]
        logger.debug(
            "Evicted %d cache entries (size now %d of %d)",
            len(victims),
            len(self._entries),
            self._max_entries,
        )

    def clear(self) -> int:
        """Remove every entry; returns how many were dropped."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        return count

    def entries(self) -> list[CacheEntry]:
        """Snapshot of the current entries."""
        with self._lock:
            return list(self._entries.values())


# ----------------------------------------------------------------------
# MediaCacheService
# ----------------------------------------------------------------------


def _host_allowed(host: str, allowed_hosts: Iterable[str]) -> bool:
    host = host.lower()
    return any(host == allowed or host.endswith("." + allowed) for allowed in allowed_hosts)


class MediaCacheService:
    """Serve Drive media through the in-process cache.

    Parameters
    ----------
    store : ObjectStoreInterface
        Upstream object store.
    cache : MediaCache
        Cache instance owned by the application.
    original_ttl : float
        Freshness window for originals, in seconds.
    thumbnail_ttl : float
        Freshness window for thumbnails, in seconds.
    max_cacheable_bytes : int
        Originals larger than this are streamed through uncached.
    thumbnail_size : int
        Canonical edge length written into thumbnail size tokens.
    allowed_hosts : Iterable[str]
        Hosts (and their subdomains) accepted for thumbnail hints.
    """

    def __init__(
        self,
        store: ObjectStoreInterface,
        cache: MediaCache,
        *,
        original_ttl: float = 24 * 60 * 60,
        thumbnail_ttl: float = 60 * 60,
        max_cacheable_bytes: int = 10 * 1024 * 1024,
        thumbnail_size: int = 400,
        allowed_hosts: Iterable[str] = (
            "drive.google.com",
            "googleusercontent.com",
            "googleapis.com",
        ),
    ) -> None:
        self._store = store
        self._cache = cache
        self._ttls = {
            MediaVariant.ORIGINAL: original_ttl,
            MediaVariant.THUMBNAIL: thumbnail_ttl,
        }
        self._max_cacheable_bytes = max_cacheable_bytes
        self._thumbnail_size = thumbnail_size
        self._allowed_hosts = tuple(h.lower() for h in allowed_hosts)

    @classmethod
    def from_settings(
        cls,
        store: ObjectStoreInterface,
        settings: Settings,
        cache: MediaCache | None = None,
    ) -> MediaCacheService:
        """Build a service (and its cache, unless given) from settings."""
        if cache is None:
            cache = MediaCache(
                max_entries=settings.cache_max_entries,
                evict_fraction=settings.cache_evict_fraction,
            )
        return cls(
            store,
            cache,
            original_ttl=settings.original_cache_ttl,
            thumbnail_ttl=settings.thumbnail_cache_ttl,
            max_cacheable_bytes=settings.max_cacheable_bytes,
            thumbnail_size=settings.thumbnail_size,
            allowed_hosts=settings.thumbnail_allowed_hosts,
        )

    @property
    def cache(self) -> MediaCache:
        return self._cache

    @staticmethod
    def cache_key(object_id: str, variant: MediaVariant) -> str:
        """Compose the cache key for an object rendition."""
        return f"{_KEY_PREFIXES[variant]}{object_id}"

    def ttl_for(self, variant: MediaVariant) -> float:
        return self._ttls[variant]

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(
        self,
        object_id: str,
        variant: MediaVariant = MediaVariant.ORIGINAL,
        hint: str | None = None,
    ) -> ResolvedMedia:
        """Return the bytes for an object rendition.

        Parameters
        ----------
        object_id : str
            Upstream object identifier.
        variant : MediaVariant
            Original content or derived thumbnail.
        hint : str | None
            Pre-resolved thumbnail URL; saves a metadata round trip.

        Returns
        -------
        ResolvedMedia
            Buffered payload (HIT or MISS) or a passthrough stream (BYPASS).

        Raises
        ------
        InvalidIdentifierError
            Malformed id or disallowed hint; no upstream call is made.
        NotFoundError
            The object no longer exists upstream.
        ThumbnailUnavailableError
            The object has no preview.
        RateLimitError
            The upstream is throttling.
        UpstreamUnavailableError
            Network failure or unexpected upstream status.
        """
        if not object_id or not _OBJECT_ID_PATTERN.match(object_id):
            raise InvalidIdentifierError(identifier=object_id)
        if hint is not None and variant is MediaVariant.THUMBNAIL:
            self._validate_hint(hint)

        key = self.cache_key(object_id, variant)
        entry = self._cache.get(key, self.ttl_for(variant))
        if entry is not None:
            logger.debug("Cache hit: %s", key)
            return ResolvedMedia(
                content_type=entry.content_type,
                cache_status=CacheStatus.HIT,
                payload=entry.payload,
                content_length=entry.size,
            )

        if variant is MediaVariant.THUMBNAIL:
            return await self._resolve_thumbnail(object_id, key, hint)
        return await self._resolve_original(object_id, key)

    async def _resolve_thumbnail(
        self, object_id: str, key: str, hint: str | None
    ) -> ResolvedMedia:
        if hint is None:
            metadata = await self._store.get_object_metadata(object_id)
            if not metadata.thumbnail_url:
                raise ThumbnailUnavailableError(identifier=object_id)
            source_url = metadata.thumbnail_url
        else:
            source_url = hint

        url = self.normalize_thumbnail_url(source_url)
        logger.info("Fetching thumbnail for %s from upstream", object_id)
        try:
            stream = await self._store.open_url(url)
        except NotFoundError as exc:
            # Preview links expire; a dead link is an upstream failure here
            raise UpstreamUnavailableError(
                message=f"Thumbnail link for '{object_id}' returned not found",
                details={"identifier": object_id},
                original_error=exc,
            ) from exc

        payload = await stream.read()
        content_type = stream.content_type or _DEFAULT_CONTENT_TYPE
        self._cache.put(key, payload, content_type)
        return ResolvedMedia(
            content_type=content_type,
            cache_status=CacheStatus.MISS,
            payload=payload,
            content_length=len(payload),
        )

    async def _resolve_original(self, object_id: str, key: str) -> ResolvedMedia:
        logger.info("Fetching original %s from upstream", object_id)
        stream = await self._store.open_object(object_id)
        content_type = stream.content_type or _DEFAULT_CONTENT_TYPE
        limit = self._max_cacheable_bytes

        if stream.content_length is not None and stream.content_length > limit:
            logger.info(
                "Original %s is %d bytes; streaming uncached",
                object_id,
                stream.content_length,
            )
            return ResolvedMedia(
                content_type=content_type,
                cache_status=CacheStatus.BYPASS,
                stream=stream.iter_bytes(),
                content_length=stream.content_length,
            )

        if stream.content_length is not None:
            payload = await stream.read()
        else:
            # Unknown length: buffer up to the limit, then fall back to passthrough
            prefix: list[bytes] = []
            buffered = 0
            chunks = stream.iter_bytes()
            async for chunk in chunks:
                prefix.append(chunk)
                buffered += len(chunk)
                if buffered > limit:
                    logger.info(
                        "Original %s exceeded %d bytes without a length; streaming uncached",
                        object_id,
                        limit,
                    )
                    return ResolvedMedia(
                        content_type=content_type,
                        cache_status=CacheStatus.BYPASS,
                        stream=self._resume(prefix, chunks),
                    )
            payload = b"".join(prefix)

        self._cache.put(key, payload, content_type)
        return ResolvedMedia(
            content_type=content_type,
            cache_status=CacheStatus.MISS,
            payload=payload,
            content_length=len(payload),
        )

    @staticmethod
    async def _resume(
        prefix: list[bytes], rest: AsyncIterator[bytes]
    ) -> AsyncIterator[bytes]:
        for chunk in prefix:
            yield chunk
        async for chunk in rest:
            yield chunk

    # ------------------------------------------------------------------
    # Thumbnail URLs
    # ------------------------------------------------------------------

    def _validate_hint(self, hint: str) -> None:
        parts = urlsplit(hint)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise InvalidIdentifierError(
                identifier=hint, reason="not an absolute http(s) URL", field="url"
            )
        if not _host_allowed(parts.hostname, self._allowed_hosts):
            raise InvalidIdentifierError(
                identifier=hint, reason="thumbnail host not allowed", field="url"
            )

    def normalize_thumbnail_url(self, url: str) -> str:
        """Rewrite the size token of a thumbnail URL to the canonical size.

        Examples
        --------
        >>> service.normalize_thumbnail_url("https://lh3.googleusercontent.com/abc=s220")
        'https://lh3.googleusercontent.com/abc=s400'
        >>> service.normalize_thumbnail_url("https://drive.google.com/thumbnail?id=x&sz=w220")
        'https://drive.google.com/thumbnail?id=x&sz=s400'
        """
        token = f"s{self._thumbnail_size}"
        parts = urlsplit(url)

        if _SIZE_TOKEN_PATTERN.search(parts.path):
            path = _SIZE_TOKEN_PATTERN.sub(f"={token}", parts.path)
            return urlunsplit(parts._replace(path=path))

        query = parse_qsl(parts.query, keep_blank_values=True)
        if query:
            if any(name == "sz" for name, _ in query):
                query = [(name, token if name == "sz" else value) for name, value in query]
            else:
                query.append(("sz", token))
            return urlunsplit(parts._replace(query=urlencode(query)))

        return urlunsplit(parts._replace(path=f"{parts.path}={token}"))

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def invalidate_all(self) -> None:
        """Drop every cached entry. Never raises."""
        try:
            dropped = self._cache.clear()
        except Exception:
            logger.error("Failed to clear media cache", exc_info=True)
            return
        logger.info("Media cache invalidated (%d entries dropped)", dropped)

    def stats(self) -> CacheStats:
        entries = self._cache.entries()
        return CacheStats(
            entries=len(entries),
            max_entries=self._cache.max_entries,
            total_bytes=sum(entry.size for entry in entries),
            original_ttl_seconds=int(self._ttls[MediaVariant.ORIGINAL]),
            thumbnail_ttl_seconds=int(self._ttls[MediaVariant.THUMBNAIL]),
        )
