"""
Pytest configuration and fixtures for drivegallery tests.
"""

from __future__ import annotations

import pytest

from drivegallery.config.settings import Settings
from drivegallery.services.media_cache import MediaCache, MediaCacheService
from tests.fakes import FakeClock, FakeObjectStore


@pytest.fixture
def test_settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        revalidate_secret="s3cret",
        cache_max_entries=10,
        cache_evict_fraction=0.2,
        max_cacheable_bytes=4096,
        thumbnail_size=400,
        download_request_delay=0.0,
        download_backoff_base=0.01,
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def media_cache(fake_clock: FakeClock) -> MediaCache:
    return MediaCache(max_entries=10, evict_fraction=0.2, clock=fake_clock)


@pytest.fixture
def media_service(
    fake_store: FakeObjectStore, media_cache: MediaCache
) -> MediaCacheService:
    return MediaCacheService(
        fake_store,
        media_cache,
        original_ttl=24 * 60 * 60,
        thumbnail_ttl=60 * 60,
        max_cacheable_bytes=4096,
        thumbnail_size=400,
    )
