"""FastAPI dependencies for API endpoints."""

from __future__ import annotations

from fastapi import Request

from drivegallery.config.settings import Settings
from drivegallery.exceptions import UpstreamUnavailableError
from drivegallery.services.media_cache import MediaCacheService


def get_app_settings(request: Request) -> Settings:
    """
    Dependency for the settings the application was created with.

    Returns
    -------
    Settings
        The settings stored on ``app.state`` by ``create_app``.
    """
    return request.app.state.settings  # type: ignore[no-any-return]


def get_optional_media_service(request: Request) -> MediaCacheService | None:
    """Dependency returning the media service, or None when Drive is unconfigured."""
    return getattr(request.app.state, "media_service", None)


def get_media_service(request: Request) -> MediaCacheService:
    """
    Dependency for the lifespan-owned media cache service.

    Raises
    ------
    UpstreamUnavailableError
        502 if no upstream client could be configured (missing
        service-account credentials).
    """
    service = get_optional_media_service(request)
    if service is None:
        raise UpstreamUnavailableError(
            message="Google Drive credentials are not configured",
            details={"reason": "unconfigured"},
        )
    return service
