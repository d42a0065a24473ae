"""Health check endpoint - no authentication required."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict

from drivegallery import __version__
from drivegallery.api.deps import get_optional_media_service
from drivegallery.api.schemas.responses import ApiResponse
from drivegallery.services.media_cache import MediaCacheService
from drivegallery.services.models import CacheStats


class HealthStatus(BaseModel):
    """Application health status."""

    model_config = ConfigDict(strict=True)

    status: str  # "healthy", "degraded"
    version: str
    upstream_configured: bool
    timestamp: datetime
    cache: Optional[CacheStats] = None


class HealthResponse(ApiResponse[HealthStatus]):
    """Response for health check endpoint."""

    pass


router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(
    service: Optional[MediaCacheService] = Depends(get_optional_media_service),
) -> HealthResponse:
    """
    Health check endpoint - no authentication required.

    Reports whether an upstream client is configured and the current
    media cache statistics.
    """
    health_data = HealthStatus(
        status="healthy" if service is not None else "degraded",
        version=__version__,
        upstream_configured=service is not None,
        timestamp=datetime.now(timezone.utc),
        cache=service.stats() if service is not None else None,
    )
    return HealthResponse(data=health_data)
