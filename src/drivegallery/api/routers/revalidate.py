"""Cache invalidation endpoints.

- GET /revalidate?secret=... - Manual invalidation
- POST /revalidate - Drive change notification, or manual with ?secret=...

Drive push notifications are recognised by an ``X-Goog-Channel-Id`` that
starts with the configured channel prefix. Registering and renewing the
watch channel happens outside this service.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel

from drivegallery.api.deps import get_app_settings, get_optional_media_service
from drivegallery.config.settings import Settings
from drivegallery.exceptions import AuthenticationError
from drivegallery.services.media_cache import MediaCacheService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["revalidate"])

# Resource states that mean the folder contents changed
CHANGE_STATES: frozenset[str] = frozenset(
    {"add", "remove", "update", "trash", "untrash", "change"}
)


class RevalidateResult(BaseModel):
    """Acknowledgement returned by the revalidation endpoints."""

    success: bool
    message: str
    source: Literal["manual", "webhook"]
    cleared: bool
    timestamp: datetime


def _secret_matches(provided: Optional[str], expected: str) -> bool:
    """Constant-time secret comparison; an unset secret never matches."""
    if not provided or not expected:
        return False
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def _invalidate(service: Optional[MediaCacheService]) -> None:
    if service is None:
        logger.info("No media service configured; nothing to invalidate")
        return
    service.invalidate_all()


def _result(message: str, source: Literal["manual", "webhook"], cleared: bool) -> RevalidateResult:
    return RevalidateResult(
        success=True,
        message=message,
        source=source,
        cleared=cleared,
        timestamp=datetime.now(timezone.utc),
    )


@router.get("/revalidate", response_model=RevalidateResult)
async def revalidate_manual(
    secret: Optional[str] = Query(None, description="Shared revalidation secret"),
    settings: Settings = Depends(get_app_settings),
    service: Optional[MediaCacheService] = Depends(get_optional_media_service),
) -> RevalidateResult:
    """Clear the media cache on demand.

    Raises
    ------
    AuthenticationError
        401 if the secret is missing or wrong.
    """
    if not _secret_matches(secret, settings.revalidate_secret):
        logger.warning("Rejected manual revalidation: invalid secret")
        raise AuthenticationError()

    _invalidate(service)
    logger.info("Manual revalidation completed")
    return _result("Gallery cache invalidated", "manual", cleared=True)


@router.post("/revalidate", response_model=RevalidateResult)
async def revalidate_notification(
    secret: Optional[str] = Query(None, description="Shared revalidation secret"),
    channel_id: Optional[str] = Header(None, alias="X-Goog-Channel-Id"),
    resource_state: Optional[str] = Header(None, alias="X-Goog-Resource-State"),
    settings: Settings = Depends(get_app_settings),
    service: Optional[MediaCacheService] = Depends(get_optional_media_service),
) -> RevalidateResult:
    """Handle a Drive change notification or a manual POST.

    ``sync`` notifications (sent when a channel is created) are
    acknowledged without clearing. Change states clear the cache; other
    states are acknowledged. Repeated notifications are harmless.

    Raises
    ------
    AuthenticationError
        401 if the request is neither a recognised notification nor
        carries the correct secret.
    """
    if channel_id and channel_id.startswith(settings.webhook_channel_prefix):
        state = (resource_state or "").lower()
        logger.info("Drive notification on channel %s: state=%s", channel_id, state or "-")

        if state == "sync":
            return _result("Sync notification acknowledged", "webhook", cleared=False)
        if state in CHANGE_STATES:
            _invalidate(service)
            return _result(
                f"Gallery cache invalidated ({state})", "webhook", cleared=True
            )
        return _result(f"Notification '{state}' acknowledged", "webhook", cleared=False)

    if _secret_matches(secret, settings.revalidate_secret):
        _invalidate(service)
        logger.info("Manual revalidation (POST) completed")
        return _result("Gallery cache invalidated", "manual", cleared=True)

    logger.warning("Rejected revalidation POST: unknown channel and invalid secret")
    raise AuthenticationError()
