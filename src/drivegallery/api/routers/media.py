"""Drive image proxy endpoint.

- GET /drive-image/{object_id} - Serve an original or thumbnail rendition

Responses carry an ``X-Cache`` header (HIT, MISS or BYPASS) and
Cache-Control directives that let CDNs keep originals far longer than
thumbnails.
"""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Path, Query
from starlette.responses import Response, StreamingResponse

from drivegallery.api.deps import get_media_service
from drivegallery.services.media_cache import MediaCacheService
from drivegallery.services.models import MediaVariant, ResolvedMedia

logger = logging.getLogger(__name__)

router = APIRouter(tags=["media"])

# ---------------------------------------------------------------------------
# Cache-Control headers
# ---------------------------------------------------------------------------
CACHE_CONTROL_ORIGINAL = (
    "public, s-maxage=86400, stale-while-revalidate=86400, "
    "max-age=31536000, immutable"
)
CACHE_CONTROL_THUMBNAIL = "public, max-age=3600, s-maxage=3600"

DEFAULT_FILENAME = "image.jpg"


def _response_headers(
    media: ResolvedMedia, variant: MediaVariant, filename: str
) -> dict[str, str]:
    headers = {
        "X-Cache": media.cache_status.value,
        "Cache-Control": (
            CACHE_CONTROL_THUMBNAIL
            if variant is MediaVariant.THUMBNAIL
            else CACHE_CONTROL_ORIGINAL
        ),
        "Content-Disposition": f'inline; filename="{quote(filename or DEFAULT_FILENAME, safe="")}"',
    }
    if media.is_streaming and media.content_length is not None:
        headers["Content-Length"] = str(media.content_length)
    return headers


@router.get(
    "/drive-image/{object_id}",
    responses={
        200: {
            "content": {"image/jpeg": {}, "image/png": {}, "image/webp": {}},
            "description": "Image bytes",
        },
        400: {"description": "Malformed object id or thumbnail URL"},
        404: {"description": "Object or thumbnail not found"},
        429: {"description": "Upstream rate limit exceeded"},
        502: {"description": "Upstream object store unavailable"},
    },
    response_class=Response,
)
async def get_drive_image(
    object_id: str = Path(..., description="Google Drive file ID"),
    thumb: bool = Query(False, description="Serve the thumbnail instead of the original"),
    url: Optional[str] = Query(
        None, description="Pre-resolved thumbnail URL, skips a metadata lookup"
    ),
    name: str = Query(
        DEFAULT_FILENAME,
        max_length=255,
        description="Filename suggested in Content-Disposition",
    ),
    service: MediaCacheService = Depends(get_media_service),
) -> Response:
    """Serve a Drive image through the media cache.

    Parameters
    ----------
    object_id : str
        Google Drive file ID.
    thumb : bool
        ``thumb=1`` selects the thumbnail rendition.
    url : str | None
        Thumbnail URL already known to the caller.
    name : str
        Suggested download filename.
    service : MediaCacheService
        Lifespan-owned media cache service.

    Returns
    -------
    Response
        Image bytes, or a streaming response for uncached large originals.
    """
    variant = MediaVariant.THUMBNAIL if thumb else MediaVariant.ORIGINAL
    media = await service.resolve(object_id, variant, hint=url)
    headers = _response_headers(media, variant, name)

    if media.stream is not None:
        return StreamingResponse(
            media.stream, media_type=media.content_type, headers=headers
        )
    return Response(content=media.payload, media_type=media.content_type, headers=headers)
