"""
Services module for drivegallery.

Contains the media fetch cache, the Google Drive upstream client and the
client-side download scheduler.
"""

from __future__ import annotations

from drivegallery.services.download_scheduler import DownloadScheduler
from drivegallery.services.drive_client import GoogleDriveClient
from drivegallery.services.media_cache import MediaCache, MediaCacheService

__all__: list[str] = [
    "DownloadScheduler",
    "GoogleDriveClient",
    "MediaCache",
    "MediaCacheService",
]
