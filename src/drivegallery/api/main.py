"""FastAPI application for the drivegallery media proxy."""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from starlette.middleware.base import RequestResponseEndpoint
from starlette.responses import Response

from drivegallery import __version__
from drivegallery.api.exception_handlers import register_exception_handlers
from drivegallery.api.middleware import RequestIdMiddleware
from drivegallery.api.routers import health, media, revalidate
from drivegallery.config.logging_setup import configure_logging
from drivegallery.config.settings import Settings, get_settings
from drivegallery.services.drive_client import (
    GoogleDriveClient,
    build_service_account_credentials,
)
from drivegallery.services.interfaces import ObjectStoreInterface
from drivegallery.services.media_cache import MediaCacheService

logger = logging.getLogger(__name__)

# Paths whose query strings may carry secrets
SENSITIVE_PATHS: frozenset[str] = frozenset({"/api/revalidate"})


def _is_sensitive_path(path: str) -> bool:
    """Check if the path is a sensitive endpoint that should not be logged in detail."""
    return any(path.startswith(sensitive) for sensitive in SENSITIVE_PATHS)


def _get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxied requests."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


async def log_requests(request: Request, call_next: RequestResponseEndpoint) -> Response:
    """
    Middleware to log incoming requests and outgoing responses.

    Response log level follows the status class:
    - INFO for 2xx/3xx responses
    - WARNING for 4xx responses
    - ERROR for 5xx responses
    """
    start_time = time.perf_counter()
    method = request.method
    path = request.url.path
    client_ip = _get_client_ip(request)

    if _is_sensitive_path(path):
        logger.info("Request: %s [sensitive endpoint] from %s", method, client_ip)
    else:
        logger.info("Request: %s %s from %s", method, path, client_ip)

    response = await call_next(request)

    duration = time.perf_counter() - start_time
    status_code = response.status_code

    if status_code >= 500:
        log_level = logging.ERROR
    elif status_code >= 400:
        log_level = logging.WARNING
    else:
        log_level = logging.INFO

    logger.log(
        log_level,
        "Response: %s %s - %d %s (%.3fs)",
        method,
        path,
        status_code,
        response.headers.get("x-cache", "-"),
        duration,
    )
    return response


def _build_drive_client(settings: Settings) -> GoogleDriveClient | None:
    if not settings.has_service_account:
        logger.warning(
            "Google service account is not configured; media endpoints will return 502"
        )
        return None
    credentials = build_service_account_credentials(
        settings.google_service_account_email,
        settings.google_service_account_private_key,
    )
    return GoogleDriveClient(
        credentials,
        base_url=settings.drive_api_base_url,
        timeout=settings.upstream_timeout,
    )


def create_app(
    settings: Settings | None = None,
    store: ObjectStoreInterface | None = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Parameters
    ----------
    settings : Settings | None
        Settings to use; loaded from the environment when omitted.
    store : ObjectStoreInterface | None
        Upstream store. When omitted, a ``GoogleDriveClient`` is created
        at start-up from the service-account settings.

    Returns
    -------
    FastAPI
        The configured application.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Own the upstream client and media cache for the process lifetime."""
        configure_logging(settings)
        owned_store: ObjectStoreInterface | None = None
        if getattr(app.state, "media_service", None) is None:
            owned_store = _build_drive_client(settings)
            if owned_store is not None:
                app.state.media_service = MediaCacheService.from_settings(
                    owned_store, settings
                )
        logger.info("drivegallery API %s started", __version__)
        try:
            yield
        finally:
            if owned_store is not None:
                await owned_store.aclose()
                app.state.media_service = None
            logger.info("drivegallery API stopped")

    app = FastAPI(
        title="drivegallery API",
        description="Caching proxy for images stored in a Google Drive folder",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.media_service = (
        MediaCacheService.from_settings(store, settings) if store is not None else None
    )

    app.middleware("http")(log_requests)
    # Added last so it runs first and the request ID is set for log_requests
    app.add_middleware(RequestIdMiddleware)
    register_exception_handlers(app)

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(media.router, prefix="/api", tags=["media"])
    app.include_router(revalidate.router, prefix="/api", tags=["revalidate"])

    return app


app = create_app()
