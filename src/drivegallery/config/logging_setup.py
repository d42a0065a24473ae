"""
Logging setup for the drivegallery API process.
"""

from __future__ import annotations

import logging

from drivegallery.api.middleware.request_id import RequestIdFilter
from drivegallery.config.settings import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s"

_HANDLER_NAME = "drivegallery"


def configure_logging(settings: Settings) -> None:
    """Install a stream handler on the ``drivegallery`` logger.

    The handler tags every record with the current request ID. Calling
    this more than once only updates the level.

    Parameters
    ----------
    settings : Settings
        Application settings providing ``log_level`` and ``debug``.
    """
    root = logging.getLogger("drivegallery")
    level = logging.DEBUG if settings.debug else getattr(logging, settings.log_level)
    root.setLevel(level)

    if any(h.get_name() == _HANDLER_NAME for h in root.handlers):
        return

    handler = logging.StreamHandler()
    handler.set_name(_HANDLER_NAME)
    handler.addFilter(RequestIdFilter())
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
