"""
drivegallery - Google Drive image gallery back end.

Proxies and caches image files held in a Google Drive folder so a web
client can browse a large remote collection efficiently.
"""

from __future__ import annotations

__version__ = "0.3.0"
__author__ = "drivegallery"
__license__ = "MIT"

__all__ = ["__version__", "__author__", "__license__"]
