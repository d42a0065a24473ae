"""
Configuration management module for drivegallery.

Handles application settings, environment variables, and logging setup.
"""

from __future__ import annotations

__all__: list[str] = []
