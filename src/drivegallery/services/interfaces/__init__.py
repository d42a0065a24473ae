"""
Service interfaces (ABCs) for the drivegallery application.

These abstract base classes define contracts for external collaborators,
enabling dependency injection, testing with fakes, and swappable
implementations.
"""

from .object_store_interface import ObjectStoreInterface

__all__ = [
    "ObjectStoreInterface",
]
