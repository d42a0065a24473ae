"""
Abstract Base Class for the upstream object store.

The fetch cache service depends only on this contract, so tests can swap
in an in-memory fake and the Drive implementation stays replaceable.
Authentication and credential lifecycle are entirely inside the
implementation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from ..models import ObjectMetadata, ObjectPage, ObjectStream


class ObjectStoreInterface(ABC):
    """
    Abstract interface for read access to a remote object store.

    Implementations should translate transport failures into the
    drivegallery error taxonomy:

    - ``NotFoundError`` when the object no longer exists
    - ``RateLimitError`` when the upstream throttles the caller
    - ``UpstreamUnavailableError`` for network errors and 5xx responses
    """

    @abstractmethod
    async def list_objects(
        self,
        folder_id: str,
        filter_query: str | None = None,
        page_token: str | None = None,
    ) -> ObjectPage:
        """
        List one page of objects in a folder.

        Parameters
        ----------
        folder_id : str
            Folder to list.
        filter_query : str | None
            Extra upstream query clause (e.g. a MIME type restriction).
        page_token : str | None
            Continuation token from a previous page.

        Returns
        -------
        ObjectPage
            Objects on this page and the token for the next one.
        """
        pass

    @abstractmethod
    async def open_object(self, object_id: str) -> ObjectStream:
        """
        Open the content of an object for streaming.

        Parameters
        ----------
        object_id : str
            Upstream object identifier.

        Returns
        -------
        ObjectStream
            Open body stream with content type and length when known.
        """
        pass

    @abstractmethod
    async def get_object_metadata(self, object_id: str) -> ObjectMetadata:
        """
        Fetch metadata for an object, including its thumbnail address.

        Parameters
        ----------
        object_id : str
            Upstream object identifier.

        Returns
        -------
        ObjectMetadata
            Object metadata.
        """
        pass

    @abstractmethod
    async def open_url(self, url: str) -> ObjectStream:
        """
        Open a pre-resolved upstream address (e.g. a thumbnail link).

        Parameters
        ----------
        url : str
            Absolute URL issued by the upstream.

        Returns
        -------
        ObjectStream
            Open body stream.
        """
        pass

    async def aclose(self) -> None:
        """Release any transport resources held by the client."""
        return None
