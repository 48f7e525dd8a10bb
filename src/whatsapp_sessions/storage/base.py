"""Session store interface: durable key -> blob storage."""

import hashlib
from abc import ABC, abstractmethod
from typing import List, Optional

from pydantic import BaseModel

from ..exceptions import BlobNotFoundError


class StoredBlob(BaseModel):
    """A blob together with its version token."""

    key: str
    data: bytes
    version: str


def content_version(data: bytes) -> str:
    """Version token derived from blob content."""
    return hashlib.sha256(data).hexdigest()


class SessionStore(ABC):
    """
    Durable key -> blob storage.

    Writes to different keys may run concurrently. ``if_version`` turns a
    write or delete into a conditional update: it only applies when the
    stored version still matches, otherwise ``VersionConflictError`` is
    raised. ``if_version=None`` means unconditional (last write wins).
    """

    @abstractmethod
    async def put(self, key: str, data: bytes, if_version: Optional[str] = None) -> str:
        """
        Store ``data`` under ``key``.

        Returns:
            New version token

        Raises:
            VersionConflictError: If ``if_version`` is stale
            StorageError: If the backend fails
        """

    @abstractmethod
    async def get(self, key: str) -> StoredBlob:
        """
        Read the blob stored under ``key``.

        Raises:
            BlobNotFoundError: If nothing is stored
            StorageError: If the backend fails
        """

    @abstractmethod
    async def delete(self, key: str, if_version: Optional[str] = None) -> None:
        """
        Delete ``key``. Deleting a missing key is not an error.

        Raises:
            VersionConflictError: If ``if_version`` is stale
            StorageError: If the backend fails
        """

    @abstractmethod
    async def list(self, prefix: str = "") -> List[str]:
        """Keys starting with ``prefix``, sorted."""

    async def exists(self, key: str) -> bool:
        """Check whether ``key`` holds a blob."""
        try:
            await self.get(key)
        except BlobNotFoundError:
            return False
        return True

    async def close(self) -> None:
        """Release backend resources."""
