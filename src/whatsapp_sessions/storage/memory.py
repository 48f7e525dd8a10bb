"""In-process session store."""

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from ..exceptions import BlobNotFoundError, VersionConflictError
from .base import SessionStore, StoredBlob, content_version

logger = logging.getLogger(__name__)


class MemorySessionStore(SessionStore):
    """Dictionary-backed store for tests and throwaway runs."""

    def __init__(self) -> None:
        self._blobs: Dict[str, Tuple[bytes, str]] = {}
        self._lock = asyncio.Lock()

    async def put(self, key: str, data: bytes, if_version: Optional[str] = None) -> str:
        async with self._lock:
            self._check_version(key, if_version)
            version = content_version(data)
            self._blobs[key] = (bytes(data), version)
            logger.debug(f"Stored {key} ({len(data)} bytes)")
            return version

    async def get(self, key: str) -> StoredBlob:
        entry = self._blobs.get(key)
        if entry is None:
            raise BlobNotFoundError(f"No blob stored under {key}")
        data, version = entry
        return StoredBlob(key=key, data=data, version=version)

    async def delete(self, key: str, if_version: Optional[str] = None) -> None:
        async with self._lock:
            if key not in self._blobs:
                return
            self._check_version(key, if_version)
            del self._blobs[key]
            logger.debug(f"Deleted {key}")

    async def list(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self._blobs if k.startswith(prefix))

    def _check_version(self, key: str, if_version: Optional[str]) -> None:
        if if_version is None:
            return
        current = self._blobs.get(key)
        if current is None or current[1] != if_version:
            raise VersionConflictError(f"Version conflict on {key}")
