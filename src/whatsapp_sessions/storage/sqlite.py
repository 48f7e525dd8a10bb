"""Session store backed by a local SQLite database."""

import asyncio
import logging
import sqlite3
import time
from pathlib import Path
from typing import List, Optional

from ..exceptions import BlobNotFoundError, StorageError, VersionConflictError
from .base import SessionStore, StoredBlob, content_version

logger = logging.getLogger(__name__)


class SqliteSessionStore(SessionStore):
    """
    Local durable store using SQLite.

    Each call opens its own connection and runs in a worker thread so the
    event loop is never blocked. Conditional writes compare the version inside
    the same transaction.
    """

    def __init__(self, storage_path: str, filename: str = "sessions.db"):
        """
        Initialize SQLite store.

        Args:
            storage_path: Base storage directory
            filename: Database file name
        """
        self.storage_path = Path(storage_path).expanduser()
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self.db_path = self.storage_path / filename
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.isolation_level = None
        return conn

    def _init_db(self) -> None:
        """Initialize SQLite database schema."""
        conn = self._connect()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS blobs (
                    key TEXT PRIMARY KEY,
                    data BLOB NOT NULL,
                    version TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            """)
        finally:
            conn.close()

        logger.debug(f"Initialized session database: {self.db_path}")

    def _put_sync(self, key: str, data: bytes, if_version: Optional[str]) -> str:
        version = content_version(data)
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            if if_version is not None:
                row = conn.execute(
                    "SELECT version FROM blobs WHERE key = ?", (key,)
                ).fetchone()
                if row is None or row[0] != if_version:
                    conn.execute("ROLLBACK")
                    raise VersionConflictError(f"Version conflict on {key}")

            conn.execute(
                """
                INSERT INTO blobs (key, data, version, updated_at) VALUES (?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    data = excluded.data,
                    version = excluded.version,
                    updated_at = excluded.updated_at
                """,
                (key, sqlite3.Binary(data), version, int(time.time() * 1000)),
            )
            conn.execute("COMMIT")
            return version
        except sqlite3.Error as e:
            logger.error(f"Failed to store {key}: {e}")
            raise StorageError(f"Failed to store {key}: {e}") from e
        finally:
            conn.close()

    def _get_sync(self, key: str) -> StoredBlob:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT data, version FROM blobs WHERE key = ?", (key,)
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read {key}: {e}") from e
        finally:
            conn.close()

        if row is None:
            raise BlobNotFoundError(f"No blob stored under {key}")
        return StoredBlob(key=key, data=bytes(row[0]), version=row[1])

    def _delete_sync(self, key: str, if_version: Optional[str]) -> None:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT version FROM blobs WHERE key = ?", (key,)
            ).fetchone()
            if row is None:
                conn.execute("ROLLBACK")
                return
            if if_version is not None and row[0] != if_version:
                conn.execute("ROLLBACK")
                raise VersionConflictError(f"Version conflict on {key}")
            conn.execute("DELETE FROM blobs WHERE key = ?", (key,))
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete {key}: {e}") from e
        finally:
            conn.close()

    def _list_sync(self, prefix: str) -> List[str]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT key FROM blobs WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to list {prefix!r}: {e}") from e
        finally:
            conn.close()
        return [row[0] for row in rows]

    async def put(self, key: str, data: bytes, if_version: Optional[str] = None) -> str:
        return await asyncio.to_thread(self._put_sync, key, data, if_version)

    async def get(self, key: str) -> StoredBlob:
        return await asyncio.to_thread(self._get_sync, key)

    async def delete(self, key: str, if_version: Optional[str] = None) -> None:
        await asyncio.to_thread(self._delete_sync, key, if_version)

    async def list(self, prefix: str = "") -> List[str]:
        return await asyncio.to_thread(self._list_sync, prefix)
