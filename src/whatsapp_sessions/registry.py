"""Process-wide table of live sessions."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .exceptions import AlreadyActiveError, SessionNotFoundError, ValidationError
from .models import (
    BulkOutcome,
    BulkStatus,
    PairResult,
    PairStatus,
    RegistryStatus,
    SessionRecord,
    normalize_identity_key,
)

logger = logging.getLogger(__name__)

PairFn = Callable[[str], Awaitable[PairResult]]


class SessionRegistry:
    """
    Maps identity keys to their live connection.

    At most one connection is registered per key. Mutations happen under a
    single lock; reads return snapshots. Bulk reconnection goes through a
    semaphore so no more than ``max_concurrent_pairings`` flows run at once.
    """

    def __init__(self, max_concurrent_pairings: int = 5) -> None:
        if max_concurrent_pairings < 1:
            raise ValueError("max_concurrent_pairings must be at least 1")

        self.max_concurrent_pairings = max_concurrent_pairings
        self._sessions: Dict[str, SessionRecord] = {}
        self._lock = asyncio.Lock()
        self._pool = asyncio.Semaphore(max_concurrent_pairings)
        self._in_flight = 0
        self.peak_in_flight = 0

    async def register(self, key: str, connection: Any) -> SessionRecord:
        """
        Register a live connection for a key.

        Registering the connection that already holds the key is a no-op.

        Raises:
            AlreadyActiveError: If another connection holds the key
        """
        key = normalize_identity_key(key)
        async with self._lock:
            existing = self._sessions.get(key)
            if existing is not None:
                if existing.connection is connection:
                    return existing
                raise AlreadyActiveError(f"Session {key} is already active")

            record = SessionRecord(key=key, connection=connection)
            self._sessions[key] = record
            logger.info(f"Registered session {key} ({len(self._sessions)} active)")
            return record

    async def unregister(self, key: str, connection: Optional[Any] = None) -> bool:
        """
        Remove a key.

        Args:
            key: Identity key
            connection: When given, only remove if this connection holds the key

        Returns:
            True if a record was removed
        """
        key = normalize_identity_key(key)
        async with self._lock:
            record = self._sessions.get(key)
            if record is None:
                return False
            if connection is not None and record.connection is not connection:
                return False
            del self._sessions[key]
            logger.info(f"Unregistered session {key} ({len(self._sessions)} active)")
            return True

    def get(self, key: str) -> SessionRecord:
        """
        Raises:
            SessionNotFoundError: If no session is registered for the key
        """
        key = normalize_identity_key(key)
        record = self._sessions.get(key)
        if record is None:
            raise SessionNotFoundError(f"No active session found for {key}")
        return record

    def contains(self, key: str) -> bool:
        return normalize_identity_key(key) in self._sessions

    def count(self) -> int:
        return len(self._sessions)

    def keys(self) -> List[str]:
        return list(self._sessions)

    def records(self) -> List[SessionRecord]:
        return list(self._sessions.values())

    def status(self) -> RegistryStatus:
        return RegistryStatus(count=self.count(), keys=self.keys())

    @property
    def in_flight(self) -> int:
        """Bulk pairing flows currently holding a pool slot."""
        return self._in_flight

    # ===== Bulk reconnection =====

    async def reconnect_all(self, keys: Iterable[str], pair: PairFn) -> List[BulkOutcome]:
        """
        Pair every key that is not registered yet, through the bounded pool.

        Flows that find the pool full are reported as ``queued`` and start as
        soon as a slot frees.

        Args:
            keys: Candidate keys (raw or normalized)
            pair: Pairing function, normally ``PairingCoordinator.pair``

        Returns:
            One outcome per distinct candidate, in input order
        """
        outcomes: List[Optional[BulkOutcome]] = []
        tasks: List[asyncio.Task] = []
        slots: List[int] = []
        seen = set()

        for raw in keys:
            try:
                key = normalize_identity_key(raw)
            except ValidationError as e:
                outcomes.append(BulkOutcome(key=str(raw), status=BulkStatus.SKIPPED, error=str(e)))
                continue

            if key in seen:
                continue
            seen.add(key)

            if self.contains(key):
                outcomes.append(BulkOutcome(key=key, status=BulkStatus.ALREADY_CONNECTED))
                continue

            slots.append(len(outcomes))
            outcomes.append(None)
            tasks.append(asyncio.create_task(self._pair_bounded(key, pair), name=f"bulk-{key}"))

        if tasks:
            logger.info(
                f"Reconnecting {len(tasks)} session(s), "
                f"at most {self.max_concurrent_pairings} at a time"
            )
            for index, outcome in zip(slots, await asyncio.gather(*tasks)):
                outcomes[index] = outcome

        return [o for o in outcomes if o is not None]

    async def _pair_bounded(self, key: str, pair: PairFn) -> BulkOutcome:
        queued = self._pool.locked()
        if queued:
            logger.info(f"Pool full, {key} queued")

        async with self._pool:
            self._in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self._in_flight)
            try:
                result = await pair(key)
            except Exception as e:
                logger.error(f"Failed to reconnect {key}: {e}")
                return BulkOutcome(key=key, status=BulkStatus.FAILED, queued=queued, error=str(e))
            finally:
                self._in_flight -= 1

        if result.status == PairStatus.ERROR:
            return BulkOutcome(
                key=key, status=BulkStatus.FAILED, queued=queued, error=result.error
            )
        if result.status == PairStatus.ALREADY_CONNECTED:
            return BulkOutcome(key=key, status=BulkStatus.ALREADY_CONNECTED, queued=queued)
        return BulkOutcome(key=key, status=BulkStatus.CONNECTION_INITIATED, queued=queued)
