"""Small async TTL cache used for configs, admin lists and similar lookups."""

import logging
import time
from typing import Any, Awaitable, Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

from .async_utils import KeyedLock

logger = logging.getLogger(__name__)

V = TypeVar("V")


class TTLCache(Generic[V]):
    """
    Time-bounded cache with a single ``get_or_compute`` entry point.

    Concurrent misses for the same key share one fetch; the per-key lock
    only exists while a fetch is in flight.

    Example:
        >>> cache = TTLCache(ttl=300)
        >>> config = await cache.get_or_compute(key, lambda: store.load(key))
    """

    def __init__(
        self,
        ttl: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, V]] = {}
        self._locks = KeyedLock()

    def _fresh(self, key: Hashable) -> Optional[Tuple[float, V]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, _ = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return entry

    def get(self, key: Hashable, default: Any = None) -> Any:
        """Cached value, or ``default`` when missing or expired."""
        entry = self._fresh(key)
        return entry[1] if entry else default

    def set(self, key: Hashable, value: V, ttl: Optional[float] = None) -> None:
        """Store ``value`` for ``ttl`` seconds (cache default when omitted)."""
        lifetime = self.ttl if ttl is None else ttl
        self._entries[key] = (self._clock() + lifetime, value)

    def invalidate(self, key: Hashable) -> None:
        """Drop one entry."""
        self._entries.pop(key, None)

    def clear(self) -> None:
        """Drop every entry."""
        self._entries.clear()

    def purge_expired(self) -> int:
        """Remove expired entries; returns how many were removed."""
        now = self._clock()
        expired = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def get_or_compute(
        self,
        key: Hashable,
        fetch: Callable[[], Awaitable[V]],
        ttl: Optional[float] = None,
    ) -> V:
        """
        Return the cached value or fetch, cache and return a new one.

        Fetch errors propagate and nothing is cached.
        """
        entry = self._fresh(key)
        if entry is not None:
            return entry[1]

        async with self._locks.hold(key):
            entry = self._fresh(key)
            if entry is not None:
                return entry[1]

            value = await fetch()
            self.set(key, value, ttl)
            logger.debug(f"Cached value for {key!r}")
            return value

    def __len__(self) -> int:
        return len(self._entries)
