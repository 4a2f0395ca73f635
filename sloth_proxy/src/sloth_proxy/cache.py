"""
In-process caches for rendered HTML and extraction results.

Provides:
- TTLCache: capacity-bounded LRU map with per-entry expiry
- SingleFlight: coalesces concurrent work for the same key

Both are process-local and assume a single event loop. Every cache
operation completes without awaiting, so lookups and inserts are atomic
with respect to other coroutines.
"""

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from .logging_conf import get_logger

logger = get_logger(__name__)

V = TypeVar("V")
T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    """An immutable cached value."""
    key: str
    value: V
    inserted_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.inserted_at >= self.ttl


class TTLCache(Generic[V]):
    """
    LRU cache with time-based expiry.

    Entries are never mutated: set() replaces the entry object. Expiry is
    independent of capacity, so an expired key is a miss even when the cache
    is far from full.
    """

    def __init__(
        self,
        max_entries: int = 200,
        ttl: float = 300.0,
        name: str = "cache",
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize cache.

        Args:
            max_entries: Capacity; the least recently used entry is evicted
                on overflow
            ttl: Seconds an entry stays valid after insertion
            name: Label used in logs and stats
            clock: Monotonic time source (injectable for tests)
        """
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self.ttl = ttl
        self.name = name
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry[V]]" = OrderedDict()

        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.expirations = 0

    def get(self, key: str) -> Optional[V]:
        """Return the cached value, or None on a miss."""
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        if entry.expired(self._clock()):
            del self._entries[key]
            self.expirations += 1
            self.misses += 1
            return None

        self._entries.move_to_end(key)
        self.hits += 1
        return entry.value

    def set(self, key: str, value: V) -> None:
        """Insert or replace a value, evicting LRU entries past capacity."""
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            inserted_at=self._clock(),
            ttl=self.ttl,
        )
        self._entries.move_to_end(key)

        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self.evictions += 1
            logger.debug("cache_evicted", cache=self.name, key=evicted[:120])

    def clear(self) -> None:
        self._entries.clear()

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        now = self._clock()
        stale = [k for k, e in self._entries.items() if e.expired(now)]
        for key in stale:
            del self._entries[key]
        self.expirations += len(stale)
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.expired(self._clock())

    def stats(self) -> dict:
        """Get cache statistics."""
        return {
            "size": len(self._entries),
            "max": self.max_entries,
            "ttl_ms": int(self.ttl * 1000),
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
        }


class SingleFlight:
    """
    Per-key in-flight map.

    The first caller for a key starts the work as a task; callers arriving
    while it runs await the same task. Waiters are shielded, so cancelling
    one waiter (a client disconnect, a timeout) never cancels the shared
    work for the others.
    """

    def __init__(self, name: str = "flight"):
        self.name = name
        self._calls: dict[str, asyncio.Task] = {}
        self.shared = 0

    async def do(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        task = self._calls.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._calls[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        else:
            self.shared += 1
            logger.debug("single_flight_shared", flight=self.name, key=key[:120])

        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._calls.get(key) is task:
            del self._calls[key]
        # Marks a failure as retrieved even when every waiter was cancelled
        if not task.cancelled() and task.exception() is not None:
            logger.debug(
                "single_flight_failed",
                flight=self.name,
                key=key[:120],
                error=type(task.exception()).__name__,
            )

    @property
    def in_flight(self) -> int:
        return len(self._calls)

    def stats(self) -> dict[str, Any]:
        return {"in_flight": self.in_flight, "shared": self.shared}
