"""
In-memory get-or-compute cache.

Components that memoize results (hardware probes, processing statistics)
receive a cache instance instead of mutating a private dict, so tests can
inspect or reset it.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, Generic, Iterator, Optional, Tuple, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


class CacheStats:
    """Cache statistics tracking."""

    def __init__(self):
        self.hits = 0
        self.misses = 0
        self.sets = 0
        self.deletes = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total * 100) if total > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "deletes": self.deletes,
            "hit_rate": round(self.hit_rate, 2),
        }


class MemoryCache(Generic[T]):
    """Async-safe key/value cache with get-or-compute semantics."""

    def __init__(self, name: str = "cache"):
        self.name = name
        self.stats = CacheStats()
        self._data: Dict[str, T] = {}
        self._key_locks: Dict[str, asyncio.Lock] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[T]:
        if key in self._data:
            self.stats.hits += 1
            return self._data[key]
        self.stats.misses += 1
        return None

    async def set(self, key: str, value: T) -> None:
        async with self._lock:
            self._data[key] = value
            self.stats.sets += 1

    async def delete(self, key: str) -> bool:
        async with self._lock:
            self._key_locks.pop(key, None)
            if key in self._data:
                del self._data[key]
                self.stats.deletes += 1
                return True
            return False

    async def get_or_compute(self, key: str, compute: Callable[[], Awaitable[T]]) -> T:
        """Return the cached value, computing it at most once per key."""
        if key in self._data:
            self.stats.hits += 1
            return self._data[key]

        async with self._lock:
            key_lock = self._key_locks.setdefault(key, asyncio.Lock())

        async with key_lock:
            # Another waiter may have filled it while we queued on the lock
            if key in self._data:
                self.stats.hits += 1
                return self._data[key]

            self.stats.misses += 1
            value = await compute()
            self._data[key] = value
            self.stats.sets += 1
            logger.debug("Cache populated", cache=self.name, key=key)
            return value

    def contains(self, key: str) -> bool:
        return key in self._data

    def items(self) -> Iterator[Tuple[str, T]]:
        return iter(list(self._data.items()))

    def clear(self) -> None:
        self._data.clear()
        self._key_locks.clear()

    def __len__(self) -> int:
        return len(self._data)
