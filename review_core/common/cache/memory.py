"""
Memory Cache Backend Module

This module implements an in-process cache backend using a dictionary-based
storage with thread safety, TTL expiry and LRU eviction. It also provides
the set and list primitives, so queues and tag indexes work without Redis.
"""

import asyncio
import copy
import logging
import threading
import time
from collections import OrderedDict, deque
from typing import Any, Callable, Dict, List, Optional

from .base import CacheBackend, CacheResult
from .entry import CacheEntry

logger = logging.getLogger(__name__)


class MemoryCacheBackend(CacheBackend):
    """
    In-memory cache backend implementation.

    Values, sets and lists share one keyspace, like Redis. Stored values are
    deep-copied on write and read so callers never mutate cached state in
    place.

    Features:
    - Thread-safe operations
    - LRU eviction when reaching maximum size
    - Injectable clock for deterministic expiry
    - Optional periodic cleanup task
    """

    def __init__(
        self,
        max_size: int = 10000,
        name: str = "memory",
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the memory cache backend.

        Args:
            max_size: Maximum number of keys to store
            name: Name for this cache backend
            clock: Source of the current epoch time
        """
        self._cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.RLock()
        self._max_size = max_size
        self._name = name
        self._clock = clock
        self._cleanup_task: Optional[asyncio.Task] = None

        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    @property
    def name(self) -> str:
        return self._name

    def _live_entry(self, key: str) -> Optional[CacheEntry]:
        """Return the entry for key, dropping it if expired. Lock must be held."""
        entry = self._cache.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._cache[key]
            self._expirations += 1
            return None
        return entry

    def _store(self, key: str, value: Any, ttl: int) -> None:
        """Insert or replace a key. Lock must be held."""
        if key not in self._cache and len(self._cache) >= self._max_size:
            self._evict_entries()
        self._cache[key] = CacheEntry(value, self._clock(), ttl)
        self._cache.move_to_end(key)

    async def get(self, key: str) -> CacheResult:
        with self._lock:
            entry = self._live_entry(key)

            if entry is None or isinstance(entry.value, (set, deque)):
                self._misses += 1
                return CacheResult(success=False, hit=False, source=self.name, error="Key not found")

            entry.access(self._clock())
            self._cache.move_to_end(key)
            self._hits += 1

            return CacheResult(
                success=True,
                value=copy.deepcopy(entry.value),
                hit=True,
                ttl=entry.remaining_ttl(self._clock()),
                source=self.name
            )

    async def set(self, key: str, value: Any, ttl: int = 0) -> CacheResult:
        with self._lock:
            self._store(key, copy.deepcopy(value), ttl)
            return CacheResult(success=True, value=value, ttl=ttl, source=self.name)

    async def add(self, key: str, value: Any, ttl: int = 0) -> bool:
        with self._lock:
            if self._live_entry(key) is not None:
                return False
            self._store(key, copy.deepcopy(value), ttl)
            return True

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    async def has(self, key: str) -> bool:
        with self._lock:
            return self._live_entry(key) is not None

    async def expire(self, key: str, ttl: int) -> bool:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return False
            entry.set_ttl(ttl, self._clock())
            return True

    async def clear(self) -> bool:
        with self._lock:
            self._cache.clear()
            return True

    def _container(self, key: str, factory: Callable[[], Any]) -> Any:
        """Fetch or create the set/deque stored at key. Lock must be held."""
        entry = self._live_entry(key)
        if entry is None:
            self._store(key, factory(), 0)
            entry = self._cache[key]
        return entry.value

    async def sadd(self, key: str, *members: str) -> int:
        with self._lock:
            members_set = self._container(key, set)
            before = len(members_set)
            members_set.update(members)
            return len(members_set) - before

    async def srem(self, key: str, *members: str) -> int:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return 0
            removed = len(entry.value & set(members))
            entry.value.difference_update(members)
            if not entry.value:
                del self._cache[key]
            return removed

    async def smembers(self, key: str) -> List[str]:
        with self._lock:
            entry = self._live_entry(key)
            return sorted(entry.value) if entry is not None else []

    async def rpush(self, key: str, *values: str) -> int:
        with self._lock:
            items = self._container(key, deque)
            items.extend(values)
            return len(items)

    async def lrem(self, key: str, value: str) -> int:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return 0
            kept = deque(v for v in entry.value if v != value)
            removed = len(entry.value) - len(kept)
            entry.value = kept
            if not kept:
                del self._cache[key]
            return removed

    async def lrange(self, key: str, start: int = 0, end: int = -1) -> List[str]:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return []
            items = list(entry.value)
            stop = len(items) if end == -1 else end + 1
            return items[start:stop]

    async def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                'backend': self.name,
                'size': len(self._cache),
                'max_size': self._max_size,
                'hits': self._hits,
                'misses': self._misses,
                'hit_rate': self._hits / total if total > 0 else 0,
                'evictions': self._evictions,
                'expirations': self._expirations
            }

    def _evict_entries(self) -> None:
        """
        Evict least recently used values until there is room for one more.

        Sets and lists carry queue and tag-index structure and are never
        evicted; they leave only through expiry or explicit removal, so the
        store may grow past ``max_size`` when they fill it.
        """
        while len(self._cache) >= self._max_size:
            victim = next(
                (key for key, entry in self._cache.items() if not isinstance(entry.value, (set, deque))),
                None
            )
            if victim is None:
                logger.warning(f"Memory cache holds {len(self._cache)} structural keys; nothing to evict")
                return
            del self._cache[victim]
            self._evictions += 1
            logger.debug(f"Evicted cache key {victim}")

    def cleanup_expired(self) -> int:
        """Remove expired entries. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired_keys = [key for key, entry in self._cache.items() if entry.is_expired(now)]
            for key in expired_keys:
                del self._cache[key]
            self._expirations += len(expired_keys)
            return len(expired_keys)

    def start_cleanup_task(self, interval: int = 60) -> asyncio.Task:
        """
        Start periodic expiry cleanup on the running event loop.

        Args:
            interval: Seconds between cleanup passes

        Returns:
            The background task
        """
        async def cleanup() -> None:
            while True:
                await asyncio.sleep(interval)
                removed = self.cleanup_expired()
                if removed:
                    logger.debug(f"Removed {removed} expired cache entries")

        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(cleanup())
        return self._cleanup_task

    async def close(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)
