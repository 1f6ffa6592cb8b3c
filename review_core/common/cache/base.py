"""
Base Cache Module

This module defines the backend interface the tiered cache, the adjustment
queue and the session registry are written against: key-value operations
with TTL, an atomic set-if-absent, and set/list primitives for tag indexes
and FIFO queues.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Optional, TypeVar

from review_core.common.exceptions import CacheError

V = TypeVar('V')

__all__ = ['CacheBackend', 'CacheResult', 'CacheError']


@dataclass
class CacheResult(Generic[V]):
    """
    Result of a cache operation.

    Attributes:
        success: Whether the operation was successful
        value: The value retrieved or stored
        hit: Whether the value was found in cache (for get operations)
        ttl: Time-to-live in seconds the value was stored with
        source: Name of the backend (or tier) that served the value
        error: Optional error message if the operation failed
        degraded: True when the backing service could not be reached
    """
    success: bool
    value: Optional[V] = None
    hit: bool = False
    ttl: Optional[int] = None
    source: Optional[str] = None
    error: Optional[str] = None
    degraded: bool = False


class CacheBackend(ABC):
    """
    Abstract interface for cache backends.

    Keys are strings. Values must be JSON-compatible (dicts, lists, strings,
    numbers) so that the in-process and Redis backends behave the same.
    A TTL of 0 means no expiration.

    ``get`` and ``set`` report failures through ``CacheResult``. The other
    primitives raise ``CacheError`` when the backing service fails, so that
    callers which need to know (queue, token registry) can fall back.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Get the name of this cache backend."""

    @abstractmethod
    async def get(self, key: str) -> CacheResult:
        """Retrieve a value from the cache."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int = 0) -> CacheResult:
        """Store a value, replacing any existing one."""

    @abstractmethod
    async def add(self, key: str, value: Any, ttl: int = 0) -> bool:
        """
        Store a value only if the key is absent.

        Args:
            key: The cache key
            value: The value to store
            ttl: Time-to-live in seconds

        Returns:
            True if the value was stored, False if the key already existed
        """

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a key. Returns True if it existed."""

    @abstractmethod
    async def has(self, key: str) -> bool:
        """Check if a live key exists."""

    @abstractmethod
    async def expire(self, key: str, ttl: int) -> bool:
        """Reset the TTL of an existing key. Returns False if the key is absent."""

    @abstractmethod
    async def clear(self) -> bool:
        """Clear all entries."""

    # Set primitives

    @abstractmethod
    async def sadd(self, key: str, *members: str) -> int:
        """Add members to the set at key. Returns the number newly added."""

    @abstractmethod
    async def srem(self, key: str, *members: str) -> int:
        """Remove members from the set at key. Returns the number removed."""

    @abstractmethod
    async def smembers(self, key: str) -> List[str]:
        """Return all members of the set at key."""

    # List primitives

    @abstractmethod
    async def rpush(self, key: str, *values: str) -> int:
        """Append values to the list at key. Returns the new length."""

    @abstractmethod
    async def lrem(self, key: str, value: str) -> int:
        """Remove all occurrences of value from the list. Returns the count."""

    @abstractmethod
    async def lrange(self, key: str, start: int = 0, end: int = -1) -> List[str]:
        """Return list elements between start and end, inclusive."""

    @abstractmethod
    async def get_stats(self) -> Dict[str, Any]:
        """Get backend statistics."""

    async def close(self) -> None:
        """Release backend resources."""
