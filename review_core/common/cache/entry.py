"""
Cache Entry Module

This module provides the CacheEntry class used by the in-process backend to
track a value's expiry and access statistics.
"""

from typing import Any, Optional


class CacheEntry:
    """
    A cached value with expiry metadata.

    Times are epoch seconds taken from the owning backend's clock, so a
    backend driven by a test clock expires entries deterministically.

    Attributes:
        value: The cached value
        created_at: When the entry was created
        expires_at: When the entry expires, or None for no expiration
        access_count: Number of reads served by this entry
        last_accessed: When the entry was last read
    """

    def __init__(self, value: Any, now: float, ttl: int = 0):
        """
        Initialize a cache entry.

        Args:
            value: The value to cache
            now: Current time (epoch seconds)
            ttl: Time-to-live in seconds, 0 for no expiration
        """
        self.value = value
        self.created_at = now
        self.expires_at: Optional[float] = None
        self.access_count = 0
        self.last_accessed = now
        self.set_ttl(ttl, now)

    def set_ttl(self, ttl: int, now: float) -> None:
        """Restart the expiry countdown from ``now``; 0 removes expiry."""
        self.expires_at = None if not ttl else now + ttl

    def is_expired(self, now: float) -> bool:
        """Check whether the entry has expired at ``now``."""
        if self.expires_at is None:
            return False
        return now >= self.expires_at

    def access(self, now: float) -> None:
        """Record a read of this entry."""
        self.access_count += 1
        self.last_accessed = now

    def remaining_ttl(self, now: float) -> Optional[int]:
        """Remaining TTL in whole seconds, or None if the entry never expires."""
        if self.expires_at is None:
            return None
        return max(0, int(self.expires_at - now))
