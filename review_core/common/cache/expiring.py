"""
Expiring Values

This module wraps cached values with their own expiry timestamp. Expiry is
then checked by the reader rather than left to the backend's TTL, so any
backend (in-process map or Redis) gives the same get-or-recompute behaviour.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, Iterable, Optional, TypeVar

from .tiered import CacheLayer, TieredCache

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass(frozen=True)
class Expiring(Generic[T]):
    """
    A value paired with the epoch time at which it stops being valid.

    Attributes:
        value: The wrapped value
        expires_at: Epoch seconds; the value is expired at and after this instant
    """
    value: T
    expires_at: float

    @classmethod
    def for_ttl(cls, value: T, ttl: float, now: float) -> "Expiring[T]":
        return cls(value=value, expires_at=now + ttl)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def remaining(self, now: float) -> float:
        return max(0.0, self.expires_at - now)

    def to_dict(self, encode: Callable[[T], Any]) -> Dict[str, Any]:
        return {"value": encode(self.value), "expires_at": self.expires_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any], decode: Callable[[Any], T]) -> "Expiring[T]":
        return cls(value=decode(data["value"]), expires_at=float(data["expires_at"]))


async def get_or_recompute(
    cache: TieredCache,
    key: str,
    compute: Callable[[], Awaitable[Optional[T]]],
    ttl: int,
    encode: Callable[[T], Any],
    decode: Callable[[Any], T],
    tags: Iterable[str] = (),
    layer: CacheLayer = CacheLayer.L1,
    clock: Callable[[], float] = time.time
) -> Optional[Expiring[T]]:
    """
    Return a live cached value, recomputing and caching it when needed.

    A cached value that is missing, undecodable or expired is replaced by
    the result of ``compute()``. A ``None`` result is a miss and is not
    cached.

    Args:
        cache: Tiered cache to read and write
        key: Logical cache key
        compute: Coroutine function producing a fresh value
        ttl: Validity of a freshly computed value, in seconds
        encode: Converts the value to a JSON-compatible form
        decode: Inverse of ``encode``
        tags: Tags to index the key under
        layer: Layer fresh values are written into
        clock: Source of the current epoch time

    Returns:
        The live value with its expiry, or None when ``compute`` found nothing
    """
    result = await cache.get(key)
    if result.hit:
        try:
            cached = Expiring.from_dict(result.value, decode)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Discarding malformed cached value at {key}: {e}")
        else:
            if not cached.is_expired(clock()):
                return cached

    value = await compute()
    if value is None:
        return None

    fresh = Expiring.for_ttl(value, ttl, clock())
    await cache.set_with_tags(key, fresh.to_dict(encode), ttl, tags, layer)
    return fresh
