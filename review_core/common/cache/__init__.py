"""
Hierarchical Caching System

This package provides the fast tier of the scheduler: in-memory and Redis
backends with TTL, set and list primitives, a four-layer tiered cache with
promotion and tag invalidation, and expiring values with get-or-recompute
semantics.
"""

from review_core.common.cache.base import CacheBackend, CacheError, CacheResult
from review_core.common.cache.expiring import Expiring, get_or_recompute
from review_core.common.cache.key_builder import CacheKeys, KeyBuilder
from review_core.common.cache.memory import MemoryCacheBackend
from review_core.common.cache.redis import RedisCacheBackend
from review_core.common.cache.tiered import CacheLayer, TieredCache

__all__ = [
    'CacheBackend',
    'CacheError',
    'CacheResult',
    'CacheKeys',
    'CacheLayer',
    'Expiring',
    'KeyBuilder',
    'MemoryCacheBackend',
    'RedisCacheBackend',
    'TieredCache',
    'get_or_recompute',
]
