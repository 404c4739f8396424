"""
Layered read cache for booking data.
"""

from .backends import CacheBackend, MemoryCacheBackend, RedisCacheBackend, TieredCacheBackend, build_backend
from .cache_manager import CacheManager, CacheResult
from .entry_store import CacheEntry, EntryStore
from .invalidation import CacheInvalidator
from .maintenance import CacheSweeper
from .strategies import DEFAULT_CACHE_STRATEGIES, StrategyTable
from .warmup import CacheWarmer

__all__ = [
    "CacheBackend",
    "CacheEntry",
    "CacheInvalidator",
    "CacheManager",
    "CacheResult",
    "CacheSweeper",
    "CacheWarmer",
    "DEFAULT_CACHE_STRATEGIES",
    "EntryStore",
    "MemoryCacheBackend",
    "RedisCacheBackend",
    "StrategyTable",
    "TieredCacheBackend",
    "build_backend",
]
