"""
Homepage caching: TTL stores, refresh lock, progress records and cold-start coalescing.
"""
from .core import (
    CacheEntry,
    CacheKeys,
    HomepageData,
    RefreshProgress,
    STAGE_COMPLETE,
    STAGE_ERROR,
    STAGE_IDLE,
)
from .ttl_policies import build_ttl_config, get_homepage_ttl, get_progress_ttl
from .store import (
    CacheStore,
    MemoryCacheStore,
    RedisCacheStore,
    build_cache_store,
    get_cache_store,
)
from .coalescer import GenerationCoalescer
from .refresh import RefreshCoordinator

__all__ = [
    # Core types
    "CacheEntry",
    "CacheKeys",
    "HomepageData",
    "RefreshProgress",
    "STAGE_COMPLETE",
    "STAGE_ERROR",
    "STAGE_IDLE",
    # TTL policies
    "build_ttl_config",
    "get_homepage_ttl",
    "get_progress_ttl",
    # Stores
    "CacheStore",
    "MemoryCacheStore",
    "RedisCacheStore",
    "build_cache_store",
    "get_cache_store",
    # Coordination
    "GenerationCoalescer",
    "RefreshCoordinator",
]
