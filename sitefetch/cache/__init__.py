"""
Two-tier caching: an in-process TTL cache and a durable size-bounded cache.
"""
from .core import CacheEntry, CacheSource, CacheTier, serialize, deserialize
from .ephemeral import RequestCache
from .storage import CacheStore, EntryInfo, SQLiteCacheStore
from .durable import CleanupReport, DurableCache
from .coalescer import RequestCoalescer

__all__ = [
    # Core types
    "CacheEntry",
    "CacheSource",
    "CacheTier",
    "serialize",
    "deserialize",
    # Ephemeral tier
    "RequestCache",
    # Durable tier
    "CacheStore",
    "EntryInfo",
    "SQLiteCacheStore",
    "CleanupReport",
    "DurableCache",
    # Coalescing
    "RequestCoalescer",
]
