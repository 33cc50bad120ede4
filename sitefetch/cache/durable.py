"""
Durable, capacity-bounded cache.

Entries survive process restarts. A running current_size tracks the sum of
stored entry sizes; inserts that would push it past max_cache_size trigger
cleanup() first, which drops expired entries and then the oldest entries
until 30% of the budget has been freed.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .core import CacheEntry, serialize, deserialize
from .storage import CacheStore
from ..errors import CacheCorruption, StorageUnavailable

logger = logging.getLogger("cache.durable")

DEFAULT_MAX_CACHE_SIZE = 50 * 1024 * 1024  # 50MB
DEFAULT_TTL_SECONDS = 3600.0
CLEANUP_FREE_FRACTION = 0.3


@dataclass
class CleanupReport:
    """Outcome of one cleanup() pass."""
    removed: int = 0
    freed_bytes: int = 0
    expired: int = 0


class DurableCache:
    """
    Cross-session key/value cache with TTL and a total size budget.

    Reads and all changes to current_size and to the stored entries go
    through get/set/delete/cleanup/clear and happen under one lock, so the running
    total always equals the sum of stored sizes.

    If the store cannot be opened, init() raises StorageUnavailable once and
    the cache then behaves as always-miss without retrying.
    """

    def __init__(
        self,
        store: CacheStore,
        max_cache_size: int = DEFAULT_MAX_CACHE_SIZE,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self.max_cache_size = max_cache_size
        self._default_ttl = default_ttl
        self._clock = clock

        self._lock = threading.RLock()
        self._initialized = False
        self._init_error: Optional[StorageUnavailable] = None
        self._current_size = 0

        self._stats = {
            "hits": 0,
            "misses": 0,
            "writes": 0,
            "expired": 0,
            "corrupt": 0,
            "evictions": 0,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def init(self) -> None:
        """
        Open the store and reconcile current_size. Safe to call repeatedly
        and from several threads; setup runs once.
        """
        with self._lock:
            if self._initialized or self._init_error is not None:
                return
            try:
                self._store.open()
                self._current_size = self._store.reconcile_sizes()
            except StorageUnavailable as e:
                self._init_error = e
                logger.error(f"Durable cache unavailable, degrading to always-miss: {e}")
                raise
            self._initialized = True
            logger.info(f"Durable cache ready ({self._current_size} bytes stored)")

    @property
    def available(self) -> bool:
        return self._initialized and self._init_error is None

    @property
    def current_size(self) -> int:
        return self._current_size

    def _ready(self) -> bool:
        """Lazily initialize; False when the store is unavailable."""
        if self._init_error is not None:
            return False
        if not self._initialized:
            try:
                self.init()
            except StorageUnavailable:
                return False
        return True

    def close(self) -> None:
        with self._lock:
            if self._initialized:
                self._store.close()
            self._initialized = False

    # =========================================================================
    # Operations
    # =========================================================================

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """
        Store value under key.

        Raises:
            StorageUnavailable: If the write transaction fails
        """
        if not self._ready():
            return

        payload = serialize(value)
        entry = CacheEntry.build(
            key=key,
            payload=payload,
            created_at=self._clock(),
            ttl=self._default_ttl if ttl is None else ttl,
        )

        with self._lock:
            if self._current_size + entry.size > self.max_cache_size:
                self.cleanup()
            replaced_size = self._store.put(entry)
            if replaced_size is not None:
                self._current_size -= replaced_size
            self._current_size += entry.size
            self._stats["writes"] += 1

        logger.debug(f"CACHE STORE: {key} [{entry.size} bytes]")

    def get(self, key: str) -> Optional[Any]:
        """
        Return the value for key, or None if missing, expired or corrupt.

        The read and the removal of an expired or corrupt entry happen under
        the same lock as set(), so a concurrent write of key is never lost.
        """
        if not self._ready():
            return None

        with self._lock:
            try:
                entry = self._store.get(key)
            except StorageUnavailable as e:
                logger.warning(f"Cache read failed for {key}: {e}")
                self._stats["misses"] += 1
                return None

            if entry is None:
                logger.debug(f"CACHE MISS: {key}")
                self._stats["misses"] += 1
                return None

            now = self._clock()
            if entry.is_expired(now):
                logger.info(f"CACHE EXPIRED: {key} [age={entry.age(now):.1f}s]")
                self._stats["expired"] += 1
                self._stats["misses"] += 1
                self._discard(key)
                return None

            try:
                value = deserialize(key, entry.payload)
            except CacheCorruption as e:
                logger.warning(f"{e}; removing entry")
                self._stats["corrupt"] += 1
                self._stats["misses"] += 1
                self._discard(key)
                return None

            self._stats["hits"] += 1

        logger.debug(f"CACHE HIT: {key}")
        return value

    def _discard(self, key: str) -> None:
        """Delete without surfacing storage errors."""
        try:
            self.delete(key)
        except StorageUnavailable as e:
            logger.warning(f"Could not remove cache entry {key}: {e}")

    def delete(self, key: str) -> None:
        """Remove key if present; absent keys are a no-op."""
        if not self._ready():
            return
        with self._lock:
            removed_size = self._store.delete(key)
            if removed_size is not None:
                self._current_size -= removed_size

    def cleanup(self) -> CleanupReport:
        """
        Evict entries oldest first.

        Expired entries are always removed. Live entries are removed while
        less than 30% of max_cache_size has been freed.
        """
        report = CleanupReport()
        if not self._ready():
            return report

        target = self.max_cache_size * CLEANUP_FREE_FRACTION
        with self._lock:
            now = self._clock()
            for info in self._store.list_oldest_first():
                expired = info.is_expired(now)
                if not expired and report.freed_bytes >= target:
                    continue
                removed_size = self._store.delete(info.key)
                if removed_size is None:
                    continue
                self._current_size -= removed_size
                report.removed += 1
                report.freed_bytes += removed_size
                if expired:
                    report.expired += 1
            self._stats["evictions"] += report.removed

        logger.info(
            f"Cache cleanup removed {report.removed} entries "
            f"({report.expired} expired), freed {report.freed_bytes} bytes"
        )
        return report

    def clear(self) -> int:
        """Remove every entry and return how many were removed."""
        if not self._ready():
            return 0
        with self._lock:
            count = self._store.clear()
            self._current_size = 0
        logger.info(f"Cleared {count} durable cache entries")
        return count

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._stats["hits"] + self._stats["misses"]
            hit_rate = (self._stats["hits"] / total * 100) if total > 0 else 0
            return {
                "available": self.available,
                "current_size": self._current_size,
                "max_cache_size": self.max_cache_size,
                "hit_rate_percent": round(hit_rate, 1),
                **self._stats,
            }
