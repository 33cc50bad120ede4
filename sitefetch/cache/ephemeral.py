"""
In-process request cache with per-entry TTL.

Expired entries are dropped lazily on read. Once the mapping grows past
sweep_threshold, set() also sweeps every expired entry in one pass.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("cache.ephemeral")

DEFAULT_SWEEP_THRESHOLD = 500
DEFAULT_TTL_SECONDS = 300.0


@dataclass
class _Slot:
    value: Any
    stored_at: float
    ttl: float


class RequestCache:
    """
    Memoizes fetch results for the lifetime of the process.

    Usage:
        cache = RequestCache()
        cache.set("https://example.com/sitemap.xml", text, ttl=60)
        text = cache.get("https://example.com/sitemap.xml")
    """

    def __init__(
        self,
        sweep_threshold: int = DEFAULT_SWEEP_THRESHOLD,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._slots: Dict[str, _Slot] = {}
        self._lock = threading.RLock()
        self._sweep_threshold = sweep_threshold
        self._default_ttl = default_ttl
        self._clock = clock

        self._stats = {
            "hits": 0,
            "misses": 0,
            "expirations": 0,
            "sweeps": 0,
        }

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None if unknown or expired."""
        with self._lock:
            slot = self._slots.get(key)
            if slot is None:
                self._stats["misses"] += 1
                return None

            if self._clock() - slot.stored_at > slot.ttl:
                del self._slots[key]
                self._stats["expirations"] += 1
                self._stats["misses"] += 1
                logger.debug(f"CACHE EXPIRED: {key}")
                return None

            self._stats["hits"] += 1
            return slot.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store value under key for ttl seconds (default_ttl when omitted)."""
        with self._lock:
            self._slots[key] = _Slot(
                value=value,
                stored_at=self._clock(),
                ttl=self._default_ttl if ttl is None else ttl,
            )
            if len(self._slots) > self._sweep_threshold:
                self._sweep()

    def _sweep(self) -> int:
        now = self._clock()
        expired = [k for k, s in self._slots.items() if now - s.stored_at > s.ttl]
        for key in expired:
            del self._slots[key]
        self._stats["sweeps"] += 1
        self._stats["expirations"] += len(expired)
        if expired:
            logger.debug(f"Swept {len(expired)} expired entries")
        return len(expired)

    def delete(self, key: str) -> bool:
        """Remove key; returns True if it was present."""
        with self._lock:
            return self._slots.pop(key, None) is not None

    def clear(self) -> int:
        """Drop every entry and return how many were dropped."""
        with self._lock:
            count = len(self._slots)
            self._slots.clear()
            return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {"entries": len(self._slots), **self._stats}
