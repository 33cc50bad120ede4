"""
Core cache data structures.
"""
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..errors import CacheCorruption


class CacheTier(Enum):
    """Which cache a caller wants results written to and read from."""
    EPHEMERAL = "ephemeral"   # Process lifetime, in memory
    DURABLE = "durable"       # Cross-session, size bounded
    NONE = "none"             # Always fetch


class CacheSource(Enum):
    """Source of returned data."""
    FRESH = "fresh"       # Served from a cache tier within TTL
    UPSTREAM = "upstream" # Fetched from the network


@dataclass
class CacheEntry:
    """
    A stored payload with the metadata needed for TTL and size accounting.

    size is always len(payload); use CacheEntry.build() so it is computed
    at write time.
    """
    key: str
    payload: bytes
    created_at: float
    ttl: float
    size: int

    @classmethod
    def build(cls, key: str, payload: bytes, created_at: float, ttl: float) -> "CacheEntry":
        return cls(
            key=key,
            payload=payload,
            created_at=created_at,
            ttl=ttl,
            size=len(payload),
        )

    def age(self, now: float) -> float:
        """Seconds since the entry was written."""
        return now - self.created_at

    def is_expired(self, now: float) -> bool:
        """Expired once strictly more than ttl seconds have passed."""
        return self.age(now) > self.ttl


def serialize(value: Any) -> bytes:
    """Encode a JSON-compatible value as UTF-8 bytes."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def deserialize(key: str, payload: bytes) -> Any:
    """Decode a payload written by serialize(); raises CacheCorruption."""
    try:
        return json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise CacheCorruption(key, str(e)) from e
