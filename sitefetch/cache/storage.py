"""
Durable storage providers for the capacity-bounded cache.

DurableCache only depends on the CacheStore protocol; SQLiteCacheStore is
the default engine.
"""
import sqlite3
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Protocol

from .core import CacheEntry
from ..errors import StorageUnavailable

logger = logging.getLogger("cache.storage")


SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_entries (
    key TEXT PRIMARY KEY,
    payload BLOB NOT NULL,
    created_at REAL NOT NULL,
    ttl REAL NOT NULL,
    size INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_cache_entries_created ON cache_entries(created_at);
"""


@dataclass
class EntryInfo:
    """Entry metadata without the payload, used by eviction scans."""
    key: str
    created_at: float
    ttl: float
    size: int

    def is_expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl


class CacheStore(Protocol):
    """Capabilities the durable cache needs from a storage engine."""

    def open(self) -> None: ...

    def get(self, key: str) -> Optional[CacheEntry]: ...

    def put(self, entry: CacheEntry) -> Optional[int]:
        """Write entry, returning the size of the entry it replaced, if any."""
        ...

    def delete(self, key: str) -> Optional[int]:
        """Remove key, returning the removed entry's size or None if absent."""
        ...

    def list_oldest_first(self) -> List[EntryInfo]: ...

    def reconcile_sizes(self) -> int:
        """Recompute every entry's size from its payload and return the total."""
        ...

    def clear(self) -> int: ...

    def close(self) -> None: ...


class SQLiteCacheStore:
    """
    SQLite-backed cache store.

    One connection per operation; SQLite serializes concurrent writers at
    the file level.
    """

    def __init__(self, db_path: Path, timeout: float = 10.0):
        self.db_path = Path(db_path)
        self._timeout = timeout

    def open(self) -> None:
        """Create the database file and schema if absent."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._get_connection() as conn:
                conn.executescript(SCHEMA)
                conn.commit()
        except OSError as e:
            raise StorageUnavailable(f"Cannot create cache directory for {self.db_path}: {e}") from e
        logger.info(f"Opened cache store at {self.db_path}")

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a database connection, translating engine errors."""
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=self._timeout)
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Cannot open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageUnavailable(f"Cache transaction failed: {e}") from e
        finally:
            conn.close()

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT key, payload, created_at, ttl, size FROM cache_entries WHERE key = ?",
                (key,),
            ).fetchone()
            if row is None:
                return None
            return CacheEntry(
                key=row["key"],
                payload=bytes(row["payload"]),
                created_at=row["created_at"],
                ttl=row["ttl"],
                size=row["size"],
            )

    def put(self, entry: CacheEntry) -> Optional[int]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT size FROM cache_entries WHERE key = ?", (entry.key,)
            ).fetchone()
            conn.execute(
                """
                INSERT OR REPLACE INTO cache_entries (key, payload, created_at, ttl, size)
                VALUES (?, ?, ?, ?, ?)
                """,
                (entry.key, sqlite3.Binary(entry.payload), entry.created_at, entry.ttl, entry.size),
            )
            conn.commit()
            return row["size"] if row else None

    def delete(self, key: str) -> Optional[int]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT size FROM cache_entries WHERE key = ?", (key,)
            ).fetchone()
            if row is None:
                return None
            conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
            conn.commit()
            return row["size"]

    def list_oldest_first(self) -> List[EntryInfo]:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT key, created_at, ttl, size FROM cache_entries ORDER BY created_at ASC, rowid ASC"
            )
            return [
                EntryInfo(
                    key=row["key"],
                    created_at=row["created_at"],
                    ttl=row["ttl"],
                    size=row["size"],
                )
                for row in cursor
            ]

    def reconcile_sizes(self) -> int:
        with self._get_connection() as conn:
            fixed = conn.execute(
                "UPDATE cache_entries SET size = length(payload) WHERE size != length(payload)"
            ).rowcount
            conn.commit()
            if fixed:
                logger.warning(f"Corrected stored size of {fixed} cache entries")
            row = conn.execute(
                "SELECT COALESCE(SUM(length(payload)), 0) AS total FROM cache_entries"
            ).fetchone()
            return int(row["total"])

    def clear(self) -> int:
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM cache_entries")
            conn.commit()
            return cursor.rowcount

    def close(self) -> None:
        # Connections are per operation; nothing is held open.
        pass
