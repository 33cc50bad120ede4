"""
Tests for the durable, capacity-bounded cache.

Uses a real SQLite file per test and a fake clock.
"""
import sqlite3
import threading

import pytest

from sitefetch.cache import CacheEntry, DurableCache, SQLiteCacheStore, serialize
from sitefetch.errors import StorageUnavailable


def value_of_size(size: int) -> str:
    """A string whose JSON serialization is exactly `size` bytes."""
    return "x" * (size - 2)


@pytest.fixture
def store(tmp_path):
    return SQLiteCacheStore(tmp_path / "cache.db")


@pytest.fixture
def cache(store, clock):
    durable = DurableCache(store, max_cache_size=1000, default_ttl=3600.0, clock=clock)
    durable.init()
    return durable


def stored_total(store) -> int:
    return sum(info.size for info in store.list_oldest_first())


class CountingStore(SQLiteCacheStore):
    def __init__(self, db_path):
        super().__init__(db_path)
        self.open_calls = 0
        self._count_lock = threading.Lock()

    def open(self):
        with self._count_lock:
            self.open_calls += 1
        super().open()


class InterleavingStore(SQLiteCacheStore):
    """Runs `on_read` in another thread while get() is between read and return."""

    def __init__(self, db_path):
        super().__init__(db_path)
        self.on_read = None

    def get(self, key):
        entry = super().get(key)
        if self.on_read is not None:
            hook, self.on_read = self.on_read, None
            writer = threading.Thread(target=hook)
            writer.start()
            writer.join(timeout=0.2)
            self.pending_writer = writer
        return entry


class BrokenStore:
    """A store that can never be opened."""

    def __init__(self):
        self.open_calls = 0

    def open(self):
        self.open_calls += 1
        raise StorageUnavailable("disk on fire")


# =============================================================================
# get / set / delete
# =============================================================================

def test_get_after_set_returns_value(cache):
    cache.set("a", {"x": 1}, ttl=1.0)
    assert cache.get("a") == {"x": 1}


def test_expired_entry_is_absent_and_removed_from_storage(cache, store, clock):
    cache.set("a", {"x": 1}, ttl=1.0)
    assert cache.get("a") == {"x": 1}

    clock.advance(1.5)

    assert cache.get("a") is None
    assert store.get("a") is None
    assert cache.current_size == 0


def test_size_is_computed_from_payload(cache, store):
    cache.set("a", {"x": 1})
    entry = store.get("a")
    assert entry.size == len(entry.payload) == len(serialize({"x": 1}))
    assert cache.current_size == entry.size


def test_replacing_a_key_does_not_double_count(cache, store):
    cache.set("a", value_of_size(100))
    cache.set("a", value_of_size(40))
    assert cache.current_size == 40 == stored_total(store)


def test_delete_decrements_and_absent_delete_is_noop(cache, store):
    cache.set("a", value_of_size(100))
    cache.set("b", value_of_size(50))

    cache.delete("a")
    cache.delete("a")
    cache.delete("never-set")

    assert cache.get("a") is None
    assert cache.current_size == 50 == stored_total(store)


def test_current_size_matches_storage_after_mixed_operations(cache, store, clock):
    for i in range(8):
        cache.set(f"k{i}", value_of_size(60 + i * 10), ttl=5.0 if i % 2 else 3600.0)
        clock.advance(1.0)
    cache.delete("k3")
    cache.set("k4", value_of_size(20))
    clock.advance(10.0)
    for i in range(8):
        cache.get(f"k{i}")
    cache.cleanup()

    assert cache.current_size == stored_total(store)
    retrievable = [cache.get(f"k{i}") for i in range(8)]
    live_sizes = sum(len(serialize(v)) for v in retrievable if v is not None)
    assert cache.current_size == live_sizes


def test_corrupt_entry_is_dropped(store, clock):
    store.open()
    store.put(CacheEntry.build("bad", b"\xff{not json", created_at=clock(), ttl=3600.0))
    cache = DurableCache(store, max_cache_size=1000, clock=clock)
    cache.init()
    assert cache.current_size == 10

    assert cache.get("bad") is None
    assert store.get("bad") is None
    assert cache.current_size == 0
    assert cache.get_stats()["corrupt"] == 1


def test_oversized_entry_is_still_stored(cache):
    cache.set("huge", value_of_size(1500))
    assert cache.get("huge") == value_of_size(1500)
    assert cache.current_size == 1500


# =============================================================================
# cleanup
# =============================================================================

def test_cleanup_frees_thirty_percent_oldest_first(cache, clock):
    for i in range(9):
        cache.set(f"k{i}", value_of_size(100))
        clock.advance(1.0)

    report = cache.cleanup()

    assert report.removed == 3
    assert report.freed_bytes == 300
    assert cache.current_size == 600
    assert [cache.get(f"k{i}") is None for i in range(9)] == [True] * 3 + [False] * 6


def test_cleanup_removes_expired_entries_past_target(cache, clock):
    for i in range(4):
        cache.set(f"live{i}", value_of_size(100), ttl=3600.0)
        clock.advance(1.0)
    cache.set("short", value_of_size(100), ttl=1.0)
    clock.advance(5.0)

    report = cache.cleanup()

    assert report.expired == 1
    assert report.removed == 4  # three oldest live plus the expired newest
    assert cache.get("live3") == value_of_size(100)
    assert cache.current_size == 100


def test_cleanup_never_adds(cache, clock):
    for i in range(5):
        cache.set(f"k{i}", value_of_size(100))
        clock.advance(1.0)
    before = cache.current_size
    cache.cleanup()
    assert cache.current_size <= before <= cache.max_cache_size


def test_set_over_budget_triggers_cleanup(cache, clock):
    for i in range(10):
        cache.set(f"k{i}", value_of_size(100))
        clock.advance(1.0)
    assert cache.current_size == 1000

    cache.set("k10", value_of_size(100))

    assert cache.current_size == 800
    assert cache.get("k0") is None
    assert cache.get("k10") == value_of_size(100)
    assert cache.get_stats()["evictions"] == 3


# =============================================================================
# init
# =============================================================================

def test_init_reconciles_size_from_storage(store, clock):
    first = DurableCache(store, max_cache_size=1000, clock=clock)
    first.set("a", value_of_size(120))
    first.set("b", value_of_size(80))

    second = DurableCache(SQLiteCacheStore(store.db_path), max_cache_size=1000, clock=clock)
    second.init()

    assert second.current_size == 200
    assert second.get("a") == value_of_size(120)


def test_concurrent_init_runs_setup_once(tmp_path, clock):
    store = CountingStore(tmp_path / "cache.db")
    cache = DurableCache(store, clock=clock)

    threads = [threading.Thread(target=cache.init) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    cache.init()

    assert store.open_calls == 1
    assert cache.available


def test_unavailable_storage_fails_once_then_always_misses(clock):
    store = BrokenStore()
    cache = DurableCache(store, clock=clock)

    with pytest.raises(StorageUnavailable):
        cache.init()

    cache.init()  # not retried
    cache.set("a", 1)
    assert cache.get("a") is None
    cache.delete("a")
    assert cache.cleanup().removed == 0
    assert store.open_calls == 1
    assert cache.get_stats()["available"] is False


def test_clear_resets_size(cache, store):
    cache.set("a", value_of_size(100))
    cache.set("b", value_of_size(100))
    assert cache.clear() == 2
    assert cache.current_size == 0 == stored_total(store)


# =============================================================================
# Concurrency and reconciliation
# =============================================================================

def test_write_during_expired_read_is_kept(tmp_path, clock):
    store = InterleavingStore(tmp_path / "cache.db")
    cache = DurableCache(store, max_cache_size=1000, clock=clock)
    cache.init()
    cache.set("a", "old", ttl=1.0)
    clock.advance(2.0)

    store.on_read = lambda: cache.set("a", "new", ttl=3600.0)
    assert cache.get("a") is None
    store.pending_writer.join()

    assert cache.get("a") == "new"
    assert cache.current_size == stored_total(store)


def test_concurrent_reads_count_every_lookup(cache):
    cache.set("hit", 1)
    per_thread = 50

    def reader(key):
        for _ in range(per_thread):
            cache.get(key)

    threads = [threading.Thread(target=reader, args=(key,)) for key in ["hit", "miss"] * 4]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    stats = cache.get_stats()
    assert stats["hits"] == 4 * per_thread
    assert stats["misses"] == 4 * per_thread


def test_init_corrects_inconsistent_stored_sizes(store, clock):
    first = DurableCache(store, max_cache_size=1000, clock=clock)
    first.set("a", value_of_size(120))
    first.set("b", value_of_size(80))
    with sqlite3.connect(str(store.db_path)) as conn:
        conn.execute("UPDATE cache_entries SET size = 9999 WHERE key = 'a'")

    second = DurableCache(SQLiteCacheStore(store.db_path), max_cache_size=1000, clock=clock)
    second.init()

    assert second.current_size == 200 == stored_total(store)
    second.delete("a")
    assert second.current_size == 80
