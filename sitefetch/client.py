"""
Content client: cache lookup, coalesced and retried race fetch, write-back.

One ContentClient is built per process with build_content_client() and
passed to whoever needs it; close() releases the HTTP session and store.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Sequence

from .cache import CacheSource, CacheTier, DurableCache, RequestCache, RequestCoalescer, SQLiteCacheStore
from .errors import StorageUnavailable
from .pool import DEFAULT_CONCURRENCY, PoolReport, ProgressCallback, process_concurrently
from .proxy_fetcher import ProxyRaceFetcher, RequestsTransport
from .retry import retry_with_backoff, worst_case_duration

logger = logging.getLogger("sitefetch.client")


@dataclass
class FetchResult:
    """Text of a fetched resource and where it came from."""
    url: str
    text: str
    source: CacheSource

    def to_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "text": self.text, "cacheSource": self.source.value}


@dataclass
class BatchResult:
    """Outcome of fetch_many(): successes and per-URL error messages."""
    results: Dict[str, FetchResult] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    report: Optional[PoolReport] = None


def _cache_key(url: str) -> str:
    return f"fetch:{url}"


class ContentClient:
    """
    Fetches remote text through the race fetcher with two cache tiers.

    The caller picks the tier per request: EPHEMERAL (in-memory TTL),
    DURABLE (SQLite, size bounded) or NONE.
    """

    def __init__(
        self,
        fetcher: ProxyRaceFetcher,
        request_cache: RequestCache,
        durable_cache: Optional[DurableCache] = None,
        coalescer: Optional[RequestCoalescer] = None,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        attempt_timeout: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.fetcher = fetcher
        self.request_cache = request_cache
        self.durable_cache = durable_cache
        self._max_attempts = max_attempts
        self._initial_delay = initial_delay
        self._attempt_timeout = attempt_timeout
        self.coalescer = coalescer or RequestCoalescer(wait_timeout=self.fetch_budget())
        self._sleep = sleep
        self.startup_error: Optional[str] = None

    def fetch_text(
        self,
        url: str,
        tier: CacheTier = CacheTier.EPHEMERAL,
        ttl: Optional[float] = None,
        force_refresh: bool = False,
    ) -> FetchResult:
        """
        Return the text at url, from the selected cache tier when fresh.

        Raises:
            RetryExhausted: Every retry of the race failed; last_error is
                the final AllRoutesExhausted
            CoalescedFetchTimeout: Waited too long on a concurrent fetch of url
        """
        key = _cache_key(url)

        if not force_refresh:
            cached = self._lookup(key, tier)
            if cached is not None:
                logger.debug(f"CACHE HIT ({tier.value}): {url}")
                return FetchResult(url=url, text=cached, source=CacheSource.FRESH)

        logger.info(f"CACHE MISS ({tier.value}): {url}")
        text = self.coalescer.share(url, lambda: self._fetch_upstream(url))
        self._store(key, text, tier, ttl)
        return FetchResult(url=url, text=text, source=CacheSource.UPSTREAM)

    def fetch_budget(self) -> float:
        """Worst-case seconds one upstream fetch, retries included, can take."""
        timeout = self._attempt_timeout
        if timeout is None:
            timeout = self.fetcher.default_timeout
        return worst_case_duration(self._max_attempts, timeout, self._initial_delay)

    def _fetch_upstream(self, url: str) -> str:
        body = retry_with_backoff(
            lambda: self.fetcher.fetch_via_fastest(url, per_attempt_timeout=self._attempt_timeout),
            max_attempts=self._max_attempts,
            initial_delay=self._initial_delay,
            sleep=self._sleep,
        )
        return body.decode("utf-8")

    def _lookup(self, key: str, tier: CacheTier) -> Optional[str]:
        if tier == CacheTier.EPHEMERAL:
            return self.request_cache.get(key)
        if tier == CacheTier.DURABLE and self.durable_cache is not None:
            return self.durable_cache.get(key)
        return None

    def _store(self, key: str, text: str, tier: CacheTier, ttl: Optional[float]) -> None:
        if tier == CacheTier.EPHEMERAL:
            self.request_cache.set(key, text, ttl)
        elif tier == CacheTier.DURABLE and self.durable_cache is not None:
            try:
                self.durable_cache.set(key, text, ttl)
            except StorageUnavailable as e:
                # The fetch itself succeeded; only the write-back is lost.
                logger.warning(f"Could not cache {key} durably: {e}")

    def fetch_many(
        self,
        urls: Sequence[str],
        tier: CacheTier = CacheTier.EPHEMERAL,
        concurrency: int = DEFAULT_CONCURRENCY,
        on_progress: Optional[ProgressCallback] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> BatchResult:
        """Fetch several URLs through the worker pool; failures are collected, not raised."""
        batch = BatchResult()
        lock = threading.Lock()

        def process(url: str, index: int) -> None:
            try:
                result = self.fetch_text(url, tier=tier)
            except Exception as e:
                with lock:
                    batch.errors[url] = str(e)
                raise
            with lock:
                batch.results[url] = result

        batch.report = process_concurrently(
            list(urls),
            process,
            concurrency=concurrency,
            on_progress=on_progress,
            should_stop=should_stop,
        )
        return batch

    def clear_caches(self) -> Dict[str, int]:
        cleared = {"ephemeral": self.request_cache.clear(), "durable": 0}
        if self.durable_cache is not None:
            cleared["durable"] = self.durable_cache.clear()
        return cleared

    def get_stats(self) -> Dict[str, Any]:
        return {
            "ephemeral": self.request_cache.get_stats(),
            "durable": self.durable_cache.get_stats() if self.durable_cache else None,
            "coalescer": self.coalescer.get_stats(),
            "startup_error": self.startup_error,
        }

    def close(self) -> None:
        self.fetcher.close()
        if self.durable_cache is not None:
            self.durable_cache.close()


def build_content_client(settings) -> ContentClient:
    """
    Build a client from Settings.

    A durable store that cannot be opened is reported once through the log
    and startup_error; the client then runs with an always-miss durable tier.
    """
    transport = RequestsTransport(user_agent=settings.user_agent)
    fetcher = ProxyRaceFetcher(
        transport=transport,
        relay_templates=settings.relay_templates,
        default_timeout=settings.request_timeout_seconds,
    )
    request_cache = RequestCache(
        sweep_threshold=settings.ephemeral_sweep_threshold,
        default_ttl=settings.ephemeral_ttl_seconds,
    )

    durable_cache: Optional[DurableCache] = None
    if settings.cache_enabled:
        durable_cache = DurableCache(
            SQLiteCacheStore(settings.cache_db_path),
            max_cache_size=settings.max_cache_size_bytes,
            default_ttl=settings.durable_ttl_seconds,
        )

    client = ContentClient(
        fetcher=fetcher,
        request_cache=request_cache,
        durable_cache=durable_cache,
        max_attempts=settings.retry_max_attempts,
        initial_delay=settings.retry_initial_delay_seconds,
        attempt_timeout=settings.request_timeout_seconds,
    )
    if settings.coalesce_timeout_seconds is not None:
        # Never shorter than one retried fetch can legitimately take
        client.coalescer.wait_timeout = max(settings.coalesce_timeout_seconds, client.fetch_budget())

    if durable_cache is not None:
        try:
            durable_cache.init()
        except StorageUnavailable as e:
            client.startup_error = str(e)

    return client
