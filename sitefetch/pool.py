"""
Bounded worker pool for processing many independent items.

A fixed number of worker threads share one cursor over the item list. Every
item is claimed by exactly one worker; failures are logged and counted but
never stop the pool.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, TypeVar

logger = logging.getLogger("sitefetch.pool")

T = TypeVar("T")

DEFAULT_CONCURRENCY = 8

ProgressCallback = Callable[[int, int], None]


@dataclass
class PoolReport:
    """Summary of one process_concurrently() run."""
    total: int
    claimed: int = 0
    succeeded: int = 0
    failed: int = 0
    stopped: bool = False


class _WorkQueue:
    """Item list plus a shared cursor; claim() hands out each index once."""

    def __init__(self, items: Sequence[T]):
        self._items = items
        self._cursor = 0
        self._lock = threading.Lock()

    def claim(self):
        with self._lock:
            if self._cursor >= len(self._items):
                return None
            index = self._cursor
            self._cursor += 1
            return index, self._items[index]


def process_concurrently(
    items: Sequence[T],
    process: Callable[[T, int], None],
    concurrency: int = DEFAULT_CONCURRENCY,
    on_progress: Optional[ProgressCallback] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> PoolReport:
    """
    Run process(item, index) over items with at most `concurrency` in flight.

    Args:
        items: Items to process, claimed in order
        process: Called once per claimed item; exceptions are logged
        concurrency: Number of workers
        on_progress: Called with (completed, total) after every item
        should_stop: Polled before each claim; once True no new items start

    Returns:
        PoolReport with claim and outcome counts

    Raises:
        ValueError: If concurrency < 1
    """
    if concurrency < 1:
        raise ValueError(f"concurrency must be at least 1, got {concurrency}")

    queue = _WorkQueue(items)
    report = PoolReport(total=len(items))
    progress_lock = threading.Lock()

    def finish(succeeded: bool) -> None:
        with progress_lock:
            if succeeded:
                report.succeeded += 1
            else:
                report.failed += 1
            completed = report.succeeded + report.failed
            if on_progress is not None:
                try:
                    on_progress(completed, report.total)
                except Exception as e:
                    logger.warning(f"Progress callback failed: {e}")

    def worker() -> None:
        while True:
            if should_stop is not None and should_stop():
                with progress_lock:
                    report.stopped = True
                return
            claimed = queue.claim()
            if claimed is None:
                return
            index, item = claimed
            with progress_lock:
                report.claimed += 1
            try:
                process(item, index)
            except Exception as e:
                logger.warning(f"Worker failed on item {index}: {e}")
                finish(False)
            else:
                finish(True)

    with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="sitefetch-pool") as executor:
        workers = [executor.submit(worker) for _ in range(concurrency)]
        for future in workers:
            future.result()

    logger.debug(
        f"Processed {report.succeeded + report.failed}/{report.total} items "
        f"({report.failed} failed, stopped={report.stopped})"
    )
    return report
