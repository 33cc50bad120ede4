"""
Sharing of in-flight resource fetches.

The first caller for a resource becomes its owner and runs the retried
race; callers arriving while it runs attach to the owner's Future instead
of starting their own race.
"""
import logging
import threading
from collections import Counter
from concurrent.futures import Future, TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, Optional, TypeVar

from ..errors import CoalescedFetchTimeout

logger = logging.getLogger("cache.coalescer")

T = TypeVar("T")

DEFAULT_WAIT_SECONDS = 60.0


class RequestCoalescer:
    """
    One upstream fetch per resource at a time.

    `wait_timeout` bounds how long an attached caller waits. It should be at
    least the worst-case duration of the retried race (see
    retry.worst_case_duration), otherwise attached callers give up on a
    fetch that may still succeed.
    """

    def __init__(self, wait_timeout: float = DEFAULT_WAIT_SECONDS):
        self.wait_timeout = wait_timeout
        self._pending: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self._attached = Counter()
        self._timeouts = 0

    def share(self, resource: str, fetch: Callable[[], T]) -> T:
        """
        Return fetch() for resource, reusing a fetch already in progress.

        Raises:
            CoalescedFetchTimeout: An attached caller waited past wait_timeout
            Exception: Whatever the owning fetch raised, for every caller
        """
        with self._lock:
            pending: Optional[Future] = self._pending.get(resource)
            owner = pending is None
            if owner:
                pending = Future()
                pending.set_running_or_notify_cancel()
                self._pending[resource] = pending
            else:
                self._attached[resource] += 1

        if owner:
            return self._run_owned(resource, pending, fetch)

        logger.debug(f"Attached to in-flight fetch of {resource}")
        try:
            return pending.result(timeout=self.wait_timeout)
        except FutureTimeout:
            with self._lock:
                self._timeouts += 1
            logger.error(f"Gave up waiting {self.wait_timeout:.1f}s on in-flight fetch of {resource}")
            raise CoalescedFetchTimeout(resource, self.wait_timeout) from None

    def _run_owned(self, resource: str, pending: Future, fetch: Callable[[], T]) -> T:
        try:
            value = fetch()
        except Exception as e:
            self._release(resource)
            pending.set_exception(e)
            raise
        self._release(resource)
        pending.set_result(value)
        return value

    def _release(self, resource: str) -> None:
        with self._lock:
            self._pending.pop(resource, None)

    @property
    def active_requests(self) -> int:
        with self._lock:
            return len(self._pending)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "in_flight": sorted(self._pending),
                "attached": sum(self._attached.values()),
                "attached_by_resource": dict(self._attached.most_common(20)),
                "wait_timeouts": self._timeouts,
                "wait_timeout_seconds": self.wait_timeout,
            }
