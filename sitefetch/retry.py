"""
Retry with exponential backoff and jitter, built on tenacity.
"""
import logging
import time
from typing import Callable, Optional, TypeVar

from tenacity import RetryCallState, RetryError, Retrying, stop_after_attempt, wait_exponential, wait_random

from .errors import RetryExhausted

logger = logging.getLogger("sitefetch.retry")

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_DELAY = 1.0  # seconds
DEFAULT_JITTER = 1.0  # seconds, upper bound of the uniform jitter term


def _log_retry(max_attempts: int):
    def before_sleep(retry_state: RetryCallState) -> None:
        logger.info(
            f"Attempt {retry_state.attempt_number}/{max_attempts} failed "
            f"({retry_state.outcome.exception()}), "
            f"retrying in {retry_state.next_action.sleep:.2f}s"
        )
    return before_sleep


def retry_with_backoff(
    operation: Callable[[], T],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    *,
    jitter: float = DEFAULT_JITTER,
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """
    Call operation until it succeeds or max_attempts calls have failed.

    The wait after failed attempt n (0-based) is initial_delay * 2^n plus a
    uniform random term in [0, jitter].

    Args:
        operation: Zero-argument callable to attempt
        max_attempts: Total number of calls allowed
        initial_delay: Base delay in seconds, doubled after every failure
        jitter: Upper bound in seconds of the random term added to each delay
        sleep: Function used to wait between attempts (time.sleep by default)

    Returns:
        The first successful result

    Raises:
        RetryExhausted: Carrying the error of the final attempt
        ValueError: If max_attempts < 1
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

    retrying = Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=initial_delay, min=0) + wait_random(0, jitter),
        sleep=sleep or time.sleep,
        before_sleep=_log_retry(max_attempts),
    )
    try:
        return retrying(operation)
    except RetryError as e:
        last_error = e.last_attempt.exception()
        raise RetryExhausted(max_attempts, last_error) from last_error


def worst_case_duration(
    max_attempts: int,
    attempt_timeout: float,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    jitter: float = DEFAULT_JITTER,
) -> float:
    """Longest a retried operation can run when each attempt is bounded by attempt_timeout."""
    waits = sum(initial_delay * 2 ** n + jitter for n in range(max(max_attempts - 1, 0)))
    return max_attempts * attempt_timeout + waits
