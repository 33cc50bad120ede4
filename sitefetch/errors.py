"""
Error types for fetching and caching.

Single-attempt failures are collected by the race fetcher and only surface
wrapped in AllRoutesExhausted. Cache errors never reach callers of get().
"""
from typing import List, Optional


REMEDIATION_HINT = (
    "Please check that:\n"
    "1. The URL is correct and publicly accessible\n"
    "2. The site's security settings aren't blocking relay access\n"
    "3. Your internet connection is stable"
)


class FetchError(Exception):
    """Base class for all fetch errors."""


class TransientFetchFailure(FetchError):
    """A single route attempt failed (timeout, bad status or transport error)."""

    def __init__(self, route: str, reason: str, status: Optional[int] = None):
        self.route = route
        self.reason = reason
        self.status = status
        super().__init__(f"{reason} via {route}")


class AllRoutesExhausted(FetchError):
    """
    Every candidate route for one resource failed.

    Carries every per-route failure, the last one seen, and a human-readable
    remediation hint.
    """

    def __init__(self, resource: str, failures: List[Exception]):
        self.resource = resource
        self.failures = list(failures)
        self.last_error: Optional[Exception] = self.failures[-1] if self.failures else None
        message = (
            f"Failed to fetch {resource}. This is often due to network issues "
            f"or website security blocking relay access.\n\n{REMEDIATION_HINT}"
        )
        if self.last_error is not None:
            message += f"\n\nLast Error: {self.last_error}"
        super().__init__(message)


class RetryExhausted(FetchError):
    """An operation failed on its final permitted attempt."""

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Failed after {attempts} attempt(s): {last_error}")


class CoalescedFetchTimeout(FetchError):
    """A caller gave up waiting on another caller's fetch of the same resource."""

    def __init__(self, resource: str, waited: float):
        self.resource = resource
        self.waited = waited
        super().__init__(
            f"Gave up on {resource} after waiting {waited:.1f}s for a fetch "
            f"already in progress.\n\n{REMEDIATION_HINT}"
        )


class CacheError(Exception):
    """Base class for cache tier errors."""


class CacheCorruption(CacheError):
    """A stored payload could not be deserialized."""

    def __init__(self, key: str, reason: str = ""):
        self.key = key
        super().__init__(f"Corrupt cache entry {key}: {reason}" if reason else f"Corrupt cache entry {key}")


class StorageUnavailable(CacheError):
    """The durable store failed to open or to run a transaction."""


class SitemapParseError(Exception):
    """Sitemap text is not valid sitemap XML."""


class SitemapNotFound(FetchError):
    """None of the conventional sitemap locations of a site could be crawled."""

    def __init__(self, site: str, tried: List[str]):
        self.site = site
        self.tried = list(tried)
        super().__init__(f"No sitemap found for {site} (tried {', '.join(self.tried)})")
