"""
Fetch one resource through several routes at once and keep the fastest.

The direct URL and every relay route are requested concurrently. The first
response with a 2xx status and a non-empty UTF-8 body wins; the rest are
abandoned. If every route fails the caller gets one AllRoutesExhausted error
instead of a stack of per-relay failures.
"""
import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Protocol, Sequence
from urllib.parse import quote, urlparse

import requests

from .errors import AllRoutesExhausted, TransientFetchFailure

logger = logging.getLogger("sitefetch.proxy_fetcher")

DEFAULT_ATTEMPT_TIMEOUT = 15.0  # seconds


class RouteKind(Enum):
    DIRECT = "direct"
    RELAYED = "relayed"


@dataclass(frozen=True)
class RaceAttempt:
    """One candidate route for a single logical fetch."""
    route: str
    kind: RouteKind

    @property
    def label(self) -> str:
        if self.kind == RouteKind.DIRECT:
            return "direct"
        return urlparse(self.route).hostname or self.route


@dataclass
class TransportResponse:
    status: int
    body: bytes


class Transport(Protocol):
    """Timeout-capable request primitive; must be safe to call from many threads."""

    def get(self, url: str, timeout: float) -> TransportResponse: ...


class RequestsTransport:
    """Transport backed by a shared requests.Session."""

    def __init__(self, user_agent: Optional[str] = None, session: Optional[requests.Session] = None):
        self._session = session or requests.Session()
        if user_agent:
            self._session.headers["User-Agent"] = user_agent

    def get(self, url: str, timeout: float) -> TransportResponse:
        response = self._session.get(url, timeout=timeout)
        return TransportResponse(status=response.status_code, body=response.content)

    def close(self) -> None:
        self._session.close()


def build_candidates(resource: str, relay_templates: Iterable[str]) -> List[RaceAttempt]:
    """
    Expand relay templates for resource.

    Templates use {url} for the raw resource or {encoded} for the
    percent-encoded one. The direct route is always included; duplicate
    routes and templates that don't carry the resource are dropped.
    """
    encoded = quote(resource, safe="")
    candidates = [RaceAttempt(route=resource, kind=RouteKind.DIRECT)]
    seen = {resource}

    for template in relay_templates:
        if "{url}" not in template and "{encoded}" not in template:
            logger.warning(f"Ignoring relay template without a resource placeholder: {template}")
            continue
        route = template.replace("{encoded}", encoded).replace("{url}", resource)
        if route in seen:
            continue
        seen.add(route)
        candidates.append(RaceAttempt(route=route, kind=RouteKind.RELAYED))

    return candidates


class ProxyRaceFetcher:
    """
    Races the direct route against relay routes.

    Usage:
        fetcher = ProxyRaceFetcher(relay_templates=settings.relay_templates)
        body = fetcher.fetch_via_fastest("https://example.com/sitemap.xml")
    """

    def __init__(
        self,
        transport: Optional[Transport] = None,
        relay_templates: Sequence[str] = (),
        default_timeout: float = DEFAULT_ATTEMPT_TIMEOUT,
    ):
        self._transport = transport or RequestsTransport()
        self._relay_templates = list(relay_templates)
        self._default_timeout = default_timeout

    @property
    def default_timeout(self) -> float:
        return self._default_timeout

    def candidates_for(self, resource: str) -> List[RaceAttempt]:
        return build_candidates(resource, self._relay_templates)

    def fetch_via_fastest(
        self,
        resource: str,
        candidates: Optional[Sequence[RaceAttempt]] = None,
        per_attempt_timeout: Optional[float] = None,
    ) -> bytes:
        """
        Return the body of the first successful attempt.

        Args:
            resource: The logical URL being fetched
            candidates: Routes to race; defaults to direct plus configured relays
            per_attempt_timeout: Seconds each attempt may take

        Raises:
            AllRoutesExhausted: If every attempt failed or timed out
        """
        attempts = list(candidates) if candidates is not None else self.candidates_for(resource)
        timeout = self._default_timeout if per_attempt_timeout is None else per_attempt_timeout
        if not attempts:
            raise AllRoutesExhausted(resource, [])

        failures: List[Exception] = []
        executor = ThreadPoolExecutor(max_workers=len(attempts), thread_name_prefix="sitefetch-race")
        futures: Dict[Future, RaceAttempt] = {
            executor.submit(self._attempt, attempt, timeout): attempt for attempt in attempts
        }
        # All attempts start together, so one deadline bounds each of them.
        deadline = time.monotonic() + timeout
        pending = set(futures)

        try:
            while pending:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                done, pending = wait(pending, timeout=remaining, return_when=FIRST_COMPLETED)
                for future in done:
                    attempt = futures[future]
                    try:
                        body = future.result()
                    except TransientFetchFailure as e:
                        logger.warning(f"Failed via {attempt.label}: {e.reason}")
                        failures.append(e)
                    else:
                        logger.info(f"Fetched {resource} via {attempt.label}")
                        return body

            for future in pending:
                attempt = futures[future]
                logger.warning(f"Timed out via {attempt.label} after {timeout}s")
                failures.append(TransientFetchFailure(attempt.route, f"timed out after {timeout}s"))
        finally:
            # Abandon the losers; running requests finish in the background.
            executor.shutdown(wait=False, cancel_futures=True)

        raise AllRoutesExhausted(resource, failures)

    def _attempt(self, attempt: RaceAttempt, timeout: float) -> bytes:
        """Run one attempt, reporting every failure as TransientFetchFailure."""
        try:
            response = self._transport.get(attempt.route, timeout)
        except Exception as e:
            raise TransientFetchFailure(attempt.route, f"{type(e).__name__}: {e}") from e

        if not 200 <= response.status < 300:
            raise TransientFetchFailure(
                attempt.route,
                f"request failed with status {response.status}",
                status=response.status,
            )
        if not response.body:
            raise TransientFetchFailure(attempt.route, "empty response body", status=response.status)
        try:
            response.body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise TransientFetchFailure(attempt.route, f"undecodable body: {e}", status=response.status) from e
        return response.body

    def close(self) -> None:
        close = getattr(self._transport, "close", None)
        if close is not None:
            close()
