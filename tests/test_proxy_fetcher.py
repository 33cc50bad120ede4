"""
Tests for the relay race fetcher.
"""
import time

import pytest

from sitefetch.errors import AllRoutesExhausted, TransientFetchFailure
from sitefetch.proxy_fetcher import ProxyRaceFetcher, RaceAttempt, RouteKind, build_candidates

from conftest import FakeTransport, Scripted


RESOURCE = "https://example.com/sitemap.xml"
RELAYS = [
    "https://relay-a.test/?{url}",
    "https://relay-b.test/raw?url={encoded}",
]
RELAY_A = f"https://relay-a.test/?{RESOURCE}"
RELAY_B = "https://relay-b.test/raw?url=https%3A%2F%2Fexample.com%2Fsitemap.xml"


# =============================================================================
# Candidate construction
# =============================================================================

def test_candidates_include_direct_and_expand_templates():
    candidates = build_candidates(RESOURCE, RELAYS)

    assert candidates[0] == RaceAttempt(route=RESOURCE, kind=RouteKind.DIRECT)
    assert [c.route for c in candidates[1:]] == [RELAY_A, RELAY_B]
    assert all(c.kind == RouteKind.RELAYED for c in candidates[1:])


def test_candidates_are_deduplicated():
    candidates = build_candidates(RESOURCE, RELAYS + [RELAYS[0], "{url}"])
    routes = [c.route for c in candidates]
    assert len(routes) == len(set(routes)) == 3


def test_templates_without_placeholder_are_ignored():
    candidates = build_candidates(RESOURCE, ["https://dead-relay.test/fetch"])
    assert [c.route for c in candidates] == [RESOURCE]


def test_direct_always_included_without_relays():
    assert build_candidates(RESOURCE, []) == [RaceAttempt(RESOURCE, RouteKind.DIRECT)]


# =============================================================================
# Racing
# =============================================================================

def test_first_success_wins_over_slow_routes():
    transport = FakeTransport({
        RESOURCE: Scripted(status=200, body=b"slow direct", delay=0.5),
        RELAY_A: Scripted(status=200, body=b"<urlset/>", delay=0.02),
        RELAY_B: Scripted(status=500, body=b"error"),
    })
    fetcher = ProxyRaceFetcher(transport=transport, relay_templates=RELAYS)

    started = time.monotonic()
    body = fetcher.fetch_via_fastest(RESOURCE, per_attempt_timeout=2.0)

    assert body == b"<urlset/>"
    assert time.monotonic() - started < 0.4
    # All attempts were issued, not just the first
    assert set(transport.calls) == {RESOURCE, RELAY_A, RELAY_B}


def test_single_success_among_timeouts_resolves_within_timeout():
    transport = FakeTransport({
        RESOURCE: Scripted(status=200, body=b"too late", delay=1.0),
        RELAY_A: Scripted(error=ConnectionError("refused")),
        RELAY_B: Scripted(status=200, body=b"winner", delay=0.05),
    })
    fetcher = ProxyRaceFetcher(transport=transport, relay_templates=RELAYS)

    started = time.monotonic()
    body = fetcher.fetch_via_fastest(RESOURCE, per_attempt_timeout=0.3)

    assert body == b"winner"
    assert time.monotonic() - started < 0.3 + 0.2


def test_empty_body_is_a_failure():
    transport = FakeTransport({
        RESOURCE: Scripted(status=200, body=b""),
        RELAY_A: Scripted(status=200, body=b"content", delay=0.05),
    })
    fetcher = ProxyRaceFetcher(transport=transport, relay_templates=RELAYS[:1])
    assert fetcher.fetch_via_fastest(RESOURCE, per_attempt_timeout=1.0) == b"content"


def test_all_routes_failing_raises_aggregate():
    transport = FakeTransport({
        RESOURCE: Scripted(status=403, body=b"forbidden"),
        RELAY_A: Scripted(error=ConnectionError("relay down")),
        RELAY_B: Scripted(status=200, body=b"\xff\xfe\xfd"),
    })
    fetcher = ProxyRaceFetcher(transport=transport, relay_templates=RELAYS)

    with pytest.raises(AllRoutesExhausted) as exc_info:
        fetcher.fetch_via_fastest(RESOURCE, per_attempt_timeout=1.0)

    error = exc_info.value
    assert len(error.failures) == 3
    assert all(isinstance(f, TransientFetchFailure) for f in error.failures)
    assert error.last_error is error.failures[-1]
    assert "Last Error" in str(error)
    assert "internet connection" in str(error)
    statuses = {f.route: f.status for f in error.failures}
    assert statuses[RESOURCE] == 403


def test_timeouts_count_as_failures():
    transport = FakeTransport({
        RESOURCE: Scripted(status=200, body=b"late", delay=1.0),
        RELAY_A: Scripted(status=200, body=b"late", delay=1.0),
    })
    fetcher = ProxyRaceFetcher(transport=transport, relay_templates=RELAYS[:1])

    started = time.monotonic()
    with pytest.raises(AllRoutesExhausted) as exc_info:
        fetcher.fetch_via_fastest(RESOURCE, per_attempt_timeout=0.1)

    assert time.monotonic() - started < 0.5
    assert all("timed out" in f.reason for f in exc_info.value.failures)


def test_explicit_candidates_override_relays():
    transport = FakeTransport({"https://mirror.test/x": Scripted(status=200, body=b"mirror")})
    fetcher = ProxyRaceFetcher(transport=transport, relay_templates=RELAYS)

    body = fetcher.fetch_via_fastest(
        RESOURCE,
        candidates=[RaceAttempt("https://mirror.test/x", RouteKind.RELAYED)],
        per_attempt_timeout=1.0,
    )

    assert body == b"mirror"
    assert transport.calls == ["https://mirror.test/x"]
