"""
Shared fixtures: a controllable clock and a scripted HTTP transport.
"""
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

import pytest

from sitefetch.proxy_fetcher import TransportResponse


class FakeClock:
    """Clock whose time only moves when advance() is called."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class Scripted:
    """What a FakeTransport does for one URL."""
    status: int = 200
    body: bytes = b""
    delay: float = 0.0
    error: Optional[Exception] = None


class FakeTransport:
    """Transport returning scripted responses; unknown URLs raise ConnectionError."""

    def __init__(self, script: Optional[Dict[str, Union[Scripted, List[Scripted]]]] = None):
        self.script = script or {}
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def get(self, url: str, timeout: float) -> TransportResponse:
        with self._lock:
            self.calls.append(url)
            step = self.script.get(url)
            if isinstance(step, list):
                step = step.pop(0) if len(step) > 1 else step[0]
        if step is None:
            raise ConnectionError(f"no route to {url}")
        if step.delay:
            time.sleep(step.delay)
        if step.error is not None:
            raise step.error
        return TransportResponse(status=step.status, body=step.body)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return FakeTransport()
