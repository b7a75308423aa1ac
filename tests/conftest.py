"""Shared fixtures for the bridge tests."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from mqtt2influxdb.errors import FatalDeliveryError, RetryableDeliveryError
from mqtt2influxdb.rules import RuleSet, parse_rules


class FakeClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSink:
    """
    In-memory sink.  `outcomes` is consumed one entry per write: None for
    success, or an exception instance to raise.  Once exhausted, writes
    succeed.
    """

    def __init__(self, outcomes: Optional[List[Optional[Exception]]] = None) -> None:
        self.outcomes = list(outcomes or [])
        self.writes: List[list] = []
        self.pings = 0

    async def write(self, points) -> None:
        self.writes.append(list(points))
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if outcome is not None:
                raise outcome

    async def ping(self) -> None:
        self.pings += 1

    async def close(self) -> None:
        pass

    @property
    def points(self) -> list:
        return [p for batch in self.writes for p in batch]


class SleepRecorder:
    """Replacement for asyncio.sleep that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def make_rules():
    def _make(*rules: Dict[str, Any]) -> RuleSet:
        return parse_rules({"rules": list(rules)})
    return _make


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def retryable():
    return lambda msg="timeout": RetryableDeliveryError(msg)


@pytest.fixture
def fatal():
    return lambda status=401: FatalDeliveryError(f"InfluxDB {status}", status=status)
