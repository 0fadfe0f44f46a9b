"""
Shared pytest fixtures.

Time and randomness are injected everywhere, so expiry, day roll-over and
sampling are driven explicitly by the tests.  No database or network is
required: HTTP calls go through ``httpx.MockTransport`` and the SQL store
runs on in-memory SQLite.
"""
from datetime import datetime, timedelta, timezone

import pytest

from pulse.analytics.consent import ConsentGate
from pulse.analytics.cost_control import CostControl
from pulse.analytics.events import CanonicalEvent
from pulse.analytics.identity import IdentityStore
from pulse.analytics.storage import MemoryStorage
from pulse.analytics.tracker import Tracker
from pulse.analytics.types import AnalyticsConfig

START = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class MonotonicClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FixedRandom:
    """Stands in for ``random.Random`` with a constant draw."""

    def __init__(self, value: float):
        self.value = value

    def random(self) -> float:
        return self.value


class RecordingSink:
    def __init__(self):
        self.events: list[CanonicalEvent] = []

    def __call__(self, event: CanonicalEvent) -> None:
        self.events.append(event)

    @property
    def names(self) -> list[str | None]:
        return [e.event_name for e in self.events]


class BrokenStorage:
    """Storage whose every operation fails like a disabled browser store."""

    def get(self, key):
        raise OSError("storage disabled")

    def set(self, key, value):
        raise OSError("storage disabled")

    def remove(self, key):
        raise OSError("storage disabled")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def consent(storage, clock):
    return ConsentGate(storage, clock=clock)


@pytest.fixture
def identity(storage, clock):
    return IdentityStore(storage, clock=clock)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def tracker(identity, consent, clock, sink):
    """Initialized tracker with consent granted and one recording sink."""
    consent.accept_all()
    t = Tracker(identity, consent, rng=FixedRandom(0.5), clock=clock)
    t.register_destination(sink)
    t.init_analytics(AnalyticsConfig())
    return t


@pytest.fixture
def cost_control(consent, clock):
    return CostControl(consent, rng=FixedRandom(0.5), clock=clock)
