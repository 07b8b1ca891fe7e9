"""Shared fixtures: a manual scheduler and clock, and controller wiring."""

import math
import random
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

import pytest

from taximeter.models import PositionFix
from taximeter.services.catalog import get_trip_type_catalog
from taximeter.services.distance import EARTH_RADIUS_KM, DistanceEstimator
from taximeter.services.fare_calculator import TieredFareCalculator
from taximeter.services.position_source import (
    ForwardedPositionProvider,
    LivePositionSource,
    SimulatedPositionSource,
)
from taximeter.services.trip_controller import TripController

ORIGIN_LAT = 19.7069
ORIGIN_LNG = -103.4614
KM_PER_DEGREE = EARTH_RADIUS_KM * math.pi / 180.0
EPOCH = datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)


class FakeTimer:
    def __init__(self, due: float, callback: Callable[[], None], interval: Optional[float] = None):
        self.due = due
        self.callback = callback
        self.interval = interval
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Scheduler driven by `advance()` instead of a real event loop."""

    def __init__(self):
        self.now = 0.0
        self._timers: List[FakeTimer] = []
        self.spawned = []

    def call_later(self, delay_seconds, callback):
        timer = FakeTimer(self.now + delay_seconds, callback)
        self._timers.append(timer)
        return timer

    def call_every(self, interval_seconds, callback):
        timer = FakeTimer(self.now + interval_seconds, callback, interval_seconds)
        self._timers.append(timer)
        return timer

    def spawn(self, coro):
        self.spawned.append(coro)

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [t for t in self._timers if not t.cancelled and t.due <= target + 1e-9]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self.now = timer.due
            if timer.interval is None:
                timer.cancelled = True
            else:
                timer.due += timer.interval
            timer.callback()
        self.now = target
        self._timers = [t for t in self._timers if not t.cancelled]

    @property
    def active_timers(self) -> List[FakeTimer]:
        return [t for t in self._timers if not t.cancelled]


class FakeClock:
    def __init__(self, scheduler: FakeScheduler):
        self.scheduler = scheduler

    def __call__(self) -> datetime:
        return EPOCH + timedelta(seconds=self.scheduler.now)


def fix_at(km_north: float, accuracy_m: float = 5.0, timestamp: Optional[datetime] = None) -> PositionFix:
    """Fix `km_north` kilometers due north of the test origin."""
    latitude = ORIGIN_LAT
    if km_north:
        # A hair past the target so float rounding never lands below a tier edge
        latitude += km_north / KM_PER_DEGREE + 1e-9
    return PositionFix(
        latitude=latitude,
        longitude=ORIGIN_LNG,
        accuracy_m=accuracy_m,
        timestamp=timestamp or EPOCH,
    )


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def clock(scheduler):
    return FakeClock(scheduler)


@pytest.fixture
def provider(scheduler, clock):
    return ForwardedPositionProvider(scheduler, clock=clock)


@pytest.fixture
def make_controller(scheduler, clock, provider):
    def factory(mapping_provider=None, position_provider=None, seed=7):
        return TripController(
            catalog=get_trip_type_catalog(),
            calculator=TieredFareCalculator(),
            estimator=DistanceEstimator(mapping_provider),
            live_source=LivePositionSource(position_provider or provider),
            simulated_source=SimulatedPositionSource(
                scheduler, rng=random.Random(seed), clock=clock
            ),
            scheduler=scheduler,
            mapping_provider=mapping_provider,
            clock=clock,
        )

    return factory


@pytest.fixture
def controller(make_controller):
    return make_controller()


@pytest.fixture
def push(provider, clock):
    """Push a fix `km` north of the origin, stamped with the current fake time."""
    def _push(km_north: float, accuracy_m: float = 5.0) -> None:
        provider.push_fix(fix_at(km_north, accuracy_m, timestamp=clock()))

    return _push


@pytest.fixture
def running_controller(controller, push):
    """Controller with a live trip running from the test origin."""
    controller.start()
    push(0.0)
    return controller
