"""Producers of position samples: live device fixes or a simulated walk."""

import itertools
import logging
import math
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol, runtime_checkable

from taximeter.config import settings
from taximeter.exceptions import PositionError
from taximeter.models import OriginPosition, Position, PositionErrorCode, PositionFix
from taximeter.services.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

FixCallback = Callable[[PositionFix], None]
ErrorCallback = Callable[[PositionError], None]
Clock = Callable[[], datetime]

KM_PER_DEGREE_LAT = 111.32


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PositionOptions:
    high_accuracy: bool
    timeout_ms: int
    max_cached_age_ms: int


INITIAL_FIX_OPTIONS = PositionOptions(
    high_accuracy=settings.POSITION_HIGH_ACCURACY,
    timeout_ms=settings.POSITION_FIX_TIMEOUT_MS,
    max_cached_age_ms=settings.INITIAL_FIX_MAX_CACHED_AGE_MS,
)

WATCH_OPTIONS = PositionOptions(
    high_accuracy=settings.POSITION_HIGH_ACCURACY,
    timeout_ms=settings.POSITION_FIX_TIMEOUT_MS,
    max_cached_age_ms=settings.WATCH_MAX_CACHED_AGE_MS,
)


@runtime_checkable
class PositionProvider(Protocol):
    """Device location service."""

    def is_available(self) -> bool:
        ...

    def get_current_position(
        self, on_success: FixCallback, on_error: ErrorCallback, options: PositionOptions
    ) -> None:
        ...

    def watch_position(
        self, on_update: FixCallback, on_error: ErrorCallback, options: PositionOptions
    ) -> int:
        ...

    def clear_watch(self, handle: int) -> None:
        ...


@dataclass
class _PendingRequest:
    on_success: FixCallback
    on_error: ErrorCallback
    timer: Optional[TimerHandle] = None


class ForwardedPositionProvider:
    """
    Position provider fed by fixes that the client device pushes in.

    One-shot requests are answered from the last fix when it is young enough
    for the request's `max_cached_age_ms`, otherwise by the next pushed fix, or
    fail with TIMEOUT after `timeout_ms`.
    """

    def __init__(self, scheduler: Scheduler, clock: Clock = utc_now, available: bool = True):
        self._scheduler = scheduler
        self._clock = clock
        self._available = available
        self._last_fix: Optional[PositionFix] = None
        self._pending: List[_PendingRequest] = []
        self._watchers: Dict[int, _PendingRequest] = {}
        self._handles = itertools.count(1)

    def is_available(self) -> bool:
        return self._available

    def set_available(self, available: bool) -> None:
        self._available = available
        if not available:
            self.push_error(PositionErrorCode.POSITION_UNAVAILABLE, "Location service not available")

    @property
    def watch_count(self) -> int:
        return len(self._watchers)

    def get_current_position(
        self, on_success: FixCallback, on_error: ErrorCallback, options: PositionOptions
    ) -> None:
        if not self._available:
            on_error(PositionError(PositionErrorCode.POSITION_UNAVAILABLE))
            return

        cached = self._cached_fix(options.max_cached_age_ms)
        if cached is not None:
            on_success(cached)
            return

        request = _PendingRequest(on_success=on_success, on_error=on_error)
        request.timer = self._scheduler.call_later(
            options.timeout_ms / 1000.0, lambda: self._expire(request)
        )
        self._pending.append(request)

    def watch_position(
        self, on_update: FixCallback, on_error: ErrorCallback, options: PositionOptions
    ) -> int:
        handle = next(self._handles)
        if not self._available:
            on_error(PositionError(PositionErrorCode.POSITION_UNAVAILABLE))
            return handle

        self._watchers[handle] = _PendingRequest(on_success=on_update, on_error=on_error)
        cached = self._cached_fix(options.max_cached_age_ms)
        if cached is not None:
            on_update(cached)
        return handle

    def clear_watch(self, handle: int) -> None:
        self._watchers.pop(handle, None)

    def push_fix(self, fix: PositionFix) -> None:
        """Deliver a fix from the device to every waiting request and watcher."""
        self._last_fix = fix
        pending, self._pending = self._pending, []
        for request in pending:
            if request.timer is not None:
                request.timer.cancel()
            request.on_success(fix)
        for watcher in list(self._watchers.values()):
            watcher.on_success(fix)

    def push_error(self, code: PositionErrorCode, message: str = "") -> None:
        """Deliver a device-side failure to every waiting request and watcher."""
        error = PositionError(code, message or None)
        pending, self._pending = self._pending, []
        for request in pending:
            if request.timer is not None:
                request.timer.cancel()
            request.on_error(error)
        for watcher in list(self._watchers.values()):
            watcher.on_error(error)

    def _cached_fix(self, max_cached_age_ms: int) -> Optional[PositionFix]:
        if self._last_fix is None or max_cached_age_ms <= 0:
            return None
        age_ms = (self._clock() - self._last_fix.timestamp).total_seconds() * 1000.0
        if 0 <= age_ms <= max_cached_age_ms:
            return self._last_fix
        return None

    def _expire(self, request: _PendingRequest) -> None:
        if request not in self._pending:
            return
        self._pending.remove(request)
        request.on_error(PositionError(PositionErrorCode.TIMEOUT, "Timed out waiting for a position fix"))


class PositionSource(ABC):
    """
    Producer of position samples for a trip.
    Every stop/suspend is safe to call when nothing is active.
    """

    name = "source"

    @abstractmethod
    def acquire_fix(self, on_success: FixCallback, on_error: ErrorCallback) -> None:
        """Request the initial fix that becomes the trip's origin."""

    @abstractmethod
    def start(
        self,
        origin: OriginPosition,
        on_sample: FixCallback,
        on_error: ErrorCallback,
        from_position: Optional[Position] = None,
    ) -> None:
        """Begin continuous sampling."""

    @abstractmethod
    def suspend(self) -> None:
        """Stop producing samples while the trip is paused."""

    @abstractmethod
    def resume(self) -> None:
        """Continue after `suspend`."""

    @abstractmethod
    def stop(self) -> None:
        """Cancel sampling and forget the trip."""

    @property
    @abstractmethod
    def active(self) -> bool:
        ...


class LivePositionSource(PositionSource):
    """Continuous watch on the device position provider."""

    name = "live"

    def __init__(self, provider: PositionProvider):
        self.provider = provider
        self._watch_id: Optional[int] = None

    def is_available(self) -> bool:
        return self.provider.is_available()

    def acquire_fix(self, on_success: FixCallback, on_error: ErrorCallback) -> None:
        self.provider.get_current_position(on_success, on_error, INITIAL_FIX_OPTIONS)

    def start(
        self,
        origin: OriginPosition,
        on_sample: FixCallback,
        on_error: ErrorCallback,
        from_position: Optional[Position] = None,
    ) -> None:
        self.stop()
        self._watch_id = self.provider.watch_position(on_sample, on_error, WATCH_OPTIONS)
        logger.info("GPS tracking started with watch id %s", self._watch_id)

    def suspend(self) -> None:
        # Samples keep arriving while paused; the controller ignores their distance.
        pass

    def resume(self) -> None:
        pass

    def stop(self) -> None:
        if self._watch_id is not None:
            self.provider.clear_watch(self._watch_id)
            logger.info("GPS tracking stopped")
            self._watch_id = None

    @property
    def active(self) -> bool:
        return self._watch_id is not None


class SimulatedPositionSource(PositionSource):
    """
    Synthetic movement for exercising the meter without positioning hardware.

    Every tick moves the virtual position 0.02-0.07 km. The step is split into
    independent latitude and longitude jitter whose signs are fixed per trip,
    so the walk keeps heading away from the origin.
    """

    name = "simulated"

    def __init__(
        self,
        scheduler: Scheduler,
        rng: Optional[random.Random] = None,
        clock: Clock = utc_now,
        default_origin: Optional[tuple] = None,
    ):
        self._scheduler = scheduler
        self._rng = rng or random.Random()
        self._clock = clock
        self._default_origin = default_origin or settings.SIMULATION_DEFAULT_ORIGIN
        self._timer: Optional[TimerHandle] = None
        self._on_sample: Optional[FixCallback] = None
        self._latitude: Optional[float] = None
        self._longitude: Optional[float] = None
        self._signs = (1.0, 1.0)

    def acquire_fix(self, on_success: FixCallback, on_error: ErrorCallback) -> None:
        latitude, longitude = self._default_origin
        on_success(
            PositionFix(
                latitude=latitude,
                longitude=longitude,
                accuracy_m=0.0,
                timestamp=self._clock(),
            )
        )

    def start(
        self,
        origin: OriginPosition,
        on_sample: FixCallback,
        on_error: ErrorCallback,
        from_position: Optional[Position] = None,
    ) -> None:
        self.stop()
        self._on_sample = on_sample
        if from_position is None:
            self._latitude = origin.latitude
            self._longitude = origin.longitude
            self._signs = (self._rng.choice((-1.0, 1.0)), self._rng.choice((-1.0, 1.0)))
        else:
            # Keep moving away from the origin when taking over mid-trip
            self._latitude = from_position.latitude
            self._longitude = from_position.longitude
            self._signs = (
                1.0 if from_position.latitude >= origin.latitude else -1.0,
                1.0 if from_position.longitude >= origin.longitude else -1.0,
            )
        self._start_timer()
        logger.info("Movement simulation started")

    def suspend(self) -> None:
        self._cancel_timer()

    def resume(self) -> None:
        if self._on_sample is not None and self._timer is None:
            self._start_timer()

    def stop(self) -> None:
        self._cancel_timer()
        if self._on_sample is not None:
            logger.info("Movement simulation stopped")
        self._on_sample = None
        self._latitude = None
        self._longitude = None

    @property
    def active(self) -> bool:
        return self._timer is not None

    def next_fix(self) -> PositionFix:
        """Advance the virtual position by one step."""
        if self._latitude is None or self._longitude is None:
            raise RuntimeError("Simulation has not been started")
        step_km = self._rng.uniform(settings.SIMULATION_MIN_STEP_KM, settings.SIMULATION_MAX_STEP_KM)
        lat_weight = self._rng.random()
        lng_weight = self._rng.random()
        norm = math.hypot(lat_weight, lng_weight)
        if norm == 0:
            lat_weight, norm = 1.0, 1.0
        north_km = self._signs[0] * step_km * lat_weight / norm
        east_km = self._signs[1] * step_km * lng_weight / norm

        self._latitude += north_km / KM_PER_DEGREE_LAT
        km_per_degree_lng = KM_PER_DEGREE_LAT * max(math.cos(math.radians(self._latitude)), 1e-6)
        self._longitude += east_km / km_per_degree_lng
        return PositionFix(
            latitude=max(-90.0, min(90.0, self._latitude)),
            longitude=((self._longitude + 180.0) % 360.0) - 180.0,
            accuracy_m=0.0,
            timestamp=self._clock(),
        )

    def _tick(self) -> None:
        if self._on_sample is None:
            return
        self._on_sample(self.next_fix())

    def _start_timer(self) -> None:
        self._timer = self._scheduler.call_every(settings.SIMULATION_TICK_SECONDS, self._tick)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
