"""Trip lifecycle: idle -> running <-> paused -> idle."""

import logging
import random
from typing import Optional

from taximeter.config import settings
from taximeter.exceptions import (
    InvalidSelectionError,
    InvalidTransitionError,
    LocationDeniedError,
    LocationUnavailableError,
    PositionError,
)
from taximeter.models import (
    LocationStatus,
    MeterSnapshot,
    OriginPosition,
    Position,
    PositionErrorCode,
    PositionFix,
    SubDestinationRoute,
    SubTrip,
    TripPhase,
    TripState,
    TripSummary,
    TripType,
)
from taximeter.services.catalog import TripTypeCatalog, get_trip_type_catalog
from taximeter.services.distance import DistanceEstimator
from taximeter.services.fare_calculator import FareCalculatorInterface, get_fare_calculator
from taximeter.services.maps import MappingProvider, get_mapping_provider
from taximeter.services.position_source import (
    Clock,
    ForwardedPositionProvider,
    LivePositionSource,
    PositionSource,
    SimulatedPositionSource,
    utc_now,
)
from taximeter.services.scheduler import AsyncioScheduler, Scheduler, TimerHandle

logger = logging.getLogger(__name__)


class TripController:
    """
    State machine for one metering session.

    Owns the origin anchor, the waiting-time timer and the active position
    source. Distance is always measured fresh from the origin; cost is always
    recomputed by the fare calculator from (distance, waiting time, trip type).
    Callbacks that arrive after a stop are ignored.
    """

    def __init__(
        self,
        catalog: TripTypeCatalog,
        calculator: FareCalculatorInterface,
        estimator: DistanceEstimator,
        live_source: LivePositionSource,
        simulated_source: SimulatedPositionSource,
        scheduler: Scheduler,
        mapping_provider: Optional[MappingProvider] = None,
        clock: Clock = utc_now,
        max_sample_accuracy_m: Optional[float] = None,
    ):
        self._catalog = catalog
        self._calculator = calculator
        self._estimator = estimator
        self._live = live_source
        self._simulated = simulated_source
        self._scheduler = scheduler
        self._mapping_provider = mapping_provider
        self._clock = clock
        self._max_accuracy_m = (
            settings.MAX_SAMPLE_ACCURACY_M if max_sample_accuracy_m is None else max_sample_accuracy_m
        )

        self._phase = TripPhase.IDLE
        self._trip_type: TripType = catalog.default
        self._sub_trip: Optional[SubTrip] = None
        self._simulation_mode = False
        self._state = TripState(cost=self._base_price())
        self._origin: Optional[OriginPosition] = None
        self._source: Optional[PositionSource] = None
        self._waiting_timer: Optional[TimerHandle] = None
        self._start_token = 0
        self._pending_start: Optional[int] = None

        self._location_status = (
            LocationStatus.AVAILABLE if live_source.is_available() else LocationStatus.UNAVAILABLE
        )
        self._last_error: Optional[str] = None
        self._current_position: Optional[Position] = None
        self._current_address: Optional[str] = None
        self._address_in_flight = False
        self._last_summary: Optional[TripSummary] = None
        self._discarded_samples = 0

    # ------------------------------------------------------------------
    # Read side

    @property
    def phase(self) -> TripPhase:
        return self._phase

    @property
    def state(self) -> TripState:
        return self._state

    @property
    def trip_type(self) -> TripType:
        return self._trip_type

    @property
    def sub_trip(self) -> Optional[SubTrip]:
        return self._sub_trip

    @property
    def origin(self) -> Optional[OriginPosition]:
        return self._origin

    @property
    def location_status(self) -> LocationStatus:
        return self._location_status

    @property
    def simulation_mode(self) -> bool:
        return self._simulation_mode

    @property
    def last_summary(self) -> Optional[TripSummary]:
        return self._last_summary

    @property
    def discarded_samples(self) -> int:
        return self._discarded_samples

    @property
    def live_source(self) -> LivePositionSource:
        return self._live

    @property
    def catalog(self) -> TripTypeCatalog:
        return self._catalog

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    def snapshot(self) -> MeterSnapshot:
        return MeterSnapshot(
            phase=self._phase,
            trip=self._state,
            currency=settings.CURRENCY,
            location_status=self._location_status,
            last_error=self._last_error,
            current_position=self._current_position,
            current_address=self._current_address,
            trip_type_id=self._trip_type.id,
            sub_trip_id=self._sub_trip.id if self._sub_trip else None,
            simulation_mode=self._simulation_mode,
            last_summary=self._last_summary,
            discarded_samples=self._discarded_samples,
        )

    # ------------------------------------------------------------------
    # Commands

    def start(self) -> None:
        """
        Request the initial fix; the trip starts running once it arrives.

        Raises:
            InvalidTransitionError: If a trip is running or already starting
            LocationUnavailableError: If the device has no location capability
            LocationDeniedError: If location access was denied
        """
        if self._phase is not TripPhase.IDLE:
            raise InvalidTransitionError("A trip is already in progress")
        if self._pending_start is not None:
            raise InvalidTransitionError("Still waiting for the initial position fix")
        if not self._simulation_mode:
            if self._location_status is LocationStatus.UNAVAILABLE:
                raise LocationUnavailableError("Location is not available on this device")
            if self._location_status is LocationStatus.DENIED:
                raise LocationDeniedError("Location access was denied; retry location first")

        logger.info("Starting trip (%s)", self._trip_type.name)
        self._request_initial_fix()

    def _request_initial_fix(self) -> None:
        # A new token makes callbacks of any earlier request stale
        self._location_status = LocationStatus.REQUESTING
        self._start_token += 1
        token = self._start_token
        self._pending_start = token
        source = self._active_source()
        source.acquire_fix(
            lambda fix: self._on_initial_fix(token, source, fix),
            lambda error: self._on_initial_fix_error(token, error),
        )

    def pause(self) -> None:
        if self._phase is not TripPhase.RUNNING:
            raise InvalidTransitionError(f"Cannot pause a trip that is {self._phase.value}")
        logger.info("Pausing trip")
        self._phase = TripPhase.PAUSED
        self._state = self._state.model_copy(update={"is_paused": True})
        if self._source is not None:
            self._source.suspend()
        self._waiting_timer = self._scheduler.call_every(
            settings.WAITING_TICK_SECONDS, self._on_waiting_tick
        )

    def resume(self) -> None:
        if self._phase is not TripPhase.PAUSED:
            raise InvalidTransitionError(f"Cannot resume a trip that is {self._phase.value}")
        logger.info("Resuming trip")
        self._cancel_waiting_timer()
        self._phase = TripPhase.RUNNING
        self._state = self._state.model_copy(update={"is_paused": False})
        if self._source is not None:
            self._source.resume()

    def toggle_pause(self) -> None:
        if self._phase is TripPhase.PAUSED:
            self.resume()
        else:
            self.pause()

    def stop(self) -> Optional[TripSummary]:
        """Finish the trip (if any), cancel every timer and return to idle."""
        summary = None
        if self._phase is not TripPhase.IDLE:
            summary = TripSummary(
                distance_km=self._state.distance_km,
                waiting_time_seconds=self._state.waiting_time_seconds,
                cost=self._state.cost,
                trip_type_name=self._trip_type.name,
                sub_trip_name=self._sub_trip.name if self._sub_trip else None,
                completed_at=self._clock(),
            )
            self._last_summary = summary
            logger.info(
                "Trip finished - distance %.3f km, waiting %ds, cost %.2f",
                summary.distance_km,
                summary.waiting_time_seconds,
                summary.cost,
            )
        elif self._pending_start is not None:
            self._location_status = LocationStatus.AVAILABLE
            logger.info("Trip start cancelled")

        self.teardown()
        self._origin = None
        self._source = None
        self._phase = TripPhase.IDLE
        self._trip_type = self._catalog.default
        self._sub_trip = None
        self._state = TripState(cost=self._base_price())
        return summary

    def teardown(self) -> None:
        """Cancel the position subscription, waiting timer and simulation timer."""
        self._pending_start = None
        cancellations = (
            ("waiting timer", self._cancel_waiting_timer),
            ("position watch", self._live.stop),
            ("simulation timer", self._simulated.stop),
        )
        for label, cancel in cancellations:
            try:
                cancel()
            except Exception:
                logger.exception("Failed to cancel %s", label)

    def select_trip_type(self, trip_type_id: str) -> bool:
        """
        Select the trip type for the next trip.

        Returns:
            False if ignored because a trip is in progress

        Raises:
            UnknownTripTypeError: If the id is not in the catalog
        """
        trip_type = self._catalog.get(trip_type_id)
        if not self._is_idle():
            logger.info("Trip type change to %s ignored while a trip is in progress", trip_type_id)
            return False
        if trip_type.id != self._trip_type.id:
            self._sub_trip = None
        self._trip_type = trip_type
        self._state = self._state.model_copy(update={"cost": self._base_price()})
        return True

    def select_sub_trip(self, sub_trip_id: Optional[str]) -> bool:
        """
        Select (or clear, with None) the sub-destination for the next trip.

        Raises:
            InvalidSelectionError: If the active trip type has no such sub-destination
        """
        if not self._is_idle():
            logger.info("Sub-trip change ignored while a trip is in progress")
            return False
        if sub_trip_id is None:
            self._sub_trip = None
        else:
            trip_type = self._trip_type
            if not isinstance(trip_type, SubDestinationRoute):
                raise InvalidSelectionError(f"Trip type {trip_type.id!r} has no sub-destinations")
            sub_trip = trip_type.find_sub_trip(sub_trip_id)
            if sub_trip is None:
                raise InvalidSelectionError(
                    f"Unknown sub-destination {sub_trip_id!r} for trip type {trip_type.id!r}"
                )
            self._sub_trip = sub_trip
        self._state = self._state.model_copy(update={"cost": self._base_price()})
        return True

    def toggle_simulation(self) -> bool:
        """Switch between live and simulated positioning; returns the new mode."""
        self._simulation_mode = not self._simulation_mode
        logger.info("Simulation mode %s", "enabled" if self._simulation_mode else "disabled")
        self._refresh_location_status()
        if self._pending_start is not None:
            # Re-request the origin from the newly active source
            if self._location_status is LocationStatus.AVAILABLE:
                self._request_initial_fix()
            else:
                self._pending_start = None
                logger.info("Trip start cancelled, location is not available")
        elif self._phase is not TripPhase.IDLE:
            self._switch_source()
        return self._simulation_mode

    def retry_location(self) -> LocationStatus:
        """
        Re-check location capability after a failure.

        A trip whose position watch was lost resumes tracking from the same origin.
        """
        if self._pending_start is None:
            self._refresh_location_status()
            if (
                self._phase is not TripPhase.IDLE
                and not self._simulation_mode
                and self._location_status is LocationStatus.AVAILABLE
                and not self._live.active
            ):
                logger.info("Restarting position tracking")
                self._switch_source()
        return self._location_status

    def dismiss_summary(self) -> None:
        self._last_summary = None

    # ------------------------------------------------------------------
    # Event handlers

    def _on_initial_fix(self, token: int, source: PositionSource, fix: PositionFix) -> None:
        if token != self._pending_start:
            return
        self._pending_start = None
        self._location_status = LocationStatus.AVAILABLE
        self._last_error = None
        self._origin = OriginPosition(latitude=fix.latitude, longitude=fix.longitude)
        logger.info("Origin anchored at (%.6f, %.6f)", fix.latitude, fix.longitude)

        self._discarded_samples = 0
        self._state = TripState(
            distance_km=0.0,
            waiting_time_seconds=0,
            cost=self._base_price(),
            is_running=True,
            is_paused=False,
        )
        self._phase = TripPhase.RUNNING
        self._update_display(fix)
        self._source = source
        source.start(self._origin, self._on_sample, self._on_source_error)

    def _on_initial_fix_error(self, token: int, error: PositionError) -> None:
        if token != self._pending_start:
            return
        self._pending_start = None
        logger.error("Could not get the initial position: %s", error)
        self._fail_location(error)

    def _on_sample(self, fix: PositionFix) -> None:
        if self._phase is TripPhase.IDLE or self._origin is None:
            return
        self._update_display(fix)
        if self._phase is not TripPhase.RUNNING:
            return

        distance_km = self._estimator.distance_km(self._origin, fix)
        if fix.accuracy_m > self._max_accuracy_m:
            self._discarded_samples += 1
            logger.info(
                "Low accuracy sample discarded: %.1f m (max %.1f m)",
                fix.accuracy_m,
                self._max_accuracy_m,
            )
            return

        self._state = self._state.model_copy(
            update={
                "distance_km": distance_km,
                "cost": self._fare(distance_km, self._state.waiting_time_seconds),
            }
        )
        logger.debug("Distance from origin %.3f km, cost %.2f", distance_km, self._state.cost)

    def _on_waiting_tick(self) -> None:
        if self._phase is not TripPhase.PAUSED:
            return
        waiting = self._state.waiting_time_seconds + 1
        self._state = self._state.model_copy(
            update={
                "waiting_time_seconds": waiting,
                "cost": self._fare(self._state.distance_km, waiting),
            }
        )

    def _on_source_error(self, error: PositionError) -> None:
        if self._phase is TripPhase.IDLE:
            return
        logger.error("Position tracking failed: %s", error)
        self._live.stop()
        self._fail_location(error)

    # ------------------------------------------------------------------
    # Helpers

    def _is_idle(self) -> bool:
        return self._phase is TripPhase.IDLE and self._pending_start is None

    def _active_source(self) -> PositionSource:
        return self._simulated if self._simulation_mode else self._live

    def _switch_source(self) -> None:
        if self._origin is None:
            return
        if self._source is not None:
            self._source.stop()
        source = self._active_source()
        self._source = source
        logger.info("Switching position source to %s", source.name)
        source.start(
            self._origin,
            self._on_sample,
            self._on_source_error,
            from_position=self._current_position,
        )
        if self._phase is TripPhase.PAUSED:
            source.suspend()

    def _base_price(self) -> float:
        return self._calculator.base_price(self._trip_type, self._sub_trip)

    def _fare(self, distance_km: float, waiting_seconds: int) -> float:
        return self._calculator.calculate_fare(
            self._trip_type, self._sub_trip, distance_km, waiting_seconds / 60.0
        )

    def _cancel_waiting_timer(self) -> None:
        if self._waiting_timer is not None:
            self._waiting_timer.cancel()
            self._waiting_timer = None

    def _refresh_location_status(self) -> None:
        if self._simulation_mode or self._live.is_available():
            self._location_status = LocationStatus.AVAILABLE
        else:
            self._location_status = LocationStatus.UNAVAILABLE
        self._last_error = None

    def _fail_location(self, error: PositionError) -> None:
        if error.code is PositionErrorCode.POSITION_UNAVAILABLE and not self._live.is_available():
            self._location_status = LocationStatus.UNAVAILABLE
        else:
            self._location_status = LocationStatus.DENIED
        self._last_error = str(error)

    def _update_display(self, fix: PositionFix) -> None:
        position = fix.to_position()
        self._current_position = position
        provider = self._mapping_provider
        if provider is None or not provider.is_ready() or self._address_in_flight:
            return
        self._address_in_flight = True
        self._scheduler.spawn(self._resolve_address(provider, position))

    async def _resolve_address(self, provider: MappingProvider, position: Position) -> None:
        try:
            address = await provider.reverse_geocode(position.latitude, position.longitude)
        except Exception as exc:
            logger.warning("Could not resolve address: %s", exc)
            return
        finally:
            self._address_in_flight = False
        self._current_address = address


def build_trip_controller(
    scheduler: Optional[Scheduler] = None,
    mapping_provider: Optional[MappingProvider] = None,
    rng: Optional[random.Random] = None,
    clock: Clock = utc_now,
) -> TripController:
    """Wire a controller with a forwarded position provider and the default services."""
    scheduler = scheduler or AsyncioScheduler()
    provider = ForwardedPositionProvider(scheduler, clock=clock)
    return TripController(
        catalog=get_trip_type_catalog(),
        calculator=get_fare_calculator(),
        estimator=DistanceEstimator(mapping_provider),
        live_source=LivePositionSource(provider),
        simulated_source=SimulatedPositionSource(scheduler, rng=rng, clock=clock),
        scheduler=scheduler,
        mapping_provider=mapping_provider,
        clock=clock,
    )


# Singleton instance, one metering session per process
_default_controller: Optional[TripController] = None


def get_trip_controller() -> TripController:
    global _default_controller
    if _default_controller is None:
        _default_controller = build_trip_controller(mapping_provider=get_mapping_provider())
    return _default_controller


def reset_trip_controller() -> None:
    """Tear down the session controller; the next access builds a fresh one."""
    global _default_controller
    if _default_controller is not None:
        _default_controller.teardown()
        if isinstance(_default_controller.scheduler, AsyncioScheduler):
            _default_controller.scheduler.cancel_tasks()
    _default_controller = None
