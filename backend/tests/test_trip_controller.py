"""Tests for the trip lifecycle state machine."""

import asyncio

import pytest

from conftest import ORIGIN_LAT, ORIGIN_LNG, fix_at
from taximeter.exceptions import (
    EnhancementProviderError,
    InvalidSelectionError,
    InvalidTransitionError,
    LocationDeniedError,
    LocationUnavailableError,
    UnknownTripTypeError,
)
from taximeter.models import LocationStatus, PositionErrorCode, TripPhase
from taximeter.services.position_source import ForwardedPositionProvider


class FakeMappingProvider:
    def __init__(self, address="Av. Cristóbal Colón 100, Ciudad Guzmán", fail=False, error=None):
        self.address = address
        self.fail = fail
        self.error = error
        self.lookups = []

    async def initialize(self):
        pass

    def is_ready(self):
        return True

    def spherical_distance_m(self, point_a, point_b):
        raise EnhancementProviderError("distance service down")

    async def reverse_geocode(self, latitude, longitude):
        self.lookups.append((latitude, longitude))
        if self.error is not None:
            raise self.error
        if self.fail:
            raise EnhancementProviderError("geocoder down")
        return self.address


class TestIdleState:
    """A fresh or stopped controller is idle at the base price."""

    def test_initial_state(self, controller):
        state = controller.state
        assert controller.phase is TripPhase.IDLE
        assert state.distance_km == 0.0
        assert state.waiting_time_seconds == 0
        assert state.cost == 50.0
        assert not state.is_running and not state.is_paused
        assert controller.trip_type.id == "normal"
        assert controller.sub_trip is None
        assert controller.location_status is LocationStatus.AVAILABLE

    def test_pause_while_idle_rejected(self, controller):
        with pytest.raises(InvalidTransitionError):
            controller.pause()
        with pytest.raises(InvalidTransitionError):
            controller.resume()

    def test_stop_while_idle_is_harmless(self, controller, scheduler):
        assert controller.stop() is None
        assert controller.phase is TripPhase.IDLE
        assert scheduler.active_timers == []

    def test_select_trip_type_sets_base_price(self, controller):
        assert controller.select_trip_type("walmart")
        assert controller.state.cost == 60.0
        assert controller.select_trip_type("tecnologico")
        assert controller.state.cost == 70.0

    def test_select_unknown_trip_type(self, controller):
        with pytest.raises(UnknownTripTypeError):
            controller.select_trip_type("airport")
        assert controller.trip_type.id == "normal"

    def test_select_sub_trip(self, controller):
        controller.select_trip_type("cristoRey")
        assert controller.state.cost == 50.0
        controller.select_sub_trip("cristoRey-mitad")
        assert controller.sub_trip.id == "cristoRey-mitad"
        assert controller.state.cost == 70.0
        controller.select_sub_trip(None)
        assert controller.sub_trip is None
        assert controller.state.cost == 50.0

    def test_changing_trip_type_clears_sub_trip(self, controller):
        controller.select_trip_type("cristoRey")
        controller.select_sub_trip("cristoRey-arriba")
        controller.select_trip_type("walmart")
        assert controller.sub_trip is None
        assert controller.state.cost == 60.0

    def test_sub_trip_on_trip_without_sub_destinations(self, controller):
        with pytest.raises(InvalidSelectionError):
            controller.select_sub_trip("cristoRey-cano")
        controller.select_trip_type("cristoRey")
        with pytest.raises(InvalidSelectionError):
            controller.select_sub_trip("nowhere")


class TestStartingATrip:
    """Acquiring the origin fix."""

    def test_start_waits_for_initial_fix(self, controller, provider):
        controller.start()
        assert controller.phase is TripPhase.IDLE
        assert controller.location_status is LocationStatus.REQUESTING

        provider.push_fix(fix_at(0.0))
        assert controller.phase is TripPhase.RUNNING
        assert controller.location_status is LocationStatus.AVAILABLE
        assert controller.origin.latitude == pytest.approx(ORIGIN_LAT)
        assert controller.origin.longitude == ORIGIN_LNG
        assert controller.state.is_running
        assert controller.state.cost == 50.0
        assert provider.watch_count == 1

    def test_start_twice_rejected(self, controller):
        controller.start()
        with pytest.raises(InvalidTransitionError):
            controller.start()

    def test_start_while_running_rejected(self, running_controller):
        with pytest.raises(InvalidTransitionError):
            running_controller.start()

    def test_initial_fix_is_never_cached(self, controller, provider, scheduler, push):
        """A fix pushed before start is not reused as the origin."""
        push(2.0)
        controller.start()
        assert controller.phase is TripPhase.IDLE
        push(0.0)
        assert controller.origin.latitude == pytest.approx(ORIGIN_LAT)

    def test_initial_fix_timeout(self, controller, scheduler):
        controller.start()
        scheduler.advance(10)
        assert controller.phase is TripPhase.IDLE
        assert controller.location_status is LocationStatus.DENIED
        assert controller.snapshot().last_error

        with pytest.raises(LocationDeniedError):
            controller.start()
        assert controller.retry_location() is LocationStatus.AVAILABLE

    def test_permission_denied(self, controller, provider):
        controller.start()
        provider.push_error(PositionErrorCode.PERMISSION_DENIED, "User denied Geolocation")
        assert controller.location_status is LocationStatus.DENIED
        assert controller.phase is TripPhase.IDLE
        assert controller.snapshot().last_error == "User denied Geolocation"

    def test_location_unavailable(self, make_controller, scheduler, clock):
        provider = ForwardedPositionProvider(scheduler, clock=clock, available=False)
        controller = make_controller(position_provider=provider)
        assert controller.location_status is LocationStatus.UNAVAILABLE
        with pytest.raises(LocationUnavailableError):
            controller.start()

        provider.set_available(True)
        assert controller.retry_location() is LocationStatus.AVAILABLE
        controller.start()
        provider.push_fix(fix_at(0.0))
        assert controller.phase is TripPhase.RUNNING

    def test_stop_while_starting(self, controller, provider, scheduler):
        controller.start()
        assert controller.stop() is None
        assert controller.location_status is LocationStatus.AVAILABLE
        provider.push_fix(fix_at(0.0))
        assert controller.phase is TripPhase.IDLE
        scheduler.advance(30)
        assert controller.location_status is LocationStatus.AVAILABLE

    def test_selection_ignored_while_starting(self, controller):
        controller.start()
        assert not controller.select_trip_type("walmart")
        assert controller.trip_type.id == "normal"


class TestMetering:
    """Distance and cost while the trip runs."""

    def test_distance_is_measured_from_origin(self, running_controller, push):
        push(1.0)
        push(3.0)
        assert running_controller.state.distance_km == pytest.approx(3.0, abs=1e-6)
        assert running_controller.state.cost == 50.0
        push(2.0)
        assert running_controller.state.distance_km == pytest.approx(2.0, abs=1e-6)

    def test_tiers_applied_live(self, running_controller, push):
        push(5.0)
        assert running_controller.state.cost == 60.0
        push(6.0)
        assert running_controller.state.cost == 65.0
        push(9.0)
        assert running_controller.state.cost == pytest.approx(96.0)

    def test_low_accuracy_sample_discarded(self, running_controller, push):
        push(3.0, accuracy_m=20.0)
        assert running_controller.state.distance_km == pytest.approx(3.0, abs=1e-6)

        push(6.0, accuracy_m=21.0)
        assert running_controller.state.distance_km == pytest.approx(3.0, abs=1e-6)
        assert running_controller.state.cost == 50.0
        assert running_controller.discarded_samples == 1

    def test_low_accuracy_sample_still_moves_display(self, running_controller, push):
        push(6.0, accuracy_m=50.0)
        position = running_controller.snapshot().current_position
        assert position.latitude == pytest.approx(fix_at(6.0).latitude)

    def test_low_accuracy_is_logged(self, running_controller, push, caplog):
        with caplog.at_level("INFO", logger="taximeter"):
            push(1.0, accuracy_m=35.0)
        assert "Low accuracy sample discarded" in caplog.text

    def test_fixed_route_overage(self, controller, provider, push):
        controller.select_trip_type("walmart")
        controller.start()
        push(0.0)
        push(6.2)
        assert controller.state.cost == pytest.approx(70.0, abs=1e-4)

    def test_sub_destination_surcharge(self, controller, push):
        controller.select_trip_type("cristoRey")
        controller.select_sub_trip("cristoRey-cano")
        controller.start()
        push(0.0)
        assert controller.state.cost == 60.0
        push(5.0)
        assert controller.state.cost == 80.0

    def test_selection_ignored_while_running(self, running_controller):
        assert not running_controller.select_trip_type("walmart")
        assert running_controller.trip_type.id == "normal"
        assert running_controller.state.cost == 50.0


class TestWaiting:
    """Pause and resume."""

    def test_pause_accrues_waiting_time(self, running_controller, scheduler):
        running_controller.pause()
        assert running_controller.phase is TripPhase.PAUSED
        assert running_controller.state.is_paused

        scheduler.advance(60)
        assert running_controller.state.waiting_time_seconds == 60
        assert running_controller.state.cost == pytest.approx(53.0)

    def test_samples_ignored_while_paused(self, running_controller, scheduler, push):
        push(2.0)
        running_controller.pause()
        push(7.0)
        assert running_controller.state.distance_km == pytest.approx(2.0, abs=1e-6)
        position = running_controller.snapshot().current_position
        assert position.latitude == pytest.approx(fix_at(7.0).latitude)

    def test_resume_stops_waiting_timer(self, running_controller, scheduler):
        running_controller.pause()
        scheduler.advance(5)
        running_controller.resume()
        scheduler.advance(30)
        assert running_controller.state.waiting_time_seconds == 5
        assert not running_controller.state.is_paused
        assert scheduler.active_timers == []

    def test_toggle_pause(self, running_controller):
        running_controller.toggle_pause()
        assert running_controller.phase is TripPhase.PAUSED
        running_controller.toggle_pause()
        assert running_controller.phase is TripPhase.RUNNING

    def test_pause_twice_rejected(self, running_controller):
        running_controller.pause()
        with pytest.raises(InvalidTransitionError):
            running_controller.pause()

    def test_full_trip(self, running_controller, scheduler, push):
        """3 km, one minute waiting, then on to 6 km."""
        push(3.0, accuracy_m=5.0)
        assert running_controller.state.cost == 50.0

        running_controller.pause()
        scheduler.advance(60)
        assert running_controller.state.cost == pytest.approx(53.0)

        running_controller.resume()
        push(6.0, accuracy_m=10.0)
        assert running_controller.state.cost == pytest.approx(68.0)

        summary = running_controller.stop()
        assert summary.distance_km == pytest.approx(6.0, abs=1e-6)
        assert summary.waiting_time_seconds == 60
        assert summary.cost == pytest.approx(68.0)
        assert summary.trip_type_name == "Viaje Normal"
        assert summary.sub_trip_name is None


class TestStopping:
    """Stop resets everything and cancels all timers."""

    def test_stop_resets_state(self, controller, provider, scheduler, push):
        controller.select_trip_type("cristoRey")
        controller.select_sub_trip("cristoRey-arriba")
        controller.start()
        push(0.0)
        push(4.0)
        controller.pause()
        scheduler.advance(10)

        summary = controller.stop()
        assert summary.sub_trip_name == "Arriba"
        assert summary.cost == pytest.approx(90.5)
        assert controller.last_summary == summary

        state = controller.state
        assert controller.phase is TripPhase.IDLE
        assert (state.distance_km, state.waiting_time_seconds, state.cost) == (0.0, 0, 50.0)
        assert not state.is_running and not state.is_paused
        assert controller.trip_type.id == "normal"
        assert controller.sub_trip is None
        assert controller.origin is None
        assert provider.watch_count == 0
        assert scheduler.active_timers == []

    def test_callbacks_after_stop_ignored(self, running_controller, scheduler, push):
        running_controller.pause()
        running_controller.stop()
        scheduler.advance(120)
        push(5.0)
        assert running_controller.state.waiting_time_seconds == 0
        assert running_controller.state.distance_km == 0.0

    def test_dismiss_summary(self, running_controller):
        running_controller.stop()
        assert running_controller.last_summary is not None
        running_controller.dismiss_summary()
        assert running_controller.last_summary is None

    def test_teardown_is_idempotent(self, running_controller, scheduler, provider):
        running_controller.pause()
        running_controller.teardown()
        running_controller.teardown()
        assert scheduler.active_timers == []
        assert provider.watch_count == 0

    def test_new_trip_after_stop(self, running_controller, scheduler, push):
        push(3.0)
        running_controller.pause()
        scheduler.advance(30)
        running_controller.stop()

        running_controller.start()
        push(0.5)
        assert running_controller.origin.latitude == pytest.approx(fix_at(0.5).latitude)
        assert running_controller.state.waiting_time_seconds == 0
        assert running_controller.state.distance_km == 0.0


class TestTrackingErrors:
    """Failures of the position watch after the trip started."""

    def test_watch_error_keeps_trip(self, running_controller, provider, push):
        push(2.0)
        provider.push_error(PositionErrorCode.PERMISSION_DENIED)
        assert running_controller.location_status is LocationStatus.DENIED
        assert running_controller.phase is TripPhase.RUNNING
        assert running_controller.state.distance_km == pytest.approx(2.0, abs=1e-6)
        assert provider.watch_count == 0

    def test_provider_lost(self, running_controller, provider):
        provider.set_available(False)
        assert running_controller.location_status is LocationStatus.UNAVAILABLE
        assert provider.watch_count == 0

    def test_retry_resumes_tracking(self, running_controller, provider, push):
        push(1.0)
        provider.push_error(PositionErrorCode.TIMEOUT)
        assert provider.watch_count == 0

        assert running_controller.retry_location() is LocationStatus.AVAILABLE
        assert provider.watch_count == 1
        push(3.0)
        assert running_controller.state.distance_km == pytest.approx(3.0, abs=1e-6)
        assert running_controller.origin.latitude == pytest.approx(ORIGIN_LAT)

    def test_retry_while_paused_stays_paused(self, running_controller, provider, push):
        push(1.0)
        running_controller.pause()
        provider.push_error(PositionErrorCode.PERMISSION_DENIED)
        running_controller.retry_location()
        assert provider.watch_count == 1
        assert running_controller.phase is TripPhase.PAUSED

        push(4.0)
        assert running_controller.state.distance_km == pytest.approx(1.0, abs=1e-6)
        running_controller.resume()
        push(4.0)
        assert running_controller.state.distance_km == pytest.approx(4.0, abs=1e-6)

    def test_retry_with_live_watch_keeps_it(self, running_controller, provider):
        running_controller.retry_location()
        running_controller.retry_location()
        assert provider.watch_count == 1


class TestSimulation:
    """Simulated movement in place of the device position."""

    def test_simulated_trip_starts_immediately(self, controller, scheduler, provider):
        controller.toggle_simulation()
        controller.start()
        assert controller.phase is TripPhase.RUNNING
        assert controller.origin.latitude == ORIGIN_LAT
        assert controller.origin.longitude == ORIGIN_LNG
        assert provider.watch_count == 0

    def test_simulation_moves_away_from_origin(self, controller, scheduler):
        controller.toggle_simulation()
        controller.start()
        distances = []
        for _ in range(10):
            scheduler.advance(1)
            distances.append(controller.state.distance_km)
        assert distances == sorted(distances)
        assert distances[0] > 0
        assert distances[-1] <= 10 * 0.07 + 1e-6

    def test_simulation_ignores_location_failures(self, make_controller, scheduler, clock):
        provider = ForwardedPositionProvider(scheduler, clock=clock, available=False)
        controller = make_controller(position_provider=provider)
        controller.toggle_simulation()
        assert controller.location_status is LocationStatus.AVAILABLE
        controller.start()
        assert controller.phase is TripPhase.RUNNING

    def test_simulation_pauses(self, controller, scheduler):
        controller.toggle_simulation()
        controller.start()
        scheduler.advance(3)
        controller.pause()
        distance = controller.state.distance_km
        scheduler.advance(20)
        assert controller.state.distance_km == distance
        assert controller.state.waiting_time_seconds == 20
        controller.resume()
        scheduler.advance(2)
        assert controller.state.distance_km > distance

    def test_switch_to_simulation_mid_trip(self, running_controller, scheduler, provider, push):
        push(1.0)
        running_controller.toggle_simulation()
        assert provider.watch_count == 0
        scheduler.advance(3)
        assert running_controller.state.distance_km > 1.0

    def test_switch_back_to_live_mid_trip(self, controller, scheduler, provider, push):
        controller.toggle_simulation()
        controller.start()
        scheduler.advance(3)
        controller.toggle_simulation()
        assert provider.watch_count == 1
        distance = controller.state.distance_km
        scheduler.advance(5)
        assert controller.state.distance_km == distance

    def test_enable_simulation_while_starting(self, controller, scheduler, provider):
        """The pending live request is dropped and the simulated origin is used."""
        controller.start()
        assert controller.location_status is LocationStatus.REQUESTING
        controller.toggle_simulation()
        assert controller.phase is TripPhase.RUNNING
        assert controller.location_status is LocationStatus.AVAILABLE
        assert controller.origin.latitude == ORIGIN_LAT

        scheduler.advance(11)
        assert controller.location_status is LocationStatus.AVAILABLE
        assert controller.phase is TripPhase.RUNNING
        assert controller.state.distance_km > 0

        # A late device fix no longer anchors the trip
        provider.push_fix(fix_at(5.0))
        assert controller.origin.latitude == ORIGIN_LAT
        assert provider.watch_count == 0

    def test_stop_cancels_simulation_timer(self, controller, scheduler):
        controller.toggle_simulation()
        controller.start()
        scheduler.advance(2)
        controller.stop()
        assert scheduler.active_timers == []
        assert controller.simulation_mode


class TestAddressResolution:
    """Optional reverse geocoding of the displayed position."""

    def test_address_resolved(self, make_controller, scheduler, provider):
        mapping = FakeMappingProvider()
        controller = make_controller(mapping_provider=mapping)
        controller.start()
        provider.push_fix(fix_at(0.0))

        assert len(scheduler.spawned) == 1
        asyncio.run(scheduler.spawned.pop())
        assert controller.snapshot().current_address == mapping.address

    def test_address_failure_is_not_fatal(self, make_controller, scheduler, provider, caplog):
        mapping = FakeMappingProvider(fail=True)
        controller = make_controller(mapping_provider=mapping)
        controller.start()
        provider.push_fix(fix_at(0.0))

        with caplog.at_level("WARNING", logger="taximeter"):
            asyncio.run(scheduler.spawned.pop())
        assert controller.snapshot().current_address is None
        assert "Could not resolve address" in caplog.text
        assert controller.phase is TripPhase.RUNNING

    def test_unexpected_address_error_is_logged(self, make_controller, scheduler, provider, caplog):
        mapping = FakeMappingProvider(error=RuntimeError("socket closed"))
        controller = make_controller(mapping_provider=mapping)
        controller.start()
        provider.push_fix(fix_at(0.0))

        with caplog.at_level("WARNING", logger="taximeter"):
            asyncio.run(scheduler.spawned.pop())
        assert "socket closed" in caplog.text
        assert controller.snapshot().current_address is None

        # The next sample may try again
        provider.push_fix(fix_at(0.1))
        assert len(scheduler.spawned) == 1
        scheduler.spawned.pop().close()

    def test_distance_falls_back_when_provider_fails(self, make_controller, provider):
        controller = make_controller(mapping_provider=FakeMappingProvider())
        controller.start()
        provider.push_fix(fix_at(0.0))
        provider.push_fix(fix_at(5.5))
        assert controller.state.distance_km == pytest.approx(5.5, abs=1e-6)
        assert controller.state.cost == 60.0


class TestSessionController:
    def test_singleton_and_reset(self):
        from taximeter.services.trip_controller import get_trip_controller, reset_trip_controller

        first = get_trip_controller()
        assert get_trip_controller() is first
        reset_trip_controller()
        second = get_trip_controller()
        assert second is not first
        assert second.phase is TripPhase.IDLE
        reset_trip_controller()
