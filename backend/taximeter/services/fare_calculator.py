"""Fare calculation service implementing the tariff rules."""

import logging
from abc import ABC, abstractmethod
from typing import Optional, Protocol, Tuple, runtime_checkable

from taximeter.config import settings
from taximeter.models import (
    FareBreakdown,
    FixedRouteTrip,
    SubDestinationRoute,
    SubTrip,
    TripType,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class FareCalculatorInterface(Protocol):
    """
    Interface for fare calculation.
    Implementations must be pure: identical inputs give identical fares.
    """

    def calculate_fare(
        self,
        trip_type: TripType,
        sub_trip: Optional[SubTrip],
        distance_km: float,
        waiting_minutes: float,
    ) -> float:
        """Calculate the fare for a trip in progress."""
        ...

    def fare_breakdown(
        self,
        trip_type: TripType,
        sub_trip: Optional[SubTrip],
        distance_km: float,
        waiting_minutes: float,
    ) -> FareBreakdown:
        """Calculate the fare split into base, overage and waiting parts."""
        ...

    def base_price(self, trip_type: TripType, sub_trip: Optional[SubTrip]) -> float:
        """Fare shown before the trip moves."""
        ...


def metered_fare(distance_km: float) -> float:
    """
    Distance fare for a metered trip.

    Tiers are half-open intervals [low, high). From the ceiling distance on,
    the fare grows linearly from the ceiling fare.
    """
    for low, high, fare in settings.METERED_TIERS:
        if low <= distance_km < high:
            return fare
    extra_km = distance_km - settings.METERED_CEILING_KM
    return settings.METERED_CEILING_FARE + extra_km * settings.METERED_RATE_PER_KM_BEYOND_CEILING


def sub_destination_surcharge(overage_km: float) -> float:
    """Step surcharge for exceeding a sub-destination route's included distance."""
    for threshold_km, surcharge in settings.SUB_DESTINATION_SURCHARGE_STEPS:
        if overage_km > threshold_km:
            return surcharge
    return 0.0


class BaseFareCalculator(ABC):
    """Abstract base class for fare calculators."""

    def calculate_fare(
        self,
        trip_type: TripType,
        sub_trip: Optional[SubTrip],
        distance_km: float,
        waiting_minutes: float,
    ) -> float:
        return self.fare_breakdown(trip_type, sub_trip, distance_km, waiting_minutes).total

    def fare_breakdown(
        self,
        trip_type: TripType,
        sub_trip: Optional[SubTrip],
        distance_km: float,
        waiting_minutes: float,
    ) -> FareBreakdown:
        """
        Calculate the fare split into its parts.

        Raises:
            ValueError: For negative inputs or a sub-trip foreign to the trip type
        """
        if distance_km < 0:
            raise ValueError(f"distance_km must be >= 0, got {distance_km}")
        if waiting_minutes < 0:
            raise ValueError(f"waiting_minutes must be >= 0, got {waiting_minutes}")
        self._check_sub_trip(trip_type, sub_trip)

        base, overage = self.distance_charge(trip_type, sub_trip, distance_km)
        waiting = self.waiting_charge(waiting_minutes)
        return FareBreakdown(
            base=base,
            overage=overage,
            waiting=waiting,
            total=base + overage + waiting,
        )

    @abstractmethod
    def distance_charge(
        self,
        trip_type: TripType,
        sub_trip: Optional[SubTrip],
        distance_km: float,
    ) -> Tuple[float, float]:
        """
        Return (base, overage) for the distance from the origin.
        Must be implemented by subclasses.
        """
        pass

    def waiting_charge(self, waiting_minutes: float) -> float:
        return waiting_minutes * settings.WAITING_RATE_PER_MINUTE

    def base_price(self, trip_type: TripType, sub_trip: Optional[SubTrip]) -> float:
        self._check_sub_trip(trip_type, sub_trip)
        if sub_trip is not None:
            return sub_trip.fixed_price
        if isinstance(trip_type, FixedRouteTrip):
            return trip_type.fixed_price
        return settings.BASE_FARE

    @staticmethod
    def _check_sub_trip(trip_type: TripType, sub_trip: Optional[SubTrip]) -> None:
        if sub_trip is None:
            return
        if not isinstance(trip_type, SubDestinationRoute):
            raise ValueError(f"Trip type {trip_type.id!r} has no sub-destinations")
        if trip_type.find_sub_trip(sub_trip.id) != sub_trip:
            raise ValueError(
                f"Sub-trip {sub_trip.id!r} does not belong to trip type {trip_type.id!r}"
            )


class TieredFareCalculator(BaseFareCalculator):
    """
    Concrete fare calculator for the meter's tariff.

    Fixed routes and sub-destination routes (once a sub-destination is chosen)
    charge their fixed price plus overage past the included distance; every
    other trip is metered by the distance tiers.
    """

    def distance_charge(
        self,
        trip_type: TripType,
        sub_trip: Optional[SubTrip],
        distance_km: float,
    ) -> Tuple[float, float]:
        if isinstance(trip_type, SubDestinationRoute) and sub_trip is not None:
            overage_km = max(0.0, distance_km - trip_type.included_distance_km)
            surcharge = sub_destination_surcharge(overage_km)
            if surcharge:
                logger.debug(
                    "%s - overage %.3f km, surcharge %.2f", trip_type.name, overage_km, surcharge
                )
            return sub_trip.fixed_price, surcharge

        if isinstance(trip_type, FixedRouteTrip):
            overage_km = max(0.0, distance_km - trip_type.distance_km)
            return trip_type.fixed_price, overage_km * settings.ROUTE_OVERAGE_RATE_PER_KM

        return metered_fare(distance_km), 0.0


# Singleton instance for default calculator
_default_calculator: Optional[FareCalculatorInterface] = None


def get_fare_calculator() -> FareCalculatorInterface:
    """
    Get the default fare calculator instance (Singleton pattern).

    Returns:
        Fare calculator instance implementing FareCalculatorInterface
    """
    global _default_calculator
    if _default_calculator is None:
        _default_calculator = TieredFareCalculator()
    return _default_calculator
