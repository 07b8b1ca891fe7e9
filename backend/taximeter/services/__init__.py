"""Services package for the taximeter."""

from .fare_calculator import (
    get_fare_calculator,
    FareCalculatorInterface,
    TieredFareCalculator
)
from .trip_controller import (
    get_trip_controller,
    TripController
)

__all__ = [
    'get_fare_calculator',
    'FareCalculatorInterface',
    'TieredFareCalculator',
    'get_trip_controller',
    'TripController'
]
