"""Great-circle distance between the origin anchor and the current position."""

import logging
import math
from typing import Optional

from taximeter.models import OriginPosition, Position
from taximeter.services.maps import MappingProvider

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate the great-circle distance between two points in kilometers.

    Args:
        lat1: Latitude of first point in degrees
        lon1: Longitude of first point in degrees
        lat2: Latitude of second point in degrees
        lon2: Longitude of second point in degrees

    Returns:
        Distance between the two points in kilometers
    """
    lat1, lon1, lat2, lon2 = map(math.radians, [lat1, lon1, lat2, lon2])
    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


class DistanceEstimator:
    """
    Distance from the origin anchor to a position.

    Uses the mapping provider's spherical distance when it is ready, and the
    haversine formula otherwise or whenever the provider fails.
    """

    def __init__(self, mapping_provider: Optional[MappingProvider] = None):
        self._mapping_provider = mapping_provider

    def distance_km(self, origin: OriginPosition, current: Position) -> float:
        fallback = haversine_km(
            origin.latitude, origin.longitude, current.latitude, current.longitude
        )
        provider = self._mapping_provider
        if provider is None or not provider.is_ready():
            return fallback

        try:
            meters = float(provider.spherical_distance_m(origin, current))
        except Exception as exc:
            logger.warning("Mapping provider distance failed, using haversine: %s", exc)
            return fallback

        if not math.isfinite(meters) or meters < 0:
            logger.warning("Mapping provider returned invalid distance %r, using haversine", meters)
            return fallback
        return meters / 1000.0
