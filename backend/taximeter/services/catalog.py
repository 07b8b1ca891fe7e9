"""Static catalog of trip types available to the meter."""

import logging
from typing import Dict, List, Optional

from pydantic import ValidationError

from taximeter.config import DEFAULT_TRIP_TYPES, settings
from taximeter.exceptions import UnknownTripTypeError
from taximeter.models import NormalTrip, TripCatalogDocument, TripType

logger = logging.getLogger(__name__)


class TripTypeCatalog:
    """
    Read-only, ordered collection of trip types.
    The first metered (normal) entry is the default selection.
    """

    def __init__(self, trip_types: List[TripType]):
        if not trip_types:
            raise ValueError("A trip type catalog needs at least one entry")
        self._trip_types = list(trip_types)
        self._by_id: Dict[str, TripType] = {}
        for trip_type in self._trip_types:
            if trip_type.id in self._by_id:
                raise ValueError(f"Duplicate trip type id {trip_type.id!r}")
            self._by_id[trip_type.id] = trip_type

        default = next(
            (t for t in self._trip_types if isinstance(t, NormalTrip)), None
        )
        if default is None:
            raise ValueError("A trip type catalog needs a normal (metered) trip type")
        self._default = default

    @classmethod
    def from_definitions(cls, definitions: List[dict]) -> "TripTypeCatalog":
        document = TripCatalogDocument.model_validate({"trip_types": definitions})
        return cls(document.trip_types)

    @property
    def default(self) -> NormalTrip:
        return self._default

    def all(self) -> List[TripType]:
        return list(self._trip_types)

    def contains(self, trip_type_id: str) -> bool:
        return trip_type_id in self._by_id

    def get(self, trip_type_id: str) -> TripType:
        try:
            return self._by_id[trip_type_id]
        except KeyError:
            raise UnknownTripTypeError(f"Unknown trip type {trip_type_id!r}") from None

    def __len__(self) -> int:
        return len(self._trip_types)


_default_catalog: Optional[TripTypeCatalog] = None


def get_trip_type_catalog() -> TripTypeCatalog:
    """Get the catalog built from the configured definitions (Singleton pattern)."""
    global _default_catalog
    if _default_catalog is None:
        try:
            _default_catalog = TripTypeCatalog.from_definitions(
                settings.get_trip_type_definitions()
            )
        except (ValidationError, ValueError) as e:
            logger.warning("Invalid trip type definitions, using built-in catalog: %s", e)
            _default_catalog = TripTypeCatalog.from_definitions(DEFAULT_TRIP_TYPES)
    return _default_catalog
