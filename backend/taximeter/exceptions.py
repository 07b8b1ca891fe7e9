from typing import Optional

from taximeter.models import PositionErrorCode


class TaximeterError(Exception):
    """Base exception for taximeter errors."""


class LocationUnavailableError(TaximeterError):
    """Raised when the device has no location capability."""


class LocationDeniedError(TaximeterError):
    """Raised when location access was denied or a fix timed out."""


class PositionError(TaximeterError):
    """Failure reported by a position provider."""

    def __init__(self, code: PositionErrorCode, message: Optional[str] = None):
        self.code = code
        super().__init__(message or code.value.replace("_", " "))


class EnhancementProviderError(TaximeterError):
    """Raised when the mapping/geocoding provider fails."""


class InvalidTransitionError(TaximeterError):
    """Raised when a command is not valid in the current trip phase."""


class UnknownTripTypeError(TaximeterError):
    """Raised when a trip type id is not in the catalog."""


class InvalidSelectionError(TaximeterError):
    """Raised when a sub-trip selection does not fit the active trip type."""
