"""Models for the taximeter fare engine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from taximeter.config import settings


class Position(BaseModel):
    """A geographic sample. Superseded, never mutated."""
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90, le=90, description="Latitude in degrees")
    longitude: float = Field(..., ge=-180, le=180, description="Longitude in degrees")
    timestamp: datetime = Field(..., description="Instant the sample was taken")


class PositionFix(Position):
    """Position as delivered by a position provider, with its reported accuracy."""
    accuracy_m: float = Field(..., ge=0, description="Reported accuracy radius in meters")

    def to_position(self) -> Position:
        return Position(
            latitude=self.latitude,
            longitude=self.longitude,
            timestamp=self.timestamp,
        )


class OriginPosition(BaseModel):
    """Anchor point captured at trip start."""
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class SubTrip(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    fixed_price: float = Field(..., gt=0)


class NormalTrip(BaseModel):
    """Metered trip, priced by the distance tiers."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["normal"] = "normal"
    id: str
    name: str
    description: str = ""


class FixedRouteTrip(BaseModel):
    """Route with a fixed price covering `distance_km`; overage billed per km."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["fixed_route"] = "fixed_route"
    id: str
    name: str
    description: str = ""
    distance_km: float = Field(..., ge=0, description="Distance included in the fixed price")
    fixed_price: float = Field(..., gt=0)


class SubDestinationRoute(BaseModel):
    """Route whose price depends on the chosen sub-destination."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["sub_destinations"] = "sub_destinations"
    id: str
    name: str
    description: str = ""
    sub_trips: List[SubTrip] = Field(..., min_length=1)
    included_distance_km: float = Field(settings.SUB_DESTINATION_INCLUDED_KM, ge=0)

    @field_validator("sub_trips")
    @classmethod
    def validate_unique_sub_trips(cls, v):
        ids = [sub_trip.id for sub_trip in v]
        if len(ids) != len(set(ids)):
            raise ValueError("Sub-trip ids must be unique within a route")
        return v

    def find_sub_trip(self, sub_trip_id: str) -> Optional[SubTrip]:
        for sub_trip in self.sub_trips:
            if sub_trip.id == sub_trip_id:
                return sub_trip
        return None


TripType = Annotated[
    Union[NormalTrip, FixedRouteTrip, SubDestinationRoute],
    Field(discriminator="kind"),
]


class TripCatalogDocument(BaseModel):
    trip_types: List[TripType] = Field(..., min_length=1)


class LocationStatus(str, Enum):
    UNAVAILABLE = "unavailable"
    REQUESTING = "requesting"
    AVAILABLE = "available"
    DENIED = "denied"


class TripPhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"


class PositionErrorCode(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    POSITION_UNAVAILABLE = "position_unavailable"
    TIMEOUT = "timeout"


class TripState(BaseModel):
    """Meter readings. Replaced on every change, cost always recomputed."""
    model_config = ConfigDict(frozen=True)

    distance_km: float = Field(0.0, ge=0)
    waiting_time_seconds: int = Field(0, ge=0)
    cost: float = Field(..., ge=0)
    is_running: bool = False
    is_paused: bool = False

    @model_validator(mode="after")
    def validate_paused_implies_running(self):
        if self.is_paused and not self.is_running:
            raise ValueError("A trip cannot be paused unless it is running")
        return self


class TripSummary(BaseModel):
    """Snapshot of a finished trip, held until dismissed."""
    model_config = ConfigDict(frozen=True)

    distance_km: float
    waiting_time_seconds: int
    cost: float
    trip_type_name: str
    sub_trip_name: Optional[str] = None
    completed_at: datetime


class MeterSnapshot(BaseModel):
    """Everything the presentation layer renders."""
    phase: TripPhase
    trip: TripState
    currency: str
    location_status: LocationStatus
    last_error: Optional[str] = None
    current_position: Optional[Position] = None
    current_address: Optional[str] = None
    trip_type_id: str
    sub_trip_id: Optional[str] = None
    simulation_mode: bool
    last_summary: Optional[TripSummary] = None
    discarded_samples: int = 0


class TripTypeSelection(BaseModel):
    trip_type_id: str = Field(..., min_length=1)


class SubTripSelection(BaseModel):
    sub_trip_id: Optional[str] = Field(None, description="Sub-trip id, or null to clear")


class PositionFixRequest(BaseModel):
    """Fix forwarded by the client device."""
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy_m: float = Field(..., ge=0)
    timestamp: Optional[datetime] = Field(None, description="Defaults to the time of receipt")

    @field_validator("timestamp")
    @classmethod
    def assume_utc(cls, v):
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class PositionErrorRequest(BaseModel):
    code: PositionErrorCode
    message: str = ""


class AvailabilityRequest(BaseModel):
    available: bool


class FareQuoteRequest(BaseModel):
    """Request model for a stateless fare quote."""
    trip_type_id: str = Field("normal", min_length=1)
    sub_trip_id: Optional[str] = None
    distance_km: float = Field(..., ge=0)
    waiting_minutes: float = Field(0.0, ge=0)

    @field_validator("trip_type_id")
    @classmethod
    def validate_trip_type(cls, v):
        from taximeter.services.catalog import get_trip_type_catalog
        if not get_trip_type_catalog().contains(v):
            raise ValueError(f"Trip type {v!r} is not valid. Check available trip types from API.")
        return v


class FareBreakdown(BaseModel):
    base: float
    overage: float
    waiting: float
    total: float


class FareQuoteResponse(BaseModel):
    """Response model for a fare quote."""
    trip_type_id: str
    sub_trip_id: Optional[str] = None
    distance_km: float
    waiting_minutes: float
    breakdown: FareBreakdown
    cost: float = Field(..., description="Total fare")
    currency: str
