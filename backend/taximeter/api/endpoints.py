"""API endpoints for the fare meter."""

from typing import List

from fastapi import APIRouter, Depends, HTTPException

from taximeter.config import settings
from taximeter.exceptions import (
    InvalidSelectionError,
    InvalidTransitionError,
    LocationDeniedError,
    LocationUnavailableError,
    TaximeterError,
    UnknownTripTypeError,
)
from taximeter.models import (
    AvailabilityRequest,
    FareQuoteRequest,
    FareQuoteResponse,
    FixedRouteTrip,
    MeterSnapshot,
    PositionErrorRequest,
    PositionFix,
    PositionFixRequest,
    SubDestinationRoute,
    SubTripSelection,
    TripType,
    TripTypeSelection,
)
from taximeter.services import get_fare_calculator, get_trip_controller
from taximeter.services.catalog import TripTypeCatalog, get_trip_type_catalog
from taximeter.services.fare_calculator import FareCalculatorInterface
from taximeter.services.maps import get_mapping_provider
from taximeter.services.position_source import ForwardedPositionProvider, utc_now
from taximeter.services.trip_controller import TripController

router = APIRouter(prefix="/api", tags=["Fare Meter"])


def get_calculator() -> FareCalculatorInterface:
    """
    Dependency injection for fare calculator.
    Returns any implementation of FareCalculatorInterface.
    """
    return get_fare_calculator()


def get_controller() -> TripController:
    """Dependency injection for the session's trip controller."""
    return get_trip_controller()


def get_catalog() -> TripTypeCatalog:
    return get_trip_type_catalog()


def _raise_http(error: TaximeterError):
    """Translate a meter error into an HTTP error."""
    if isinstance(error, UnknownTripTypeError):
        raise HTTPException(status_code=404, detail=str(error))
    if isinstance(error, InvalidSelectionError):
        raise HTTPException(status_code=400, detail=str(error))
    if isinstance(error, (InvalidTransitionError, LocationDeniedError, LocationUnavailableError)):
        raise HTTPException(status_code=409, detail=str(error))
    raise HTTPException(status_code=500, detail=f"Internal error: {str(error)}")


def _forwarded_provider(controller: TripController) -> ForwardedPositionProvider:
    provider = controller.live_source.provider
    if not isinstance(provider, ForwardedPositionProvider):
        raise HTTPException(status_code=409, detail="Position provider does not accept forwarded fixes")
    return provider


@router.get("/meter", response_model=MeterSnapshot)
async def get_meter(controller: TripController = Depends(get_controller)) -> MeterSnapshot:
    """Current trip state, position, location status, selection and last summary."""
    return controller.snapshot()


@router.post("/trip/start", response_model=MeterSnapshot)
async def start_trip(controller: TripController = Depends(get_controller)) -> MeterSnapshot:
    """
    Start a trip.

    The trip runs once the initial fix arrives: immediately in simulation mode,
    or when the device forwards a fresh fix.
    """
    try:
        controller.start()
    except TaximeterError as e:
        _raise_http(e)
    return controller.snapshot()


@router.post("/trip/pause", response_model=MeterSnapshot)
async def pause_trip(controller: TripController = Depends(get_controller)) -> MeterSnapshot:
    try:
        controller.pause()
    except TaximeterError as e:
        _raise_http(e)
    return controller.snapshot()


@router.post("/trip/resume", response_model=MeterSnapshot)
async def resume_trip(controller: TripController = Depends(get_controller)) -> MeterSnapshot:
    try:
        controller.resume()
    except TaximeterError as e:
        _raise_http(e)
    return controller.snapshot()


@router.post("/trip/toggle-pause", response_model=MeterSnapshot)
async def toggle_pause(controller: TripController = Depends(get_controller)) -> MeterSnapshot:
    try:
        controller.toggle_pause()
    except TaximeterError as e:
        _raise_http(e)
    return controller.snapshot()


@router.post("/trip/stop", response_model=MeterSnapshot)
async def stop_trip(controller: TripController = Depends(get_controller)) -> MeterSnapshot:
    """Stop the trip; the summary is available in `last_summary` until dismissed."""
    controller.stop()
    return controller.snapshot()


@router.put("/trip-type", response_model=MeterSnapshot)
async def select_trip_type(
    selection: TripTypeSelection,
    controller: TripController = Depends(get_controller),
) -> MeterSnapshot:
    """Select the trip type. Ignored while a trip is in progress."""
    try:
        controller.select_trip_type(selection.trip_type_id)
    except TaximeterError as e:
        _raise_http(e)
    return controller.snapshot()


@router.put("/sub-trip", response_model=MeterSnapshot)
async def select_sub_trip(
    selection: SubTripSelection,
    controller: TripController = Depends(get_controller),
) -> MeterSnapshot:
    """Select or clear the sub-destination. Ignored while a trip is in progress."""
    try:
        controller.select_sub_trip(selection.sub_trip_id)
    except TaximeterError as e:
        _raise_http(e)
    return controller.snapshot()


@router.post("/simulation/toggle", response_model=MeterSnapshot)
async def toggle_simulation(controller: TripController = Depends(get_controller)) -> MeterSnapshot:
    controller.toggle_simulation()
    return controller.snapshot()


@router.delete("/summary", response_model=MeterSnapshot)
async def dismiss_summary(controller: TripController = Depends(get_controller)) -> MeterSnapshot:
    controller.dismiss_summary()
    return controller.snapshot()


@router.post("/location/retry", response_model=MeterSnapshot)
async def retry_location(controller: TripController = Depends(get_controller)) -> MeterSnapshot:
    controller.retry_location()
    return controller.snapshot()


@router.post("/position/fix", response_model=MeterSnapshot)
async def push_position_fix(
    request: PositionFixRequest,
    controller: TripController = Depends(get_controller),
) -> MeterSnapshot:
    """Forward a fix from the device's geolocation watch."""
    provider = _forwarded_provider(controller)
    provider.push_fix(
        PositionFix(
            latitude=request.latitude,
            longitude=request.longitude,
            accuracy_m=request.accuracy_m,
            timestamp=request.timestamp or utc_now(),
        )
    )
    return controller.snapshot()


@router.post("/position/error", response_model=MeterSnapshot)
async def push_position_error(
    request: PositionErrorRequest,
    controller: TripController = Depends(get_controller),
) -> MeterSnapshot:
    """Forward a geolocation error (denied, unavailable, timeout) from the device."""
    provider = _forwarded_provider(controller)
    provider.push_error(request.code, request.message)
    return controller.snapshot()


@router.put("/position/availability", response_model=MeterSnapshot)
async def set_position_availability(
    request: AvailabilityRequest,
    controller: TripController = Depends(get_controller),
) -> MeterSnapshot:
    """Report whether the device has a location capability at all."""
    provider = _forwarded_provider(controller)
    provider.set_available(request.available)
    controller.retry_location()
    return controller.snapshot()


@router.get("/trip-types", response_model=List[TripType])
async def list_trip_types(catalog: TripTypeCatalog = Depends(get_catalog)):
    """Trip type catalog in display order."""
    return catalog.all()


@router.get("/fare-rules")
async def get_fare_rules(catalog: TripTypeCatalog = Depends(get_catalog)):
    """
    Rate card: metered tiers, waiting rate and the fixed-price routes.

    Returns:
        Dictionary describing the tariff
    """
    routes = []
    for trip_type in catalog.all():
        if isinstance(trip_type, SubDestinationRoute):
            routes.append({
                "trip_type_id": trip_type.id,
                "name": trip_type.name,
                "included_distance_km": trip_type.included_distance_km,
                "sub_trips": [sub.model_dump() for sub in trip_type.sub_trips],
                "surcharge_steps": [
                    {"overage_above_km": km, "surcharge": amount}
                    for km, amount in settings.SUB_DESTINATION_SURCHARGE_STEPS
                ],
            })
        elif isinstance(trip_type, FixedRouteTrip):
            routes.append({
                "trip_type_id": trip_type.id,
                "name": trip_type.name,
                "included_distance_km": trip_type.distance_km,
                "fixed_price": trip_type.fixed_price,
                "overage_rate_per_km": settings.ROUTE_OVERAGE_RATE_PER_KM,
            })

    return {
        **settings.rate_table(),
        "routes": routes,
        "max_sample_accuracy_m": settings.MAX_SAMPLE_ACCURACY_M,
    }


@router.post("/fares/quote", response_model=FareQuoteResponse)
async def quote_fare(
    request: FareQuoteRequest,
    calculator: FareCalculatorInterface = Depends(get_calculator),
    catalog: TripTypeCatalog = Depends(get_catalog),
) -> FareQuoteResponse:
    """
    Quote a fare without touching the meter.

    Raises:
        HTTPException: If the trip type or sub-trip is invalid
    """
    try:
        trip_type = catalog.get(request.trip_type_id)
        sub_trip = None
        if request.sub_trip_id is not None:
            if not isinstance(trip_type, SubDestinationRoute):
                raise ValueError(f"Trip type {trip_type.id!r} has no sub-destinations")
            sub_trip = trip_type.find_sub_trip(request.sub_trip_id)
            if sub_trip is None:
                raise ValueError(f"Unknown sub-destination {request.sub_trip_id!r}")

        breakdown = calculator.fare_breakdown(
            trip_type, sub_trip, request.distance_km, request.waiting_minutes
        )
    except TaximeterError as e:
        _raise_http(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return FareQuoteResponse(
        trip_type_id=trip_type.id,
        sub_trip_id=sub_trip.id if sub_trip else None,
        distance_km=request.distance_km,
        waiting_minutes=request.waiting_minutes,
        breakdown=breakdown,
        cost=breakdown.total,
        currency=settings.CURRENCY,
    )


@router.get("/health")
async def health_check(controller: TripController = Depends(get_controller)):
    """Health check endpoint including positioning and mapping status."""
    provider = get_mapping_provider()
    return {
        "status": "healthy",
        "service": settings.API_TITLE,
        "phase": controller.phase.value,
        "location_status": controller.location_status.value,
        "simulation_mode": controller.simulation_mode,
        "mapping_provider": (
            "disabled" if provider is None else ("ready" if provider.is_ready() else "unavailable")
        ),
    }
