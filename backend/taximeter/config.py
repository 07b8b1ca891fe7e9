"""Configuration for the taximeter service."""

from typing import Dict, List, Optional, Tuple
import json
import logging
import os
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Catalog used when no TRIP_TYPES_FILE is configured or it cannot be read.
DEFAULT_TRIP_TYPES: List[dict] = [
    {
        "kind": "normal",
        "id": "normal",
        "name": "Viaje Normal",
        "description": "Tarifa por distancia recorrida",
    },
    {
        "kind": "fixed_route",
        "id": "walmart",
        "name": "A Walmart",
        "description": "Centro → Walmart Ciudad Guzmán",
        "distance_km": 5.2,
        "fixed_price": 60.0,
    },
    {
        "kind": "fixed_route",
        "id": "tecnologico",
        "name": "Al Tecnológico",
        "description": "Centro → Tecnológico de Ciudad Guzmán",
        "distance_km": 5.9,
        "fixed_price": 70.0,
    },
    {
        "kind": "sub_destinations",
        "id": "cristoRey",
        "name": "Cristo Rey",
        "description": "Centro → Cristo Rey",
        "sub_trips": [
            {"id": "cristoRey-cano", "name": "Caño", "fixed_price": 60.0},
            {"id": "cristoRey-mitad", "name": "Mitad", "fixed_price": 70.0},
            {"id": "cristoRey-arriba", "name": "Arriba", "fixed_price": 80.0},
        ],
    },
]


class Settings:
    """Application settings."""

    # API Settings
    API_TITLE = "Taximeter Fare Engine"
    API_VERSION = "1.0.0"
    API_DESCRIPTION = (
        "Taxi fare meter with tiered tariffs, fixed-price routes and GPS or simulated tracking"
    )

    # CORS Settings
    CORS_ORIGINS = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:8000",
        "http://127.0.0.1:8000",
    ]

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_JSON = _env_bool("LOG_JSON")

    # Tariff
    CURRENCY = os.getenv("FARE_CURRENCY", "MXN")
    BASE_FARE = 50.0
    WAITING_RATE_PER_MINUTE = 3.0
    # (lower_km, upper_km, fare) half-open intervals, checked in order
    METERED_TIERS: List[Tuple[float, float, float]] = [
        (0.0, 5.0, 50.0),
        (5.0, 6.0, 60.0),
        (6.0, 7.0, 65.0),
        (7.0, 8.0, 70.0),
    ]
    METERED_CEILING_KM = 8.0
    METERED_CEILING_FARE = 80.0
    METERED_RATE_PER_KM_BEYOND_CEILING = 16.0
    ROUTE_OVERAGE_RATE_PER_KM = 10.0
    SUB_DESTINATION_INCLUDED_KM = 1.5
    # (overage strictly above km, surcharge), largest threshold first
    SUB_DESTINATION_SURCHARGE_STEPS: List[Tuple[float, float]] = [
        (3.0, 20.0),
        (2.0, 10.0),
    ]

    # Positioning
    MAX_SAMPLE_ACCURACY_M = float(os.getenv("MAX_SAMPLE_ACCURACY_M", "20"))
    POSITION_HIGH_ACCURACY = True
    POSITION_FIX_TIMEOUT_MS = int(os.getenv("POSITION_FIX_TIMEOUT_MS", "10000"))
    INITIAL_FIX_MAX_CACHED_AGE_MS = 0
    WATCH_MAX_CACHED_AGE_MS = 5000
    WAITING_TICK_SECONDS = 1.0

    # Simulation
    SIMULATION_TICK_SECONDS = 1.0
    SIMULATION_MIN_STEP_KM = 0.02
    SIMULATION_MAX_STEP_KM = 0.07
    SIMULATION_DEFAULT_ORIGIN = (19.7069, -103.4614)

    # Mapping enhancement provider
    MAPPING_PROVIDER_ENABLED = _env_bool("MAPPING_PROVIDER_ENABLED")
    MAPPING_BASE_URL = os.getenv("MAPPING_BASE_URL", "https://nominatim.openstreetmap.org")
    MAPPING_TIMEOUT_SECONDS = float(os.getenv("MAPPING_TIMEOUT_SECONDS", "5"))
    MAPPING_USER_AGENT = os.getenv("MAPPING_USER_AGENT", "taximeter/1.0")

    # Trip type catalog
    TRIP_TYPES_FILE = os.getenv("TRIP_TYPES_FILE")

    _trip_types_cache: Optional[List[dict]] = None

    @classmethod
    def get_trip_type_definitions(cls) -> List[dict]:
        """
        Get raw trip type definitions (with caching).
        Falls back to the built-in catalog if the configured file is unusable.
        """
        if cls._trip_types_cache is None:
            if cls.TRIP_TYPES_FILE:
                try:
                    with open(cls.TRIP_TYPES_FILE, encoding="utf-8") as fh:
                        definitions = json.load(fh)
                    if not isinstance(definitions, list) or not definitions:
                        raise ValueError("trip type file must contain a non-empty list")
                    cls._trip_types_cache = definitions
                except (OSError, ValueError) as e:
                    logger.warning(
                        "Could not load trip types from %s: %s", cls.TRIP_TYPES_FILE, e
                    )
                    cls._trip_types_cache = DEFAULT_TRIP_TYPES
            else:
                cls._trip_types_cache = DEFAULT_TRIP_TYPES
        return cls._trip_types_cache

    @classmethod
    def rate_table(cls) -> Dict[str, object]:
        """Tariff constants in a serializable form."""
        return {
            "currency": cls.CURRENCY,
            "base_fare": cls.BASE_FARE,
            "waiting_rate_per_minute": cls.WAITING_RATE_PER_MINUTE,
            "metered_tiers": [
                {"min_km": low, "max_km": high, "fare": fare}
                for low, high, fare in cls.METERED_TIERS
            ],
            "ceiling_km": cls.METERED_CEILING_KM,
            "ceiling_fare": cls.METERED_CEILING_FARE,
            "rate_per_km_beyond_ceiling": cls.METERED_RATE_PER_KM_BEYOND_CEILING,
            "route_overage_rate_per_km": cls.ROUTE_OVERAGE_RATE_PER_KM,
        }


settings = Settings()
