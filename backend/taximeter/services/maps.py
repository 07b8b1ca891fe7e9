"""Optional mapping enhancement provider (spherical distance, reverse geocoding)."""

import logging
import math
from typing import Any, Optional, Protocol, runtime_checkable

import httpx

from taximeter.config import settings
from taximeter.exceptions import EnhancementProviderError
from taximeter.models import OriginPosition, Position

logger = logging.getLogger(__name__)

# Sphere radius used by web mapping libraries for spherical geometry
MAPS_SPHERE_RADIUS_M = 6_378_137.0


@runtime_checkable
class MappingProvider(Protocol):
    async def initialize(self) -> None:
        ...

    def is_ready(self) -> bool:
        ...

    def spherical_distance_m(self, point_a: OriginPosition, point_b: Position) -> float:
        ...

    async def reverse_geocode(self, latitude: float, longitude: float) -> str:
        ...


class NominatimMappingProvider:
    """Mapping provider backed by a Nominatim-compatible HTTP API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        user_agent: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = (base_url or settings.MAPPING_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.MAPPING_TIMEOUT_SECONDS
        self.user_agent = user_agent or settings.MAPPING_USER_AGENT
        self._client = client
        self._ready = False

    async def initialize(self) -> None:
        """
        Probe the service once; the provider stays unused until this succeeds.

        Raises:
            EnhancementProviderError: If the service cannot be reached
        """
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Accept": "application/json", "User-Agent": self.user_agent},
            )
        try:
            response = await self._client.get("/status", params={"format": "json"})
            response.raise_for_status()
        except httpx.HTTPError as exc:
            self._ready = False
            raise EnhancementProviderError("Mapping provider initialization failed") from exc
        self._ready = True
        logger.info("Mapping provider ready at %s", self.base_url)

    def is_ready(self) -> bool:
        return self._ready

    def spherical_distance_m(self, point_a: OriginPosition, point_b: Position) -> float:
        if not self._ready:
            raise EnhancementProviderError("Mapping provider is not initialized")
        lat1 = math.radians(point_a.latitude)
        lat2 = math.radians(point_b.latitude)
        dlat = lat2 - lat1
        dlng = math.radians(point_b.longitude - point_a.longitude)
        a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
        return 2 * MAPS_SPHERE_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))

    async def reverse_geocode(self, latitude: float, longitude: float) -> str:
        """
        Resolve a coordinate to a display address.

        Raises:
            EnhancementProviderError: On transport errors or an unusable response
        """
        if not self._ready or self._client is None:
            raise EnhancementProviderError("Mapping provider is not initialized")
        try:
            response = await self._client.get(
                "/reverse",
                params={"lat": latitude, "lon": longitude, "format": "jsonv2"},
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise EnhancementProviderError("Reverse geocoding request failed") from exc
        return self._parse_address(payload)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self._ready = False

    @staticmethod
    def _parse_address(payload: Any) -> str:
        if not isinstance(payload, dict):
            raise EnhancementProviderError("Invalid reverse geocoding response")
        if "error" in payload:
            raise EnhancementProviderError(f"Reverse geocoding failed: {payload['error']}")
        address = payload.get("display_name")
        if not address:
            raise EnhancementProviderError("Reverse geocoding returned no address")
        return str(address)


_default_provider: Optional[NominatimMappingProvider] = None


def get_mapping_provider() -> Optional[NominatimMappingProvider]:
    """Get the configured mapping provider, or None when the feature is disabled."""
    global _default_provider
    if not settings.MAPPING_PROVIDER_ENABLED:
        return None
    if _default_provider is None:
        _default_provider = NominatimMappingProvider()
    return _default_provider
