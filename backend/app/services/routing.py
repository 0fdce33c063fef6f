"""
Routing provider adapter.

Wraps an OSRM-compatible directions API. The core only ever consumes it
opportunistically: every failure degrades to a straight-line estimate.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import httpx

from backend.app.core.config import settings
from backend.app.core.exceptions import ServiceUnavailableError
from backend.app.core.reliability import CircuitBreaker, CircuitOpenError, routing_circuit_breaker

logger = logging.getLogger(__name__)

Point = Tuple[float, float]  # (latitude, longitude)


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great-circle distance between two points on Earth.

    Returns:
        Distance in kilometers
    """
    R = 6371.0

    lat1_rad = math.radians(lat1)
    lon1_rad = math.radians(lon1)
    lat2_rad = math.radians(lat2)
    lon2_rad = math.radians(lon2)

    dlat = lat2_rad - lat1_rad
    dlon = lon2_rad - lon1_rad

    a = math.sin(dlat / 2)**2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2)**2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return R * c


@dataclass
class RouteSummary:
    distance_km: float
    duration_min: float
    source: str
    waypoints: List[Dict[str, float]] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "waypoints": self.waypoints,
            "distance_km": round(self.distance_km, 3),
            "duration_min": round(self.duration_min, 1),
            "source": self.source,
        }


def straight_line_route(origin: Point, dest: Point) -> RouteSummary:
    """Local estimate used whenever the provider is unavailable."""
    distance_km = haversine_distance(origin[0], origin[1], dest[0], dest[1])
    return RouteSummary(
        distance_km=distance_km,
        duration_min=distance_km / settings.fallback_speed_kmh * 60,
        source="straight_line",
        waypoints=[
            {"latitude": origin[0], "longitude": origin[1]},
            {"latitude": dest[0], "longitude": dest[1]},
        ],
    )


class RoutingService:

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        enabled: Optional[bool] = None,
        breaker: CircuitBreaker = routing_circuit_breaker,
    ):
        self.base_url = (base_url or settings.routing_base_url).rstrip("/")
        self.timeout_seconds = timeout_seconds or settings.routing_timeout_seconds
        self.enabled = settings.routing_enabled if enabled is None else enabled
        self.breaker = breaker

    async def get_route(self, origin: Point, dest: Point) -> RouteSummary:
        """Route between two points; never raises."""
        if not self.enabled:
            return straight_line_route(origin, dest)

        try:
            return await self.breaker.call(self._fetch_route, origin, dest)
        except CircuitOpenError:
            logger.warning("Routing circuit open; using straight-line estimate")
        except ServiceUnavailableError as e:
            logger.warning("Routing provider failed: %s", e.message)
        return straight_line_route(origin, dest)

    async def _fetch_route(self, origin: Point, dest: Point) -> RouteSummary:
        # OSRM expects lon,lat order
        url = (
            f"{self.base_url}/route/v1/driving/"
            f"{origin[1]},{origin[0]};{dest[1]},{dest[0]}"
        )
        params = {"overview": "simplified", "geometries": "geojson"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.get(url, params=params)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            raise ServiceUnavailableError("routing", f"Routing request failed: {e}")

        if data.get("code") != "Ok" or not data.get("routes"):
            raise ServiceUnavailableError("routing", f"Routing returned no route: {data.get('code')}")

        try:
            route = data["routes"][0]
            coordinates = route.get("geometry", {}).get("coordinates", [])
            return RouteSummary(
                distance_km=route["distance"] / 1000,
                duration_min=route["duration"] / 60,
                source="osrm",
                waypoints=[{"latitude": lat, "longitude": lon} for lon, lat in coordinates],
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ServiceUnavailableError("routing", f"Malformed routing response: {e}")


routing_service = RoutingService()
