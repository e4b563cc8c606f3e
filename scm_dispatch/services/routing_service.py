"""
Road distance provider backed by the OSRM route API.

OSRM being slow or down must never block pricing, so every failure falls
back to the haversine distance times a road factor.
"""
import logging
import math
import time
from dataclasses import dataclass
from typing import Optional, Tuple

import httpx

from scm_dispatch.config import settings

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371
AVERAGE_ROAD_SPEED_KMPH = 60

Coordinates = Tuple[float, float]  # (latitude, longitude)


@dataclass
class RouteResult:
    distance_km: float
    duration_minutes: int
    method: str  # osrm, haversine_fallback, default
    success: bool
    latency_ms: Optional[int] = None
    fallback_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "distance_km": self.distance_km,
            "duration_minutes": self.duration_minutes,
            "method": self.method,
            "success": self.success,
            "latency_ms": self.latency_ms,
            "fallback_reason": self.fallback_reason,
        }


class RoutingAPIError(Exception):
    """OSRM returned an error or no route."""


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate great-circle distance between two points in km."""
    lat1_rad, lat2_rad = math.radians(lat1), math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lon = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_lat / 2) ** 2
        + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(delta_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def valid_coordinates(coords: Optional[Coordinates]) -> bool:
    if not coords or len(coords) != 2:
        return False
    lat, lon = coords
    if not isinstance(lat, (int, float)) or not isinstance(lon, (int, float)):
        return False
    return -90 <= lat <= 90 and -180 <= lon <= 180


class RoutingService:
    """Distance/duration between two coordinates."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        road_factor: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.OSRM_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.OSRM_TIMEOUT_SECONDS
        self.road_factor = road_factor or settings.ROUTE_ROAD_FACTOR
        self._transport = transport

    async def get_driving_distance(
        self,
        origin: Optional[Coordinates],
        destination: Optional[Coordinates],
    ) -> RouteResult:
        if not valid_coordinates(origin) or not valid_coordinates(destination):
            distance = settings.DEFAULT_DISTANCE_KM
            return RouteResult(
                distance_km=distance,
                duration_minutes=round(distance / AVERAGE_ROAD_SPEED_KMPH * 60),
                method="default",
                success=False,
                fallback_reason="missing or invalid coordinates",
            )

        try:
            return await self._osrm_route(origin, destination)
        except (httpx.HTTPError, RoutingAPIError, ValueError, KeyError) as e:
            logger.warning(f"OSRM routing failed, using haversine fallback: {e}")
            return self.fallback_route(origin, destination, reason=str(e))

    def fallback_route(
        self,
        origin: Coordinates,
        destination: Coordinates,
        reason: Optional[str] = None,
    ) -> RouteResult:
        straight_line = haversine_distance(origin[0], origin[1], destination[0], destination[1])
        road_km = round(straight_line * self.road_factor, 2)
        return RouteResult(
            distance_km=road_km,
            duration_minutes=round(road_km / AVERAGE_ROAD_SPEED_KMPH * 60),
            method="haversine_fallback",
            success=False,
            fallback_reason=reason,
        )

    async def _osrm_route(self, origin: Coordinates, destination: Coordinates) -> RouteResult:
        (o_lat, o_lon), (d_lat, d_lon) = origin, destination
        url = f"{self.base_url}/route/v1/driving/{o_lon},{o_lat};{d_lon},{d_lat}"
        started = time.monotonic()

        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
            response = await client.get(
                url,
                params={"overview": "false"},
                headers={"User-Agent": f"{settings.APP_NAME}/{settings.APP_VERSION}"},
            )

        if response.status_code >= 400:
            raise RoutingAPIError(f"OSRM API error: {response.status_code}")

        data = response.json()
        if data.get("code") != "Ok" or not data.get("routes"):
            raise RoutingAPIError(f"OSRM routing failed: {data.get('code') or 'No route found'}")

        route = data["routes"][0]
        latency_ms = int((time.monotonic() - started) * 1000)
        distance_km = round(route["distance"] / 1000, 2)
        logger.info(f"OSRM route {distance_km} km in {latency_ms}ms")

        return RouteResult(
            distance_km=distance_km,
            duration_minutes=round(route["duration"] / 60),
            method="osrm",
            success=True,
            latency_ms=latency_ms,
        )
