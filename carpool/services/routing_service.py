"""
Routing Service

OSRM adapter: talks to the routing provider over HTTP and returns
normalized results. Holds no matching rules.

Coordinates are (lat, lng) internally and sent to OSRM as "lng,lat;lng,lat".
"""

import logging
from typing import List, Optional, Sequence, Tuple

import httpx
from pydantic import BaseModel

from carpool.config import settings

logger = logging.getLogger(__name__)

LatLng = Tuple[float, float]


class ProviderUnavailable(Exception):
    """Geo/route provider call failed, timed out, or returned no usable result."""


class RouteResult(BaseModel):
    distance_meters: float
    duration_seconds: float
    polyline: Optional[str] = None


class TripLeg(BaseModel):
    index: int  # Position of the destination in the input list
    distance_meters: float
    duration_seconds: float


class TripResult(BaseModel):
    """Optimized visiting order for a fixed start, free end, no return trip."""

    order: List[int]
    legs: List[TripLeg]
    total_distance_meters: float
    total_duration_seconds: float
    polyline: Optional[str] = None


def format_coordinates(points: Sequence[LatLng]) -> str:
    """Convert (lat, lng) points to OSRM 'lng,lat;lng,lat' format."""
    return ";".join(f"{lng},{lat}" for lat, lng in points)


class RoutingService:
    """
    Route provider adapter.

    All calls are stateless and idempotent. Any failure surfaces as
    ProviderUnavailable; callers decide what "no information" means.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        profile: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.osrm_base_url).rstrip("/")
        self.profile = profile or settings.osrm_profile
        self.route_timeout = settings.route_timeout_seconds
        self.trip_timeout = settings.trip_timeout_seconds
        self._transport = transport

    async def _get(self, service: str, points: Sequence[LatLng], params: dict, timeout: float) -> dict:
        url = f"{self.base_url}/{service}/v1/{self.profile}/{format_coordinates(points)}"

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.get(url, params=params)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as e:
            logger.warning(f"OSRM {service} timed out after {timeout}s")
            raise ProviderUnavailable(f"OSRM {service} timeout") from e
        except httpx.HTTPError as e:
            logger.warning(f"OSRM {service} request failed: {e}")
            raise ProviderUnavailable(f"OSRM {service} request failed: {e}") from e
        except ValueError as e:
            logger.warning(f"OSRM {service} returned invalid JSON")
            raise ProviderUnavailable(f"OSRM {service} invalid response") from e

        if data.get("code") != "Ok":
            logger.warning(f"OSRM {service} error: {data.get('code')} {data.get('message', '')}")
            raise ProviderUnavailable(f"OSRM {service} error: {data.get('code')}")

        return data

    async def route(self, a: LatLng, b: LatLng) -> RouteResult:
        """Driving distance, duration and polyline between two points."""
        return await self.route_through([a, b])

    async def route_through(self, points: Sequence[LatLng]) -> RouteResult:
        """
        Route visiting the points in the given order.

        Used to price an insertion order (origin -> B -> A) against the
        direct route.
        """
        if len(points) < 2:
            raise ValueError("At least two points are required to compute a route")

        timeout = self.route_timeout if len(points) == 2 else self.trip_timeout
        data = await self._get(
            "route",
            points,
            {"overview": "full", "geometries": "polyline"},
            timeout,
        )

        routes = data.get("routes") or []
        if not routes:
            raise ProviderUnavailable("OSRM route returned no routes")

        best = routes[0]
        return RouteResult(
            distance_meters=float(best["distance"]),
            duration_seconds=float(best["duration"]),
            polyline=best.get("geometry"),
        )

    async def trip(self, origin: LatLng, destinations: Sequence[LatLng]) -> TripResult:
        """
        Optimized drop-off order starting at origin, ending anywhere, no return.

        `order` lists indices into `destinations` in visiting order.
        """
        if not destinations:
            return TripResult(
                order=[], legs=[], total_distance_meters=0.0, total_duration_seconds=0.0
            )

        data = await self._get(
            "trip",
            [origin, *destinations],
            {
                "source": "first",
                "destination": "any",
                "roundtrip": "false",
                "overview": "full",
                "geometries": "polyline",
            },
            self.trip_timeout,
        )

        trips = data.get("trips") or []
        waypoints = data.get("waypoints") or []
        if not trips or len(waypoints) != len(destinations) + 1:
            raise ProviderUnavailable("OSRM trip returned an incomplete result")

        # waypoints[i] is input point i; waypoint_index is its position in the trip
        visiting = sorted(range(len(waypoints)), key=lambda i: waypoints[i]["waypoint_index"])
        order = [i - 1 for i in visiting if i != 0]

        trip = trips[0]
        raw_legs = trip.get("legs") or []
        legs = []
        for position, dest_index in enumerate(order):
            leg = raw_legs[position] if position < len(raw_legs) else {}
            legs.append(
                TripLeg(
                    index=dest_index,
                    distance_meters=float(leg.get("distance", 0.0)),
                    duration_seconds=float(leg.get("duration", 0.0)),
                )
            )

        return TripResult(
            order=order,
            legs=legs,
            total_distance_meters=float(trip["distance"]),
            total_duration_seconds=float(trip["duration"]),
            polyline=trip.get("geometry"),
        )


# Singleton instance
_routing_service = None


def get_routing_service() -> RoutingService:
    """Get singleton routing service instance."""
    global _routing_service
    if _routing_service is None:
        _routing_service = RoutingService()
    return _routing_service
