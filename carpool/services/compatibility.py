"""
Compatibility Evaluator

Filters applied to a requester/candidate pair before any seat is taken:
1. Gender preference (hard, two-sided)
2. Departure window
3. Great-circle proximity of destinations (cheap, no network)
4. Detour acceptability (route provider)
"""

import logging
import math
from datetime import datetime, timedelta

from geopy.distance import great_circle
from pydantic import BaseModel

from carpool.models.ride_request import Destination, Gender, RideRequest
from carpool.services.routing_service import LatLng, ProviderUnavailable, RoutingService

logger = logging.getLogger(__name__)


class DetourEvaluation(BaseModel):
    direct_meters: float
    combined_meters: float
    increase_meters: float
    increase_ratio: float
    acceptable: bool


def gender_compatible(requester: RideRequest, candidate: RideRequest) -> bool:
    """Female-only is a HARD constraint on both sides."""
    if requester.female_only and candidate.gender != Gender.FEMALE:
        return False
    if candidate.female_only and requester.gender != Gender.FEMALE:
        return False
    return True


def within_departure_window(a: datetime, b: datetime, window_minutes: int = 30) -> bool:
    """Inclusive +/- window on max departure times."""
    return abs(a - b) <= timedelta(minutes=window_minutes)


def proximity_prefilter(a: Destination, b: Destination, max_km: float = 15.0) -> bool:
    return great_circle(a.coordinates, b.coordinates).kilometers <= max_km


def _at_most(value: float, limit: float) -> bool:
    """Inclusive limit, tolerant of float noise in decimetre provider distances."""
    return value <= limit or math.isclose(value, limit, rel_tol=0.0, abs_tol=1e-6)


async def evaluate_detour(
    routing_service: RoutingService,
    origin: LatLng,
    dest_a: Destination,
    dest_b: Destination,
    max_pct: float = 0.25,
    max_abs_meters: float = 10000.0,
) -> DetourEvaluation:
    """
    Cost of dropping B on the way to A, cheapest insertion order.

    Raises ProviderUnavailable when any routing call fails.
    """
    direct = await routing_service.route(origin, dest_a.coordinates)
    if direct.distance_meters <= 0:
        raise ProviderUnavailable("Direct route has no length")

    via_b_first = await routing_service.route_through(
        [origin, dest_b.coordinates, dest_a.coordinates]
    )
    via_a_first = await routing_service.route_through(
        [origin, dest_a.coordinates, dest_b.coordinates]
    )
    combined = min(via_b_first.distance_meters, via_a_first.distance_meters)

    increase = combined - direct.distance_meters
    ratio = increase / direct.distance_meters

    return DetourEvaluation(
        direct_meters=direct.distance_meters,
        combined_meters=combined,
        increase_meters=increase,
        increase_ratio=ratio,
        acceptable=(
            _at_most(increase, max_pct * direct.distance_meters)
            and _at_most(increase, max_abs_meters)
        ),
    )


async def detour_acceptable(
    routing_service: RoutingService,
    origin: LatLng,
    dest_a: Destination,
    dest_b: Destination,
    max_pct: float = 0.25,
    max_abs_meters: float = 10000.0,
) -> bool:
    """Never accepts a detour the provider could not price."""
    try:
        evaluation = await evaluate_detour(
            routing_service, origin, dest_a, dest_b, max_pct, max_abs_meters
        )
    except ProviderUnavailable as e:
        logger.warning(f"Detour check failed, rejecting: {e}")
        return False
    return evaluation.acceptable
