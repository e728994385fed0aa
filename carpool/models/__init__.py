"""Carpool Models Package"""

from carpool.models.event import Event
from carpool.models.match import MatchReason, MatchResult
from carpool.models.notification import Notification, NotificationType
from carpool.models.ride import MAX_PASSENGERS, Ride, RideStatus, Waypoint
from carpool.models.ride_request import (
    ACTIVE_REQUEST_STATUSES,
    NON_TERMINAL_REQUEST_STATUSES,
    Destination,
    Gender,
    RideRequest,
    RideRequestCreate,
    RideRequestStatus,
)

__all__ = [
    "Event",
    "MatchReason", "MatchResult",
    "Notification", "NotificationType",
    "MAX_PASSENGERS", "Ride", "RideStatus", "Waypoint",
    "ACTIVE_REQUEST_STATUSES", "NON_TERMINAL_REQUEST_STATUSES",
    "Destination", "Gender", "RideRequest", "RideRequestCreate", "RideRequestStatus",
]
