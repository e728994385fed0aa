"""Carpool Services Package"""

from carpool.services.event_service import EventService
from carpool.services.geocoding_service import GeocodingService
from carpool.services.routing_service import RoutingService, ProviderUnavailable
from carpool.services.notification_service import NotificationService
from carpool.services.matchmaking_service import MatchmakingService
from carpool.services.ride_service import RideService

__all__ = [
    "EventService",
    "GeocodingService",
    "RoutingService",
    "ProviderUnavailable",
    "NotificationService",
    "MatchmakingService",
    "RideService",
]
