"""
Ride Service

Ride request admission, user cancellation and ride lookups.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from carpool.config import settings
from carpool.database import get_db
from carpool.models.event import Event
from carpool.models.match import MatchResult
from carpool.models.ride import Ride, RideStatus
from carpool.models.ride_request import (
    ACTIVE_REQUEST_STATUSES,
    NON_TERMINAL_REQUEST_STATUSES,
    Destination,
    RideRequest,
    RideRequestCreate,
    RideRequestStatus,
)
from carpool.services.event_service import EventService
from carpool.services.geocoding_service import GeocodingService
from carpool.services.matchmaking_service import MatchmakingService
from carpool.services.notification_service import NotificationService
from carpool.utils.timezone_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)


class RideService:
    """Service for ride request lifecycle operations."""

    def __init__(self):
        self.event_service = EventService()
        self.geocoding_service = GeocodingService()
        self.notification_service = NotificationService()
        self.matchmaking_service = MatchmakingService()

    async def create_request(
        self, user_id: str, data: RideRequestCreate
    ) -> Tuple[RideRequest, MatchResult]:
        """
        Create a ride request and try to match it right away.

        Flow:
        1. Ticket gate and departure-time bounds
        2. Solo ride (MATCHING, one passenger) leaving from the event
        3. Initiator request, ACCEPTED in that ride
        4. Synchronous matching attempt

        Raises ValueError with a user-facing message when the request is
        not admissible.
        """
        db = get_db()

        if not await self.event_service.has_valid_ticket(user_id, data.event_id):
            raise ValueError(
                "You need a valid ticket for this event to request a shared ride."
            )

        event = await self.event_service.get_event(data.event_id)
        if event is None:
            raise ValueError("Event not found.")
        if not event.has_coordinates:
            raise ValueError("This event has no location coordinates yet.")

        departure = ensure_utc(data.max_departure_time)
        self._validate_departure(event, departure)

        existing = await db.ride_requests.find_one(
            {
                "user_id": user_id,
                "event_id": data.event_id,
                "status": {"$in": ACTIVE_REQUEST_STATUSES},
            }
        )
        if existing:
            raise ValueError(
                "You already have an active ride request for this event. Cancel it first."
            )

        destination = await self._resolve_destination(data)
        gender = await self.event_service.get_user_gender(user_id)

        ride = Ride(
            ride_id=str(uuid.uuid4()),
            event_id=data.event_id,
            departure_time=departure,
            depart_now=data.depart_now,
            departure_address=event.location,
            departure_latitude=event.latitude,
            departure_longitude=event.longitude,
            current_passenger_count=1,
            status=RideStatus.MATCHING,
        )

        request = RideRequest(
            request_id=str(uuid.uuid4()),
            ride_id=ride.ride_id,
            user_id=user_id,
            event_id=data.event_id,
            max_departure_time=departure,
            destination=destination,
            female_only=data.female_only,
            gender=gender,
            is_initiator=True,
            status=RideRequestStatus.ACCEPTED,
        )

        # RACE CONDITION FIX: the partial unique index on (user_id, event_id)
        # rejects a concurrent duplicate; the request goes in before its ride
        # so a rejected duplicate never leaves an orphan ride behind
        try:
            await db.ride_requests.insert_one(request.model_dump())
        except DuplicateKeyError:
            raise ValueError(
                "You already have an active ride request for this event. Cancel it first."
            )
        await db.rides.insert_one(ride.model_dump())

        logger.info(
            f"Created request {request.request_id} and ride {ride.ride_id} "
            f"for user {user_id} (event {data.event_id})"
        )

        result = await self.matchmaking_service.attempt_match(request.request_id)

        refreshed = await self.get_request(request.request_id)
        return (refreshed or request), result

    def _validate_departure(self, event: Event, departure: datetime):
        now = utc_now()

        if departure < now - timedelta(minutes=settings.request_past_tolerance_minutes):
            raise ValueError("This departure time has already passed.")

        earliest = ensure_utc(event.start_date) + timedelta(
            minutes=settings.min_departure_after_event_start_minutes
        )
        if departure < earliest:
            raise ValueError(
                f"Departure must be at least "
                f"{settings.min_departure_after_event_start_minutes} minutes "
                f"after the event starts."
            )

        if event.end_date:
            latest = ensure_utc(event.end_date) + timedelta(
                minutes=settings.max_departure_after_event_end_minutes
            )
            if departure > latest:
                raise ValueError(
                    f"Departure must be at most "
                    f"{settings.max_departure_after_event_end_minutes} minutes "
                    f"after the event ends."
                )

    async def _resolve_destination(self, data: RideRequestCreate) -> Destination:
        if data.destination_lat is not None and data.destination_lng is not None:
            return Destination(
                address=data.destination_address,
                city=data.destination_city,
                postcode=data.destination_postcode,
                latitude=data.destination_lat,
                longitude=data.destination_lng,
            )

        found = await self.geocoding_service.geocode(data.destination_address)
        if found is None:
            raise ValueError("We could not locate this destination address.")

        return Destination(
            address=found.label,
            city=data.destination_city or found.city,
            postcode=data.destination_postcode or found.postcode,
            latitude=found.latitude,
            longitude=found.longitude,
        )

    async def cancel_request(self, user_id: str, request_id: str) -> bool:
        """
        Cancel a ride request before its ride departs.

        SECURITY: Only the request owner can cancel.
        Idempotent: If already cancelled, returns True.
        """
        db = get_db()

        request = await self.get_request(request_id)
        if request is None:
            raise ValueError("Ride request not found.")
        if request.user_id != user_id:
            raise ValueError("Only the owner of a request can cancel it.")

        if request.status == RideRequestStatus.CANCELLED:
            return True
        if request.status not in NON_TERMINAL_REQUEST_STATUSES:
            raise ValueError("This ride request is already completed.")

        ride = None
        if request.ride_id:
            ride = await self.matchmaking_service.get_ride(request.ride_id)

        now = utc_now()
        if ride is not None:
            if ride.status in (RideStatus.IN_PROGRESS, RideStatus.COMPLETED):
                raise ValueError("This ride has already departed.")
            if now >= ensure_utc(ride.departure_time):
                raise ValueError("This ride has already departed.")

        # Status changes first; an in-flight match re-validates it at commit
        cancelled = await db.ride_requests.find_one_and_update(
            {
                "request_id": request_id,
                "status": request.status,
                "ride_id": request.ride_id,
            },
            {"$set": {"status": RideRequestStatus.CANCELLED, "resolved_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if not cancelled:
            raise ValueError("This ride request changed meanwhile, please try again.")

        logger.info(f"User {user_id} cancelled request {request_id}")

        if ride is None:
            return True

        if request.status in ACTIVE_REQUEST_STATUSES:
            released = await self.matchmaking_service.release_seat(ride.ride_id)
            revision = released.revision if released else ride.revision
        else:
            revision = ride.revision

        await self._after_member_left(ride.ride_id, revision)
        return True

    async def _after_member_left(self, ride_id: str, revision: int):
        db = get_db()
        remaining = await self.matchmaking_service.get_active_members(ride_id)

        if not remaining:
            await db.rides.update_one(
                {
                    "ride_id": ride_id,
                    "status": {"$in": [RideStatus.MATCHING, RideStatus.FULL]},
                },
                {
                    "$set": {
                        "status": RideStatus.CANCELLED,
                        "route": None,
                        "route_polyline": None,
                    }
                },
            )
            logger.info(f"Ride {ride_id} cancelled, no passengers left")
            return

        if len(remaining) == 1:
            # Alone again: back to waiting so the rematch sweep picks it up
            await db.ride_requests.update_one(
                {
                    "request_id": remaining[0].request_id,
                    "ride_id": ride_id,
                    "status": RideRequestStatus.ACCEPTED,
                },
                {"$set": {"status": RideRequestStatus.PENDING}},
            )

        await self.matchmaking_service.recompute_route(ride_id)
        await self.notification_service.notify_passenger_left(
            ride_id, [m.user_id for m in remaining], revision
        )

    # =========================================================================
    # Lookups
    # =========================================================================

    async def get_request(self, request_id: str) -> Optional[RideRequest]:
        db = get_db()
        doc = await db.ride_requests.find_one({"request_id": request_id})
        return RideRequest(**doc) if doc else None

    async def get_ride(self, ride_id: str) -> Optional[Ride]:
        return await self.matchmaking_service.get_ride(ride_id)

    async def get_ride_members(self, ride_id: str) -> List[RideRequest]:
        return await self.matchmaking_service.get_active_members(ride_id)

    async def list_open_rides(self, event_id: str) -> List[Ride]:
        """Rides of an event that still have free seats, earliest departure first."""
        db = get_db()
        docs = await db.rides.find(
            {"event_id": event_id, "status": RideStatus.MATCHING}
        ).to_list(None)
        rides = [Ride(**d) for d in docs]
        rides = [r for r in rides if r.has_free_seat]
        rides.sort(key=lambda r: r.departure_time)
        return rides
