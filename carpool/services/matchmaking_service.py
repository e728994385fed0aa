"""
Matchmaking Service

Places ride requests into shared rides.

Per attempt:
1. Eligibility (pending, or accepted while alone in its ride)
2. Candidate pool: accepted requests of the same event, +/- 30 min
3. Gender preference (HARD, never violated)
4. Great-circle proximity of destinations (15 km)
5. Detour check from the event location (25% and 10 km)
6. Rank by detour increase, then candidate creation time
7. Join the first ranked ride with a free seat, else merge into the
   top candidate's single-member ride
8. Commit with compare-and-set, store the route, notify members
"""

import logging
from datetime import timedelta
from typing import List, Optional, Tuple

from pymongo import ReturnDocument

from carpool.config import settings
from carpool.database import get_db
from carpool.models.match import MatchReason, MatchResult
from carpool.models.ride import MAX_PASSENGERS, Ride, RideStatus, Waypoint
from carpool.models.ride_request import (
    ACTIVE_REQUEST_STATUSES,
    RideRequest,
    RideRequestStatus,
)
from carpool.services.compatibility import (
    DetourEvaluation,
    evaluate_detour,
    gender_compatible,
    proximity_prefilter,
    within_departure_window,
)
from carpool.services.event_service import EventService
from carpool.services.notification_service import NotificationService
from carpool.services.routing_service import (
    LatLng,
    ProviderUnavailable,
    TripResult,
    get_routing_service,
)
from carpool.utils.timezone_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

ScoredCandidate = Tuple[DetourEvaluation, RideRequest]


class RideRequestNotFound(LookupError):
    """attempt_match was given an unknown request id."""


class CapacityConflict(Exception):
    """A seat compare-and-set lost against a concurrent membership change."""


class MatchmakingService:
    """
    Matching engine for ride requests.

    Ride.current_passenger_count and Ride.revision are the only contended
    fields. Every membership change bumps revision, and a seat is only
    taken with a compare-and-set on the revision observed before the
    routing calls, so concurrent attempts can never overbook a ride.
    """

    def __init__(self):
        self.routing_service = get_routing_service()
        self.notification_service = NotificationService()
        self.event_service = EventService()

        # Thresholds
        self.MAX_PASSENGERS = MAX_PASSENGERS
        self.MATCHING_WINDOW_MINUTES = settings.matching_window_minutes
        self.PROXIMITY_MAX_KM = settings.proximity_max_km
        self.MAX_DETOUR_PERCENTAGE = settings.max_detour_percentage
        self.MAX_DETOUR_METERS = settings.max_detour_meters
        self.COMMIT_ATTEMPTS = settings.match_commit_attempts

    # =========================================================================
    # Entry point
    # =========================================================================

    async def attempt_match(self, request_id: str) -> MatchResult:
        """
        Try to place a request into a shared ride.

        Never raises for provider or concurrency problems; those come back
        as a reason. Raises RideRequestNotFound for an unknown id.
        """
        db = get_db()
        doc = await db.ride_requests.find_one({"request_id": request_id})
        if not doc:
            raise RideRequestNotFound(f"Ride request {request_id} not found")
        request = RideRequest(**doc)

        if not await self.is_eligible(request):
            return self._result(request, MatchReason.ALREADY_RESOLVED)

        origin = await self._resolve_origin(request)
        if origin is None:
            logger.warning(f"No departure point for request {request_id}")
            return self._result(request, MatchReason.NO_CANDIDATES)

        candidates = await self._load_candidate_pool(request)
        if not candidates:
            return self._result(request, MatchReason.NO_CANDIDATES)

        candidates = [c for c in candidates if gender_compatible(request, c)]
        if not candidates:
            return self._result(request, MatchReason.GENDER_FILTERED)

        candidates = [
            c for c in candidates
            if proximity_prefilter(request.destination, c.destination, self.PROXIMITY_MAX_KM)
        ]
        if not candidates:
            return self._result(request, MatchReason.GEO_TOO_FAR)

        try:
            scored = await self._score_detours(origin, request, candidates)
        except ProviderUnavailable as e:
            logger.warning(f"Detour scoring failed for request {request_id}: {e}")
            return self._result(request, MatchReason.PROVIDER_UNAVAILABLE)

        if not scored:
            return self._result(request, MatchReason.DETOUR_TOO_LARGE)

        return await self._assign(request, origin, self.rank_candidates(scored))

    # =========================================================================
    # Selection
    # =========================================================================

    async def is_eligible(self, request: RideRequest) -> bool:
        """Pending, or accepted while still alone in its ride."""
        if request.status in (RideRequestStatus.PENDING, RideRequestStatus.MATCHED):
            return True

        # An initiator still alone in its ride keeps looking for company
        if request.status == RideRequestStatus.ACCEPTED and request.ride_id:
            members = await self.get_active_members(request.ride_id)
            return len(members) == 1

        return False

    async def _resolve_origin(self, request: RideRequest) -> Optional[LatLng]:
        """Rides leave from the event location."""
        event = await self.event_service.get_event(request.event_id)
        if event and event.has_coordinates:
            return (event.latitude, event.longitude)

        if request.ride_id:
            ride = await self.get_ride(request.ride_id)
            if ride:
                return (ride.departure_latitude, ride.departure_longitude)

        return None

    async def _load_candidate_pool(self, request: RideRequest) -> List[RideRequest]:
        db = get_db()
        window = timedelta(minutes=self.MATCHING_WINDOW_MINUTES)
        departure = request.max_departure_time

        docs = await db.ride_requests.find(
            {
                "event_id": request.event_id,
                "status": RideRequestStatus.ACCEPTED,
                "request_id": {"$ne": request.request_id},
                "max_departure_time": {
                    "$gte": departure - window,
                    "$lte": departure + window,
                },
            }
        ).to_list(None)

        candidates = [
            RideRequest(**d)
            for d in docs
            if d.get("ride_id") and d.get("ride_id") != request.ride_id
        ]
        return [
            c for c in candidates
            if within_departure_window(
                ensure_utc(departure),
                ensure_utc(c.max_departure_time),
                self.MATCHING_WINDOW_MINUTES,
            )
        ]

    async def _score_detours(
        self, origin: LatLng, request: RideRequest, candidates: List[RideRequest]
    ) -> List[ScoredCandidate]:
        """Detour of each candidate; raises ProviderUnavailable on any routing error."""
        scored = []
        for candidate in candidates:
            evaluation = await evaluate_detour(
                self.routing_service,
                origin,
                request.destination,
                candidate.destination,
                self.MAX_DETOUR_PERCENTAGE,
                self.MAX_DETOUR_METERS,
            )
            if evaluation.acceptable:
                scored.append((evaluation, candidate))
            else:
                logger.debug(
                    f"Detour too large between {request.request_id} and "
                    f"{candidate.request_id}: {evaluation.increase_ratio:.1%}, "
                    f"{evaluation.increase_meters:.0f}m"
                )
        return scored

    @staticmethod
    def rank_candidates(scored: List[ScoredCandidate]) -> List[ScoredCandidate]:
        """Smallest detour first, earliest-queued request wins ties."""
        return sorted(
            scored, key=lambda item: (item[0].increase_meters, item[1].created_at)
        )

    def _compatible_with_members(
        self, request: RideRequest, members: List[RideRequest]
    ) -> bool:
        return all(gender_compatible(request, member) for member in members)

    async def _assign(
        self, request: RideRequest, origin: LatLng, ranked: List[ScoredCandidate]
    ) -> MatchResult:
        seen_rides = set()
        gender_blocked = False

        for _, candidate in ranked:
            if candidate.ride_id in seen_rides:
                continue
            seen_rides.add(candidate.ride_id)

            ride = await self.get_ride(candidate.ride_id)
            if ride is None or ride.status != RideStatus.MATCHING or not ride.has_free_seat:
                continue

            members = await self.get_active_members(ride.ride_id)
            if not self._compatible_with_members(request, members):
                gender_blocked = True
                continue

            return await self._commit_assignment(request, origin, ride)

        merged = await self._try_merge(request, origin, ranked[0][1])
        if merged is not None:
            return merged

        if gender_blocked:
            return self._result(request, MatchReason.GENDER_FILTERED)
        return self._result(request, MatchReason.RIDES_FULL)

    async def _try_merge(
        self, request: RideRequest, origin: LatLng, top_candidate: RideRequest
    ) -> Optional[MatchResult]:
        """
        Merge into the top candidate's ride when it is not yet a group.

        A single-member ride only looks full when its counter drifted, so
        the counter is reconciled before taking the seat.
        """
        ride = await self.get_ride(top_candidate.ride_id)
        if ride is None or ride.status not in (RideStatus.MATCHING, RideStatus.FULL):
            return None

        members = await self.get_active_members(ride.ride_id)
        if len(members) != 1 or not self._compatible_with_members(request, members):
            return None

        ride = await self._reconcile_passenger_count(ride, len(members))
        if ride is None or ride.status != RideStatus.MATCHING or not ride.has_free_seat:
            return None

        return await self._commit_assignment(request, origin, ride)

    # =========================================================================
    # Commit
    # =========================================================================

    async def _commit_assignment(
        self, request: RideRequest, origin: LatLng, ride: Ride
    ) -> MatchResult:
        for attempt in range(self.COMMIT_ATTEMPTS):
            members = await self.get_active_members(ride.ride_id)
            if not self._compatible_with_members(request, members):
                return self._result(request, MatchReason.GENDER_FILTERED)

            prospective = members + [request]
            try:
                trip = await self.routing_service.trip(
                    origin, [m.destination.coordinates for m in prospective]
                )
            except ProviderUnavailable as e:
                logger.warning(f"Route optimization failed for ride {ride.ride_id}: {e}")
                return self._result(request, MatchReason.PROVIDER_UNAVAILABLE)

            try:
                reserved = await self._reserve_seat(ride)
            except CapacityConflict:
                if attempt + 1 >= self.COMMIT_ATTEMPTS:
                    break
                logger.info(
                    f"Capacity conflict on ride {ride.ride_id} for request "
                    f"{request.request_id}, retrying on fresh state"
                )
                fresh = await self.get_ride(ride.ride_id)
                if fresh is None or fresh.status != RideStatus.MATCHING or not fresh.has_free_seat:
                    break
                ride = fresh
                continue

            return await self._finalize_assignment(request, origin, reserved, prospective, trip)

        logger.warning(
            f"Repeated capacity conflict for request {request.request_id} on ride "
            f"{ride.ride_id}, deferring to next sweep"
        )
        return self._result(request, MatchReason.CAPACITY_CONFLICT, ride.ride_id)

    async def _reserve_seat(self, ride: Ride) -> Ride:
        """Increment-if-below-capacity, valid only if nothing changed since `ride` was read."""
        db = get_db()
        doc = await db.rides.find_one_and_update(
            {
                "ride_id": ride.ride_id,
                "status": RideStatus.MATCHING,
                "revision": ride.revision,
                "current_passenger_count": {"$lt": self.MAX_PASSENGERS},
            },
            {"$inc": {"current_passenger_count": 1, "revision": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            raise CapacityConflict(ride.ride_id)
        return Ride(**doc)

    async def _finalize_assignment(
        self,
        request: RideRequest,
        origin: LatLng,
        ride: Ride,
        prospective: List[RideRequest],
        trip: TripResult,
    ) -> MatchResult:
        db = get_db()

        # RACE CONDITION FIX: re-validate the request at commit time. A
        # cancellation or a concurrent attempt for the same request wins.
        claimed = await db.ride_requests.find_one_and_update(
            {
                "request_id": request.request_id,
                "status": request.status,
                "ride_id": request.ride_id,
            },
            {
                "$set": {
                    "status": RideRequestStatus.ACCEPTED,
                    "ride_id": ride.ride_id,
                    "is_initiator": False,
                    "matched_at": utc_now(),
                }
            },
            return_document=ReturnDocument.AFTER,
        )
        if not claimed:
            logger.info(
                f"Request {request.request_id} changed during matching, "
                f"releasing seat on ride {ride.ride_id}"
            )
            await self.release_seat(ride.ride_id)
            return self._result(request, MatchReason.ALREADY_RESOLVED)

        if ride.current_passenger_count >= self.MAX_PASSENGERS:
            await db.rides.update_one(
                {
                    "ride_id": ride.ride_id,
                    "status": RideStatus.MATCHING,
                    "current_passenger_count": {"$gte": self.MAX_PASSENGERS},
                },
                {"$set": {"status": RideStatus.FULL}},
            )

        await db.rides.update_one(
            {"ride_id": ride.ride_id},
            {"$min": {"departure_time": request.max_departure_time}},
        )

        if request.ride_id and request.ride_id != ride.ride_id:
            await self._vacate_ride(request.ride_id, merged_into=ride.ride_id)

        saved = await self._save_route(ride.ride_id, ride.revision, prospective, trip)
        if not saved:
            await self.recompute_route(ride.ride_id)

        members = await self.get_active_members(ride.ride_id)
        await self.notification_service.notify_ride_match(
            ride.ride_id, [m.user_id for m in members], request.user_id, ride.revision
        )

        logger.info(
            f"Request {request.request_id} joined ride {ride.ride_id} "
            f"({ride.current_passenger_count}/{self.MAX_PASSENGERS})"
        )
        return self._result(request, MatchReason.MATCHED, ride.ride_id)

    async def _vacate_ride(self, ride_id: str, merged_into: str):
        """Give up the seat a request held in its previous (solo) ride."""
        db = get_db()
        released = await self.release_seat(ride_id)
        if released is None:
            return

        remaining = await db.ride_requests.count_documents(
            {"ride_id": ride_id, "status": {"$in": ACTIVE_REQUEST_STATUSES}}
        )
        if remaining == 0:
            await db.rides.update_one(
                {
                    "ride_id": ride_id,
                    "status": {"$in": [RideStatus.MATCHING, RideStatus.FULL]},
                },
                {
                    "$set": {
                        "status": RideStatus.CANCELLED,
                        "merged_into": merged_into,
                        "route": None,
                        "route_polyline": None,
                    }
                },
            )
            logger.info(f"Ride {ride_id} merged into {merged_into}")

    async def _reconcile_passenger_count(self, ride: Ride, active_count: int) -> Optional[Ride]:
        db = get_db()
        status = (
            RideStatus.MATCHING if active_count < self.MAX_PASSENGERS else RideStatus.FULL
        )
        doc = await db.rides.find_one_and_update(
            {
                "ride_id": ride.ride_id,
                "revision": ride.revision,
                "status": {"$in": [RideStatus.MATCHING, RideStatus.FULL]},
            },
            {
                "$set": {"current_passenger_count": active_count, "status": status},
                "$inc": {"revision": 1},
            },
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            return None

        if ride.current_passenger_count != active_count:
            logger.warning(
                f"Reconciled passenger count of ride {ride.ride_id}: "
                f"{ride.current_passenger_count} -> {active_count}"
            )
        return Ride(**doc)

    # =========================================================================
    # Shared ride bookkeeping
    # =========================================================================

    async def release_seat(self, ride_id: str) -> Optional[Ride]:
        """Decrement the passenger count; a full ride reopens."""
        db = get_db()
        doc = await db.rides.find_one_and_update(
            {"ride_id": ride_id, "current_passenger_count": {"$gt": 0}},
            {"$inc": {"current_passenger_count": -1, "revision": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            return None

        ride = Ride(**doc)
        if ride.status == RideStatus.FULL and ride.has_free_seat:
            await db.rides.update_one(
                {"ride_id": ride_id, "status": RideStatus.FULL},
                {"$set": {"status": RideStatus.MATCHING}},
            )
            ride.status = RideStatus.MATCHING
        return ride

    async def get_ride(self, ride_id: str) -> Optional[Ride]:
        db = get_db()
        doc = await db.rides.find_one({"ride_id": ride_id})
        return Ride(**doc) if doc else None

    async def get_active_members(self, ride_id: str) -> List[RideRequest]:
        db = get_db()
        docs = await db.ride_requests.find(
            {"ride_id": ride_id, "status": {"$in": ACTIVE_REQUEST_STATUSES}}
        ).to_list(None)
        members = [RideRequest(**d) for d in docs]
        members.sort(key=lambda m: m.created_at)
        return members

    async def recompute_route(self, ride_id: str) -> Optional[TripResult]:
        """Best effort; a provider failure leaves the previous route in place."""
        db = get_db()
        ride = await self.get_ride(ride_id)
        if ride is None:
            return None

        members = await self.get_active_members(ride_id)
        if len(members) < 2:
            await db.rides.update_one(
                {"ride_id": ride_id, "revision": ride.revision},
                {"$set": {"route": None, "route_polyline": None}},
            )
            return None

        origin = (ride.departure_latitude, ride.departure_longitude)
        try:
            trip = await self.routing_service.trip(
                origin, [m.destination.coordinates for m in members]
            )
        except ProviderUnavailable as e:
            logger.warning(f"Could not recompute route for ride {ride_id}: {e}")
            return None

        await self._save_route(ride_id, ride.revision, members, trip)
        return trip

    async def _save_route(
        self, ride_id: str, revision: int, members: List[RideRequest], trip: TripResult
    ) -> bool:
        """Store waypoints unless membership changed since `revision`."""
        db = get_db()
        waypoints = [
            Waypoint(
                user_id=members[leg.index].user_id,
                address=members[leg.index].destination.address,
                latitude=members[leg.index].destination.latitude,
                longitude=members[leg.index].destination.longitude,
                order=position + 1,
                distance_meters=leg.distance_meters,
                duration_seconds=leg.duration_seconds,
            )
            for position, leg in enumerate(trip.legs)
        ]

        result = await db.rides.update_one(
            {"ride_id": ride_id, "revision": revision},
            {
                "$set": {
                    "route": [w.model_dump() for w in waypoints],
                    "route_polyline": trip.polyline,
                }
            },
        )
        return result.matched_count > 0

    def _result(
        self, request: RideRequest, reason: MatchReason, ride_id: Optional[str] = None
    ) -> MatchResult:
        logger.info(f"Match attempt for request {request.request_id}: {reason.value}")
        return MatchResult.for_reason(reason, ride_id)
