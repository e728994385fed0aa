"""
Scheduled Jobs for the Carpool Worker

Two independent sweeps:
- ExpirySweep (1 min): force-expire stale requests, close finished rides
- RematchSweep (5 min): retry matching for requests still riding alone

Both are best-effort. A failing record is logged and skipped; it never
aborts the rest of the sweep.
"""

import logging
from datetime import timedelta
from typing import Optional

from pymongo import ReturnDocument

from carpool.config import settings
from carpool.database import get_db
from carpool.models.ride import TERMINAL_RIDE_STATUSES, RideStatus
from carpool.models.ride_request import (
    ACTIVE_REQUEST_STATUSES,
    NON_TERMINAL_REQUEST_STATUSES,
    RideRequest,
    RideRequestStatus,
)
from carpool.services.matchmaking_service import MatchmakingService
from carpool.services.notification_service import NotificationService
from carpool.utils.timezone_utils import utc_now

logger = logging.getLogger(__name__)


class ScheduledJob:
    """Base class for scheduled jobs with error handling and logging."""

    def __init__(self, name: str):
        self.name = name
        self.execution_count = 0
        self.failure_count = 0
        self.last_execution = None
        self.last_error = None
        self.last_stats: Optional[dict] = None

    async def execute(self):
        """Execute the job with error handling and metrics."""
        self.execution_count += 1
        start_time = utc_now()

        try:
            logger.info(f"[{self.name}] Starting execution #{self.execution_count}")
            self.last_stats = await self._run()
            self.last_execution = utc_now()
            duration = (self.last_execution - start_time).total_seconds()
            logger.info(f"[{self.name}] Completed successfully in {duration:.2f}s")

        except Exception as e:
            self.failure_count += 1
            self.last_error = str(e)
            logger.error(f"[{self.name}] Failed: {e}", exc_info=True)

            # Alert on repeated failures
            if self.failure_count >= 3:
                self._alert_failure(e)

    async def _run(self) -> dict:
        """Override this method in subclasses."""
        raise NotImplementedError

    def _alert_failure(self, error: Exception):
        logger.critical(
            f"[{self.name}] CRITICAL: Failed {self.failure_count} times. "
            f"Last error: {error}"
        )

    def status(self) -> dict:
        return {
            "name": self.name,
            "execution_count": self.execution_count,
            "failure_count": self.failure_count,
            "last_execution": self.last_execution,
            "last_error": self.last_error,
            "last_stats": self.last_stats,
        }


class ExpirySweepJob(ScheduledJob):
    """
    Expire requests whose latest departure is older than the grace period.

    Frequency: Every 1 minute
    - ACCEPTED requests become COMPLETED, everything else CANCELLED
    - A touched ride with no non-terminal request left becomes COMPLETED
    - Rides with two or more passengers start once their departure time passes
    """

    def __init__(self):
        super().__init__("ExpirySweep")
        self.notification_service = NotificationService()

    async def _run(self) -> dict:
        db = get_db()
        now = utc_now()
        cutoff = now - timedelta(minutes=settings.expiry_grace_minutes)

        stats = {
            "started_rides": 0,
            "completed_requests": 0,
            "cancelled_requests": 0,
            "completed_rides": 0,
            "failed": 0,
        }

        # 1. Departed rides
        departed = await db.rides.find(
            {
                "status": {"$in": [RideStatus.MATCHING, RideStatus.FULL]},
                "departure_time": {"$lte": now},
                "current_passenger_count": {"$gte": 2},
            }
        ).to_list(None)

        for ride in departed:
            try:
                result = await db.rides.update_one(
                    {
                        "ride_id": ride["ride_id"],
                        "status": {"$in": [RideStatus.MATCHING, RideStatus.FULL]},
                    },
                    {"$set": {"status": RideStatus.IN_PROGRESS, "started_at": now}},
                )
                if result.modified_count:
                    stats["started_rides"] += 1
            except Exception as e:
                stats["failed"] += 1
                logger.error(f"[{self.name}] Error starting ride {ride.get('ride_id')}: {e}")

        # 2. Stale requests
        expired = await db.ride_requests.find(
            {
                "max_departure_time": {"$lt": cutoff},
                "status": {"$in": NON_TERMINAL_REQUEST_STATUSES},
            }
        ).to_list(None)

        touched_rides = set()
        for request in expired:
            try:
                ride_id = await self._expire_request(db, request, now, stats)
                if ride_id:
                    touched_rides.add(ride_id)
            except Exception as e:
                stats["failed"] += 1
                logger.error(
                    f"[{self.name}] Error expiring request {request.get('request_id')}: {e}"
                )

        # 3. Rides left without passengers
        for ride_id in sorted(touched_rides):
            try:
                if await self._complete_ride_if_finished(db, ride_id, now):
                    stats["completed_rides"] += 1
            except Exception as e:
                stats["failed"] += 1
                logger.error(f"[{self.name}] Error completing ride {ride_id}: {e}")

        if any(stats.values()):
            logger.info(
                f"[{self.name}] Sweep summary: "
                f"started={stats['started_rides']}, "
                f"completed_requests={stats['completed_requests']}, "
                f"cancelled_requests={stats['cancelled_requests']}, "
                f"completed_rides={stats['completed_rides']}, "
                f"failed={stats['failed']}"
            )
        return stats

    async def _expire_request(self, db, request: dict, now, stats: dict) -> Optional[str]:
        """Returns the ride id when the request was actually expired by this sweep."""
        previous_status = request["status"]
        new_status = (
            RideRequestStatus.COMPLETED
            if previous_status == RideRequestStatus.ACCEPTED
            else RideRequestStatus.CANCELLED
        )

        result = await db.ride_requests.update_one(
            {"request_id": request["request_id"], "status": previous_status},
            {"$set": {"status": new_status, "resolved_at": now}},
        )
        if result.modified_count == 0:
            # Changed by a concurrent cancellation or match
            return None

        ride_id = request.get("ride_id")

        if new_status == RideRequestStatus.COMPLETED:
            stats["completed_requests"] += 1
        else:
            stats["cancelled_requests"] += 1
            await self.notification_service.notify_request_expired(
                request["user_id"], request["request_id"], ride_id
            )

        if ride_id and previous_status in ACTIVE_REQUEST_STATUSES:
            # The passenger no longer holds a seat; the ride is not reopened
            await db.rides.update_one(
                {"ride_id": ride_id, "current_passenger_count": {"$gt": 0}},
                {"$inc": {"current_passenger_count": -1, "revision": 1}},
            )

        return ride_id

    async def _complete_ride_if_finished(self, db, ride_id: str, now) -> bool:
        remaining = await db.ride_requests.count_documents(
            {"ride_id": ride_id, "status": {"$in": NON_TERMINAL_REQUEST_STATUSES}}
        )
        if remaining:
            return False

        ride = await db.rides.find_one_and_update(
            {"ride_id": ride_id, "status": {"$nin": TERMINAL_RIDE_STATUSES}},
            {"$set": {"status": RideStatus.COMPLETED, "completed_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if not ride:
            return False

        logger.info(f"[{self.name}] Completed ride {ride_id}")

        passengers = await db.ride_requests.find(
            {"ride_id": ride_id, "status": RideRequestStatus.COMPLETED}
        ).to_list(None)
        if len(passengers) >= 2:
            await self.notification_service.notify_ride_completed(
                ride_id, [p["user_id"] for p in passengers]
            )
        return True


class RematchSweepJob(ScheduledJob):
    """
    Retry matching for requests still waiting for a shared ride.

    Frequency: Every 5 minutes
    Covers pending requests and accepted initiators still alone in their
    ride. Requests stay eligible until the expiry sweep retires them.
    """

    def __init__(self):
        super().__init__("RematchSweep")
        self.matchmaking_service = MatchmakingService()

    async def _run(self) -> dict:
        db = get_db()
        stats = {"attempted": 0, "matched": 0, "failed": 0}

        waiting = await db.ride_requests.find(
            {
                "status": {
                    "$in": [RideRequestStatus.PENDING, RideRequestStatus.ACCEPTED]
                }
            }
        ).to_list(None)
        waiting.sort(key=lambda r: r["created_at"])

        for request in waiting:
            request_id = request.get("request_id")
            try:
                ride_id = request.get("ride_id")
                if not ride_id:
                    continue

                ride = await self.matchmaking_service.get_ride(ride_id)
                if ride is None or ride.status != RideStatus.MATCHING or not ride.has_free_seat:
                    continue

                # Membership may have changed earlier in this sweep
                if not await self.matchmaking_service.is_eligible(RideRequest(**request)):
                    continue

                stats["attempted"] += 1
                result = await self.matchmaking_service.attempt_match(request_id)
                if result.matched:
                    stats["matched"] += 1
            except Exception as e:
                stats["failed"] += 1
                logger.error(f"[{self.name}] Error rematching request {request_id}: {e}")

        if stats["attempted"]:
            logger.info(
                f"[{self.name}] Sweep summary: attempted={stats['attempted']}, "
                f"matched={stats['matched']}, failed={stats['failed']}"
            )
        return stats


expiry_sweep_job = ExpirySweepJob()
rematch_sweep_job = RematchSweepJob()
