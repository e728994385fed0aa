"""
Tests for the lifecycle sweeps and the scheduler wiring.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from carpool.main import create_scheduler
from carpool.models.match import MatchReason, MatchResult
from carpool.models.ride import RideStatus
from carpool.models.ride_request import RideRequestStatus
from carpool.scheduler.jobs import ExpirySweepJob, RematchSweepJob, ScheduledJob


@pytest.fixture
def expiry_job(seed):
    return ExpirySweepJob()


@pytest.fixture
def rematch_job(seed, router):
    job = RematchSweepJob()
    job.matchmaking_service.routing_service = router
    return job


class TestExpirySweep:

    @pytest.mark.asyncio
    async def test_stale_pending_request_is_cancelled(self, expiry_job, seed, fake_db):
        """A lone request 40 minutes past its departure is retired with its ride."""
        ride, request = seed.solo(
            departure=seed.now - timedelta(minutes=40),
            status=RideRequestStatus.PENDING,
        )

        stats = await expiry_job._run()

        assert stats["cancelled_requests"] == 1
        assert stats["completed_rides"] == 1
        stored = seed.request_doc(request.request_id)
        assert stored["status"] == RideRequestStatus.CANCELLED
        assert stored["resolved_at"] is not None

        stored_ride = seed.ride_doc(ride.ride_id)
        assert stored_ride["status"] == RideStatus.COMPLETED
        assert stored_ride["current_passenger_count"] == 0

        notifications = fake_db.notifications.all({"user_id": request.user_id})
        assert [n["type"] for n in notifications] == ["ride_cancelled"]

    @pytest.mark.asyncio
    async def test_request_inside_grace_period_is_kept(self, expiry_job, seed):
        _, request = seed.solo(
            departure=seed.now - timedelta(minutes=20),
            status=RideRequestStatus.PENDING,
        )

        stats = await expiry_job._run()

        assert stats["cancelled_requests"] == 0
        assert seed.request_doc(request.request_id)["status"] == RideRequestStatus.PENDING

    @pytest.mark.asyncio
    async def test_accepted_requests_complete_with_their_ride(self, expiry_job, seed, fake_db):
        departure = seed.now - timedelta(minutes=40)
        ride = seed.ride(count=2, departure=departure)
        a = seed.request(ride.ride_id, departure=departure, is_initiator=True)
        b = seed.request(ride.ride_id, departure=departure)

        stats = await expiry_job._run()

        assert stats["started_rides"] == 1
        assert stats["completed_requests"] == 2
        assert stats["completed_rides"] == 1
        for request in (a, b):
            assert seed.request_doc(request.request_id)["status"] == RideRequestStatus.COMPLETED

        stored = seed.ride_doc(ride.ride_id)
        assert stored["status"] == RideStatus.COMPLETED
        assert stored["completed_at"] is not None

        completed = fake_db.notifications.all({"type": "ride_completed"})
        assert sorted(n["user_id"] for n in completed) == sorted([a.user_id, b.user_id])

    @pytest.mark.asyncio
    async def test_departed_group_starts(self, expiry_job, seed):
        departure = seed.now - timedelta(minutes=5)
        ride = seed.ride(count=2, departure=departure)
        seed.request(ride.ride_id, departure=departure, is_initiator=True)
        seed.request(ride.ride_id, departure=departure)
        solo, _ = seed.solo(departure=departure)

        stats = await expiry_job._run()

        assert stats["started_rides"] == 1
        assert seed.ride_doc(ride.ride_id)["status"] == RideStatus.IN_PROGRESS
        # A single passenger has nobody to share with; it waits for expiry
        assert seed.ride_doc(solo.ride_id)["status"] == RideStatus.MATCHING

    @pytest.mark.asyncio
    async def test_ride_with_remaining_passengers_stays_open(self, expiry_job, seed):
        ride = seed.ride(count=2)
        seed.request(ride.ride_id, departure=seed.now - timedelta(minutes=40))
        seed.request(ride.ride_id)

        stats = await expiry_job._run()

        assert stats["completed_requests"] == 1
        assert stats["completed_rides"] == 0
        stored = seed.ride_doc(ride.ride_id)
        assert stored["status"] == RideStatus.MATCHING
        assert stored["current_passenger_count"] == 1

    @pytest.mark.asyncio
    async def test_second_sweep_changes_nothing(self, expiry_job, seed, fake_db):
        seed.solo(departure=seed.now - timedelta(minutes=40), status=RideRequestStatus.PENDING)
        departure = seed.now - timedelta(minutes=40)
        ride = seed.ride(count=2, departure=departure)
        seed.request(ride.ride_id, departure=departure)
        seed.request(ride.ride_id, departure=departure)

        await expiry_job._run()
        notifications = len(fake_db.notifications.all())
        rides = fake_db.rides.all()

        stats = await expiry_job._run()

        assert not any(stats.values())
        assert len(fake_db.notifications.all()) == notifications
        assert fake_db.rides.all() == rides

    @pytest.mark.asyncio
    async def test_failing_record_does_not_stop_sweep(self, expiry_job, seed):
        departure = seed.now - timedelta(minutes=40)
        _, first = seed.solo(departure=departure, status=RideRequestStatus.PENDING)
        _, second = seed.solo(departure=departure, status=RideRequestStatus.PENDING)

        original = expiry_job._expire_request

        async def flaky(db, request, now, stats):
            if request["request_id"] == first.request_id:
                raise RuntimeError("boom")
            return await original(db, request, now, stats)

        with patch.object(expiry_job, "_expire_request", side_effect=flaky):
            stats = await expiry_job._run()

        assert stats["failed"] == 1
        assert stats["cancelled_requests"] == 1
        assert seed.request_doc(first.request_id)["status"] == RideRequestStatus.PENDING
        assert seed.request_doc(second.request_id)["status"] == RideRequestStatus.CANCELLED


class TestRematchSweep:

    @pytest.mark.asyncio
    async def test_pending_request_is_matched(self, rematch_job, seed):
        target, _ = seed.solo(km_north=11.0)
        _, waiting = seed.solo(km_north=10.0, status=RideRequestStatus.PENDING)

        stats = await rematch_job._run()

        assert stats == {"attempted": 2, "matched": 1, "failed": 0}
        stored = seed.request_doc(waiting.request_id)
        assert stored["status"] == RideRequestStatus.ACCEPTED
        assert stored["ride_id"] == target.ride_id

    @pytest.mark.asyncio
    async def test_solo_initiator_retried_after_provider_outage(self, rematch_job, seed, router):
        """A request created while routing was down is matched by a later sweep."""
        ride_b, rb = seed.solo(km_north=19.0)
        ride_a, ra = seed.solo(km_north=17.0)

        router.fail_route = True
        result = await rematch_job.matchmaking_service.attempt_match(ra.request_id)
        assert result.reason == MatchReason.PROVIDER_UNAVAILABLE
        assert seed.request_doc(ra.request_id)["status"] == RideRequestStatus.ACCEPTED

        router.fail_route = False
        stats = await rematch_job._run()

        assert stats["matched"] == 1
        assert stats["failed"] == 0
        shared = seed.request_doc(ra.request_id)["ride_id"]
        assert seed.request_doc(rb.request_id)["ride_id"] == shared
        assert shared in (ride_a.ride_id, ride_b.ride_id)
        assert seed.ride_doc(shared)["current_passenger_count"] == 2
        assert seed.active_count(shared) == 2

    @pytest.mark.asyncio
    async def test_initiator_in_a_group_is_not_retried(self, rematch_job, seed):
        ride = seed.ride(count=2)
        seed.request(ride.ride_id, km_north=10.0, is_initiator=True)
        seed.request(ride.ride_id, km_north=10.5)

        with patch.object(rematch_job.matchmaking_service, "attempt_match") as attempt:
            stats = await rematch_job._run()

        attempt.assert_not_called()
        assert stats["attempted"] == 0

    @pytest.mark.asyncio
    async def test_second_sweep_assigns_nothing(self, rematch_job, seed, fake_db):
        seed.solo(km_north=11.0)
        seed.solo(km_north=10.0, status=RideRequestStatus.PENDING)

        await rematch_job._run()
        notifications = len(fake_db.notifications.all())

        stats = await rematch_job._run()

        assert stats["attempted"] == 0
        assert stats["matched"] == 0
        assert len(fake_db.notifications.all()) == notifications

    @pytest.mark.asyncio
    async def test_unmatched_request_stays_pending(self, rematch_job, seed):
        _, waiting = seed.solo(status=RideRequestStatus.PENDING)

        stats = await rematch_job._run()

        assert stats == {"attempted": 1, "matched": 0, "failed": 0}
        assert seed.request_doc(waiting.request_id)["status"] == RideRequestStatus.PENDING

    @pytest.mark.asyncio
    async def test_skips_request_whose_ride_is_not_open(self, rematch_job, seed):
        ride = seed.ride(count=1, status=RideStatus.IN_PROGRESS)
        seed.request(ride.ride_id, status=RideRequestStatus.PENDING)

        with patch.object(rematch_job.matchmaking_service, "attempt_match") as attempt:
            stats = await rematch_job._run()

        attempt.assert_not_called()
        assert stats["attempted"] == 0

    @pytest.mark.asyncio
    async def test_failing_record_does_not_stop_sweep(self, rematch_job, seed):
        _, first = seed.solo(km_north=10.0, status=RideRequestStatus.PENDING)
        _, second = seed.solo(km_north=10.5, status=RideRequestStatus.PENDING)

        with patch.object(
            rematch_job.matchmaking_service,
            "attempt_match",
            side_effect=[
                RuntimeError("boom"),
                MatchResult.for_reason(MatchReason.MATCHED, "ride-x"),
            ],
        ) as attempt:
            stats = await rematch_job._run()

        assert stats == {"attempted": 2, "matched": 1, "failed": 1}
        assert [call.args[0] for call in attempt.await_args_list] == [
            first.request_id, second.request_id
        ]


class TestScheduledJob:

    class BrokenJob(ScheduledJob):
        async def _run(self):
            raise RuntimeError("database unreachable")

    @pytest.mark.asyncio
    async def test_execute_records_failure(self):
        job = self.BrokenJob("Broken")

        await job.execute()

        assert job.execution_count == 1
        assert job.failure_count == 1
        assert job.last_error == "database unreachable"
        assert job.last_execution is None

    @pytest.mark.asyncio
    async def test_alerts_after_repeated_failures(self):
        job = self.BrokenJob("Broken")

        with patch.object(job, "_alert_failure") as alert:
            for _ in range(3):
                await job.execute()

        assert job.failure_count == 3
        alert.assert_called_once()

    @pytest.mark.asyncio
    async def test_execute_keeps_stats(self, expiry_job):
        await expiry_job.execute()

        status = expiry_job.status()
        assert status["name"] == "ExpirySweep"
        assert status["failure_count"] == 0
        assert status["last_stats"]["failed"] == 0
        assert status["last_execution"] is not None


class TestCreateScheduler:

    def test_registers_both_sweeps(self):
        scheduler = create_scheduler(enable_expiry=True, enable_rematch=True)
        jobs = {job.id: job for job in scheduler.get_jobs()}

        assert set(jobs) == {"expiry_sweep", "rematch_sweep"}
        assert jobs["expiry_sweep"].trigger.interval == timedelta(minutes=1)
        assert jobs["rematch_sweep"].trigger.interval == timedelta(minutes=5)
        assert all(job.max_instances == 1 for job in jobs.values())
        assert all(job.coalesce for job in jobs.values())

    def test_sweeps_can_be_disabled(self):
        scheduler = create_scheduler(enable_expiry=False, enable_rematch=True)
        assert [job.id for job in scheduler.get_jobs()] == ["rematch_sweep"]
