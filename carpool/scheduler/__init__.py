"""
Scheduler Package

Lifecycle sweeps run by the carpool worker.
"""

from carpool.scheduler.jobs import (
    ExpirySweepJob,
    RematchSweepJob,
    ScheduledJob,
    expiry_sweep_job,
    rematch_sweep_job,
)

__all__ = [
    "ScheduledJob",
    "ExpirySweepJob",
    "RematchSweepJob",
    "expiry_sweep_job",
    "rematch_sweep_job",
]
