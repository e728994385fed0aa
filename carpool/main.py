"""
Carpool Worker

Runs the lifecycle sweeps on fixed intervals.

Each sweep can be switched off with ENABLE_EXPIRY_SWEEP /
ENABLE_REMATCH_SWEEP so the two can run in separate processes.

Run with: python -m carpool.main
"""

import asyncio
import logging
import signal
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from carpool.config import settings
from carpool.database import close_db, init_db
from carpool.scheduler import expiry_sweep_job, rematch_sweep_job

logger = logging.getLogger(__name__)


def create_scheduler(
    enable_expiry: Optional[bool] = None,
    enable_rematch: Optional[bool] = None,
) -> AsyncIOScheduler:
    """Register the enabled sweeps; max_instances=1 keeps runs from overlapping."""
    if enable_expiry is None:
        enable_expiry = settings.enable_expiry_sweep
    if enable_rematch is None:
        enable_rematch = settings.enable_rematch_sweep

    scheduler = AsyncIOScheduler()

    if enable_expiry:
        scheduler.add_job(
            expiry_sweep_job.execute,
            "interval",
            minutes=settings.expiry_sweep_interval_minutes,
            id="expiry_sweep",
            name="Expiry Sweep Job",
            max_instances=1,
            coalesce=True,  # Skip if previous run is still executing
        )

    if enable_rematch:
        scheduler.add_job(
            rematch_sweep_job.execute,
            "interval",
            minutes=settings.rematch_sweep_interval_minutes,
            id="rematch_sweep",
            name="Rematch Sweep Job",
            max_instances=1,
            coalesce=True,
        )

    return scheduler


async def main():
    await init_db()
    scheduler = create_scheduler()
    scheduler.start()

    jobs = ", ".join(job.name for job in scheduler.get_jobs()) or "none"
    logger.info(f"Carpool worker started with jobs: {jobs}")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Signal handlers are unavailable on some platforms (Windows)
            pass

    try:
        await stop_event.wait()
    finally:
        scheduler.shutdown()
        await close_db()
        logger.info("Carpool worker stopped")


def run():
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
    )
    asyncio.run(main())


if __name__ == "__main__":
    run()
