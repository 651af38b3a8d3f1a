"""
Periodic scheduler process.

Runs job recovery, contribution reminders and queue-health snapshots on
an APScheduler AsyncIOScheduler and serves the health endpoints. Cycle
jobs themselves run in the dramatiq workers.

Usage:
    python -m jobs.scheduler
"""

import asyncio
import signal
import sys

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from app.config.settings import settings
from app.utils.datetime_utils import utc_now
from app.utils.logging import setup_logging
from jobs.context import AppContext, build_context
from jobs.health import create_health_app, start_health_server, stop_health_server


async def run_recovery(context: AppContext) -> None:
    """Rebuild lost jobs from the store."""
    try:
        await context.recovery.recover_jobs()
    except Exception as e:
        logger.exception(f"Job recovery failed: {e}")
        context.metrics.record_critical_error("scheduler:recovery", str(e))


async def send_reminders(context: AppContext) -> None:
    """Queue contribution reminders for upcoming cycles."""
    try:
        queued = await context.reminders.send_contribution_reminders(utc_now())
        logger.info(f"Queued {queued} contribution reminder(s)")
    except Exception as e:
        logger.exception(f"Contribution reminders failed: {e}")
        context.metrics.record_critical_error("scheduler:reminders", str(e))


async def record_queue_health(context: AppContext) -> None:
    """Snapshot queue depth and circuit state into the metrics recorder."""
    try:
        depth = await context.queue.depth()
    except Exception as e:
        logger.error(f"Queue health snapshot failed: {e}")
        context.metrics.record_queue_health({"error": str(e)})
        return
    context.metrics.record_queue_health({**depth, "circuit": context.breaker.state.value})


def create_scheduler(context: AppContext) -> AsyncIOScheduler:
    """Register the periodic jobs."""
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        run_recovery,
        "interval",
        minutes=context.settings.recovery_interval_minutes,
        args=[context],
        id="job_recovery",
        name="Job recovery",
        next_run_time=utc_now(),
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        send_reminders,
        "cron",
        hour=context.settings.reminder_hour_utc,
        minute=0,
        args=[context],
        id="contribution_reminders",
        name="Contribution reminders",
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        record_queue_health,
        "interval",
        minutes=1,
        args=[context],
        id="queue_health",
        name="Queue health snapshot",
        max_instances=1,
        coalesce=True,
    )
    return scheduler


async def main() -> None:
    """Run the scheduler until SIGTERM/SIGINT."""
    setup_logging("scheduler")

    context = build_context()
    scheduler = create_scheduler(context)
    scheduler.start()
    logger.info(f"Scheduler started with {len(scheduler.get_jobs())} periodic jobs")

    runner = await start_health_server(
        create_health_app(scheduler, context.queue, context.breaker, context.metrics),
        port=settings.health_check_port,
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    try:
        await stop.wait()
        logger.info("Shutdown signal received")
    finally:
        scheduler.shutdown(wait=False)
        await stop_health_server(runner)
        await context.close()
        logger.info("Scheduler stopped")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except Exception as e:
        logger.exception(f"Scheduler crashed: {e}")
        sys.exit(1)
