"""
Dramatiq worker entry point.

Usage:
    dramatiq jobs.worker --processes 2 --threads 4
"""

import dramatiq
from loguru import logger

from app.utils.logging import setup_logging

setup_logging("worker")

from jobs.async_runner import run_async  # noqa: E402
from jobs.broker import broker  # noqa: E402
from jobs.context import get_context  # noqa: E402
from jobs.tasks.cycle_tasks import ACTORS  # noqa: E402


class RecoverJobsOnBoot(dramatiq.Middleware):
    """Rebuild lost jobs from the store once the worker process is up."""

    def after_worker_boot(self, broker: dramatiq.Broker, worker: dramatiq.Worker) -> None:
        context = get_context()
        try:
            run_async(context.recovery.recover_jobs())
        except Exception as e:
            logger.exception(f"Startup job recovery failed: {e}")
            context.metrics.record_critical_error("worker:recovery", str(e))


broker.add_middleware(RecoverJobsOnBoot())

__all__ = ["ACTORS", "broker"]
