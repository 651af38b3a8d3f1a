"""
Cycle scheduler.

Decides when a group's next cycle job runs and keeps exactly one pending
run-cycle job per group. The stored next_cycle_date is the date members
agreed on and is never rewritten here; a past-due date only changes the
job delay.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from loguru import logger

from app.config.settings import Settings
from app.repositories.unit_of_work import UnitOfWork
from app.services.metrics_service import MetricsRecorder
from app.utils.datetime_utils import ensure_utc, utc_now
from jobs.queue.base import JobKind, JobOptions, JobQueue, RunCyclePayload, queue_name_for


@dataclass(frozen=True)
class ScheduledCycle:
    """Result of a successful scheduling attempt."""

    group_id: str
    job_id: str
    run_at: datetime
    delay_seconds: float
    replaced_jobs: int


def run_cycle_job_id(group_id: str, cycle_date: datetime) -> str:
    """Deterministic id of the run-cycle job for one group tick."""
    return f"run-cycle:{group_id}:{int(ensure_utc(cycle_date).timestamp())}"


class SchedulerService:
    """Schedules run-cycle jobs."""

    def __init__(
        self,
        uow: UnitOfWork,
        queue: JobQueue,
        settings: Settings,
        metrics: MetricsRecorder,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.uow = uow
        self.queue = queue
        self.settings = settings
        self.metrics = metrics
        self.clock = clock

    def compute_delay(self, next_cycle_date: datetime, now: datetime) -> tuple[datetime, float]:
        """
        Compute when the job should run.

        Past-due dates run at now + buffer; the delay never goes below the
        configured minimum.

        Args:
            next_cycle_date: Stored next cycle date
            now: Current time

        Returns:
            (run_at, delay in seconds)
        """
        scheduled_for = ensure_utc(next_cycle_date)
        if scheduled_for <= now:
            scheduled_for = now + timedelta(seconds=self.settings.schedule_past_due_buffer_seconds)
        delay = max(
            (scheduled_for - now).total_seconds(),
            float(self.settings.schedule_min_delay_seconds),
        )
        return now + timedelta(seconds=delay), delay

    async def schedule_next(
        self, group_id: str, allow_in_flight: bool = False
    ) -> ScheduledCycle | None:
        """
        Schedule the next cycle of a group.

        Args:
            group_id: Group ID
            allow_in_flight: Skip the in-flight check (the caller is the
                in-flight job itself)

        Returns:
            The scheduled job, or None when scheduling was refused or skipped
        """
        metrics_key = MetricsRecorder.key(queue_name_for(JobKind.RUN_CYCLE), JobKind.RUN_CYCLE.value)

        if not allow_in_flight and await self.queue.is_in_flight(group_id):
            logger.info(f"Group {group_id} has a job in flight, not scheduling")
            self.metrics.record_job_skipped(metrics_key)
            return None

        async with self.uow.transaction() as repos:
            group = await repos.groups.get_by_id(group_id)

        if group is None:
            logger.warning(f"Cannot schedule group {group_id}: not found")
            return None
        if not group.is_active:
            logger.info(f"Not scheduling group {group_id}: status {group.status}")
            return None
        if group.cycle_started:
            logger.info(f"Not scheduling group {group_id}: cycle already started")
            return None
        if group.cycles_completed:
            logger.info(f"Not scheduling group {group_id}: all cycles completed")
            return None
        if group.next_cycle_date is None:
            logger.warning(f"Not scheduling group {group_id}: no next cycle date")
            return None

        now = self.clock()
        run_at, delay = self.compute_delay(group.next_cycle_date, now)
        if ensure_utc(group.next_cycle_date) <= now:
            logger.info(
                f"Group {group_id} cycle date {group.next_cycle_date.isoformat()} "
                f"is past due, running at {run_at.isoformat()}"
            )

        replaced = await self.queue.remove_pending(JobKind.RUN_CYCLE, group_id)
        job_id = run_cycle_job_id(group_id, group.next_cycle_date)
        job = await self.queue.enqueue(
            JobKind.RUN_CYCLE,
            RunCyclePayload(group_id=group_id),
            JobOptions(
                delay_ms=int(delay * 1000),
                attempts=self.settings.job_default_attempts,
                backoff_ms=self.settings.job_backoff_base_ms,
                max_backoff_ms=self.settings.job_backoff_max_ms,
            ),
            job_id=job_id,
        )
        if job is None:
            logger.info(f"Run-cycle job {job_id} already queued")
            return None

        self.metrics.record_job_scheduled(metrics_key)
        logger.info(
            f"Scheduled group {group_id} cycle {group.current_cycle_number} "
            f"in {delay:.0f}s (job {job_id}, replaced {replaced})"
        )
        return ScheduledCycle(group_id, job_id, run_at, delay, replaced)

    async def schedule_all(self) -> int:
        """
        Schedule every schedulable group.

        Per-group failures are logged and do not stop the pass.

        Returns:
            Number of groups scheduled
        """
        async with self.uow.transaction() as repos:
            groups = await repos.groups.find_schedulable()

        scheduled = 0
        for group in groups:
            try:
                if await self.schedule_next(group.id):
                    scheduled += 1
            except Exception as e:
                logger.error(f"Failed to schedule group {group.id}: {e}")
        logger.info(f"Scheduled {scheduled}/{len(groups)} group(s)")
        return scheduled
