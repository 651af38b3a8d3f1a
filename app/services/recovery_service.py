"""
Job recovery.

Rebuilds the job queue from database state after a restart or a lost
message: schedulable groups get their next cycle scheduled, cycles left
mid-execution are resumed, and failed payments below the retry cap get
their retry jobs back. Runs on worker start and periodically.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from loguru import logger

from app.config.constants import (
    RECOVERY_IN_PROGRESS_DELAY_SECONDS,
    RECOVERY_RETRY_BASE_DELAY_SECONDS,
    RECOVERY_RETRY_BATCH_SIZE,
    RECOVERY_RETRY_STAGGER_SECONDS,
)
from app.config.settings import Settings
from app.repositories.unit_of_work import UnitOfWork
from app.services.metrics_service import MetricsRecorder
from app.services.scheduler_service import SchedulerService
from app.utils.datetime_utils import utc_now
from jobs.queue.base import JobKind, JobOptions, JobQueue, RetryPaymentPayload, RunCyclePayload


@dataclass
class RecoveryReport:
    """Counts from one recovery pass."""

    scheduled: int = 0
    resumed: int = 0
    retries: int = 0
    stalled: int = 0
    errors: int = 0


class RecoveryService:
    """Recreates lost jobs from the store."""

    def __init__(
        self,
        uow: UnitOfWork,
        queue: JobQueue,
        scheduler: SchedulerService,
        settings: Settings,
        metrics: MetricsRecorder,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.uow = uow
        self.queue = queue
        self.scheduler = scheduler
        self.settings = settings
        self.metrics = metrics
        self.clock = clock

    def _options(self, delay_seconds: int) -> JobOptions:
        return JobOptions(
            delay_ms=delay_seconds * 1000,
            attempts=self.settings.job_default_attempts,
            backoff_ms=self.settings.job_backoff_base_ms,
            max_backoff_ms=self.settings.job_backoff_max_ms,
        )

    async def recover_jobs(self) -> RecoveryReport:
        """
        Run a full recovery pass.

        Per-item failures are logged and counted; they do not stop the pass.

        Returns:
            Recovery counts
        """
        report = RecoveryReport()
        logger.info("Starting job recovery pass")

        report.stalled = await self.check_for_stuck_jobs()
        await self._recover_schedules(report)
        await self._recover_in_progress(report)
        await self._recover_retries(report)

        logger.info(
            f"Recovery pass done: scheduled={report.scheduled} resumed={report.resumed} "
            f"retries={report.retries} stalled={report.stalled} errors={report.errors}"
        )
        return report

    async def check_for_stuck_jobs(self) -> int:
        """Requeue jobs whose worker died mid-processing."""
        requeued = await self.queue.requeue_stalled()
        if requeued:
            logger.warning(f"Requeued {requeued} stalled job(s)")
            self.metrics.record_queue_event("all", "stalled", requeued)
        return requeued

    async def _recover_schedules(self, report: RecoveryReport) -> None:
        async with self.uow.transaction() as repos:
            groups = await repos.groups.find_schedulable()

        for group in groups:
            try:
                if await self.scheduler.schedule_next(group.id):
                    report.scheduled += 1
            except Exception as e:
                report.errors += 1
                logger.error(f"Recovery: failed to schedule group {group.id}: {e}")

    async def _recover_in_progress(self, report: RecoveryReport) -> None:
        async with self.uow.transaction() as repos:
            groups = await repos.groups.find_in_progress()
            unsettled: list[str] = []
            for group in groups:
                members = await repos.memberships.find_active_by_group(group.id)
                if any(not m.has_been_paid for m in members):
                    unsettled.append(group.id)

        stamp = int(self.clock().timestamp())
        pending = {job.group_id for job in await self.queue.pending_jobs(JobKind.RUN_CYCLE)}
        for group_id in unsettled:
            if group_id in pending:
                continue
            try:
                if await self.queue.is_in_flight(group_id):
                    continue
                job = await self.queue.enqueue(
                    JobKind.RUN_CYCLE,
                    RunCyclePayload(group_id=group_id),
                    self._options(RECOVERY_IN_PROGRESS_DELAY_SECONDS),
                    job_id=f"run-cycle:{group_id}:resume:{stamp}",
                )
                if job is not None:
                    report.resumed += 1
            except Exception as e:
                report.errors += 1
                logger.error(f"Recovery: failed to resume cycle of group {group_id}: {e}")

    async def _recover_retries(self, report: RecoveryReport) -> None:
        async with self.uow.transaction() as repos:
            payments = await repos.payments.find_retryable(self.settings.payment_max_retries)

        for index, payment in enumerate(payments):
            batch = index // RECOVERY_RETRY_BATCH_SIZE
            delay = RECOVERY_RETRY_BASE_DELAY_SECONDS + batch * RECOVERY_RETRY_STAGGER_SECONDS
            try:
                job = await self.queue.enqueue(
                    JobKind.RETRY_PAYMENT,
                    RetryPaymentPayload(group_id=payment.group_id, payment_id=payment.id),
                    self._options(delay),
                    job_id=f"retry-payment:{payment.id}:{payment.retry_count}",
                )
                if job is not None:
                    report.retries += 1
            except Exception as e:
                report.errors += 1
                logger.error(f"Recovery: failed to queue retry of payment {payment.id}: {e}")
