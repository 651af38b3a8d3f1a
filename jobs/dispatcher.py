"""
Job dispatcher.

Runs one job through its handler: lease -> handler -> ack. Configuration
errors are acked and reported (retrying cannot help); every other error
is handed back to the queue with ``fail`` and re-raised so the runtime
retries with backoff. A group-exclusive job that finds its group busy is
deferred the same way, except run-cycle jobs, which are dropped as
duplicates.
"""

import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from loguru import logger

from app.services.metrics_service import MetricsRecorder
from app.utils.exceptions import InvalidJobPayloadError, JobDeferredError, is_configuration_error
from jobs.queue.base import Job, JobKind, JobQueue, JobState

Handler = Callable[[Any], Awaitable[Any]]


class DispatchOutcome(str, Enum):
    """How a dispatch ended (when it did not raise)."""

    COMPLETED = "completed"
    SKIPPED = "skipped"
    REJECTED = "rejected"


class JobDispatcher:
    """Maps job kinds to async handlers."""

    def __init__(
        self,
        queue: JobQueue,
        metrics: MetricsRecorder,
        handlers: dict[JobKind, Handler] | None = None,
    ) -> None:
        self.queue = queue
        self.metrics = metrics
        self.handlers: dict[JobKind, Handler] = dict(handlers or {})

    def register(self, kind: JobKind, handler: Handler) -> None:
        self.handlers[kind] = handler

    async def dispatch(self, job: Job) -> DispatchOutcome:
        """
        Process one job.

        Args:
            job: Job to run

        Returns:
            Dispatch outcome

        Raises:
            Exception: Whatever the handler raised, after ``fail`` recorded it
        """
        key = MetricsRecorder.key(job.queue_name, job.kind.value)

        if not await self.queue.lease(job):
            return await self._not_leased(job, key)

        handler = self.handlers.get(job.kind)
        if handler is None:
            error = InvalidJobPayloadError(f"No handler registered for {job.kind.value}")
            return await self._reject(job, key, error)

        log = logger.bind(job_id=job.job_id, group_id=job.group_id, kind=job.kind.value)
        self.metrics.record_job_started(key)
        if job.payload.test_mode:
            log.info(f"Running {job.kind.value} job {job.job_id} in test mode")
        log.debug(
            f"Processing {job.kind.value} job {job.job_id} "
            f"(attempt {job.attempts_made}/{job.options.attempts})"
        )

        started = time.monotonic()
        try:
            await handler(job.payload)
        except Exception as e:
            if is_configuration_error(e):
                return await self._reject(job, key, e)
            will_retry = await self.queue.fail(job, e)
            self.metrics.record_job_failure(key, str(e))
            log.error(
                f"Job {job.job_id} failed: {type(e).__name__}: {e} "
                f"({'will retry' if will_retry else 'retained as failed'})"
            )
            raise

        await self.queue.ack(job)
        self.metrics.record_job_success(key, (time.monotonic() - started) * 1000)
        log.debug(f"Job {job.job_id} completed")
        return DispatchOutcome.COMPLETED

    async def _not_leased(self, job: Job, key: str) -> DispatchOutcome:
        if job.state == JobState.SUPERSEDED:
            logger.debug(f"Job {job.job_id} was superseded, dropping")
            await self.queue.ack(job)
            self.metrics.record_job_skipped(key)
            return DispatchOutcome.SKIPPED

        if job.kind == JobKind.RUN_CYCLE:
            logger.info(
                f"Group {job.group_id} already has a job in flight, "
                f"skipping run-cycle job {job.job_id}"
            )
            await self.queue.ack(job)
            self.metrics.record_job_skipped(key)
            return DispatchOutcome.SKIPPED

        logger.info(f"Group {job.group_id} busy, deferring {job.kind.value} job {job.job_id}")
        error = JobDeferredError(f"Group {job.group_id} lease held by another job")
        await self.queue.fail(job, error)
        self.metrics.record_queue_event(job.queue_name, "deferred")
        raise error

    async def _reject(self, job: Job, key: str, error: Exception) -> DispatchOutcome:
        await self.queue.ack(job)
        self.metrics.record_job_failure(key, str(error))
        self.metrics.record_critical_error(key, f"Job {job.job_id}: {error}")
        logger.error(f"Job {job.job_id} rejected without retry: {error}")
        return DispatchOutcome.REJECTED
