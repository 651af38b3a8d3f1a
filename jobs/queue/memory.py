"""
In-process job queue.

Complete JobQueue implementation held in memory, driven by an injectable
clock. Backs the test suite and single-process test-mode runs.
"""

import asyncio
import time
import uuid
from collections import deque
from collections.abc import Callable
from typing import Any

from loguru import logger

from app.services.metrics_service import MetricsRecorder
from jobs.queue.base import (
    GROUP_EXCLUSIVE_KINDS,
    Job,
    JobKind,
    JobOptions,
    JobPayload,
    JobQueue,
    JobState,
    backoff_delay,
)

PENDING_STATES = (JobState.DELAYED, JobState.WAITING)


class MemoryJobQueue(JobQueue):
    """Job queue with delayed jobs, leases, retries and failed-job retention."""

    def __init__(
        self,
        lease_seconds: float = 300.0,
        concurrency: int = 5,
        failed_retention: int = 1000,
        clock: Callable[[], float] = time.time,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        """
        Initialize queue.

        Args:
            lease_seconds: Lease length before an active job counts as stalled
            concurrency: Max jobs processed at once per queue name
            failed_retention: Max failed jobs kept for inspection
            clock: Wall clock in epoch seconds (injectable for tests)
            metrics: Recorder counting created jobs
        """
        self.lease_seconds = lease_seconds
        self.concurrency = concurrency
        self._clock = clock
        self.metrics = metrics
        self._jobs: dict[str, Job] = {}
        self._leases: dict[str, tuple[str, float]] = {}
        self._failed: deque[Job] = deque(maxlen=failed_retention)
        self._completed = 0
        self._semaphores: dict[str, asyncio.Semaphore] = {}

    async def enqueue(
        self,
        kind: JobKind,
        payload: JobPayload,
        options: JobOptions | None = None,
        job_id: str | None = None,
    ) -> Job | None:
        """Enqueue a job; duplicate pending ids are rejected."""
        options = options or JobOptions()
        job_id = job_id or f"{kind.value}:{payload.group_id}:{uuid.uuid4().hex}"
        if job_id in self._jobs:
            logger.debug(f"Job {job_id} already queued, skipping duplicate enqueue")
            return None

        now = self._clock()
        job = Job(
            job_id=job_id,
            kind=kind,
            payload=payload,
            options=options,
            state=JobState.DELAYED if options.delay_ms > 0 else JobState.WAITING,
            run_at=now + options.delay_ms / 1000,
        )
        self._jobs[job_id] = job
        self._record_created(job)
        logger.debug(f"Enqueued {kind.value} job {job_id} (delay {options.delay_ms}ms)")
        return job

    def due_jobs(self) -> list[Job]:
        """Pending jobs whose run time has come, oldest first."""
        now = self._clock()
        due = [
            job
            for job in self._jobs.values()
            if job.state in PENDING_STATES and job.run_at <= now
        ]
        return sorted(due, key=lambda j: j.run_at)

    async def lease(self, job: Job) -> bool:
        """Claim a job; group-exclusive kinds also take the group lease."""
        current = self._jobs.get(job.job_id)
        if current is not job or job.state not in PENDING_STATES:
            job.state = JobState.SUPERSEDED
            return False

        now = self._clock()
        if job.kind in GROUP_EXCLUSIVE_KINDS:
            holder = self._leases.get(job.group_id)
            if holder is not None and holder[0] != job.job_id and holder[1] > now:
                logger.debug(
                    f"Group {job.group_id} lease held by {holder[0]}, "
                    f"cannot start {job.job_id}"
                )
                return False
            self._leases[job.group_id] = (job.job_id, now + self.lease_seconds)

        job.state = JobState.ACTIVE
        job.attempts_made += 1
        job.lease_expires_at = now + self.lease_seconds
        return True

    async def ack(self, job: Job) -> None:
        """Complete a job (or drop a superseded/skipped one)."""
        if job.state == JobState.SUPERSEDED:
            job.state = JobState.COMPLETED
            return
        self._release(job)
        if self._jobs.get(job.job_id) is job:
            del self._jobs[job.job_id]
        if job.state == JobState.ACTIVE:
            self._completed += 1
        job.state = JobState.COMPLETED

    async def fail(self, job: Job, error: BaseException | str) -> bool:
        """Record a failed attempt; retry with backoff or retain as failed."""
        job.errors.append(str(error))
        self._release(job)

        if job.attempts_made < job.options.attempts:
            delay_ms = backoff_delay(job.options, job.attempts_made)
            job.state = JobState.DELAYED
            job.run_at = self._clock() + delay_ms / 1000
            logger.warning(
                f"Job {job.job_id} failed (attempt {job.attempts_made}/"
                f"{job.options.attempts}), retrying in {delay_ms}ms: {error}"
            )
            return True

        self._retain_failed(job)
        logger.error(
            f"Job {job.job_id} failed permanently after {job.attempts_made} attempts: {error}"
        )
        return False

    async def remove_pending(self, kind: JobKind, group_id: str) -> int:
        """Remove delayed/waiting jobs of a kind for a group."""
        doomed = [
            job_id
            for job_id, job in self._jobs.items()
            if job.kind == kind and job.group_id == group_id and job.state in PENDING_STATES
        ]
        for job_id in doomed:
            self._jobs.pop(job_id).state = JobState.SUPERSEDED
        if doomed:
            logger.debug(f"Removed {len(doomed)} pending {kind.value} job(s) for group {group_id}")
        return len(doomed)

    async def pending_jobs(self, kind: JobKind | None = None) -> list[Job]:
        return [
            job
            for job in self._jobs.values()
            if job.state in PENDING_STATES and (kind is None or job.kind == kind)
        ]

    async def is_in_flight(self, group_id: str) -> bool:
        holder = self._leases.get(group_id)
        return holder is not None and holder[1] > self._clock()

    async def failed_jobs(self, limit: int = 100) -> list[Job]:
        return list(reversed(self._failed))[:limit]

    async def requeue_stalled(self) -> int:
        """Return jobs whose lease expired mid-processing to the queue."""
        now = self._clock()
        stalled = [
            job
            for job in self._jobs.values()
            if job.state == JobState.ACTIVE
            and job.lease_expires_at is not None
            and job.lease_expires_at <= now
        ]
        for job in stalled:
            self._release(job)
            job.errors.append("stalled: lease expired while active")
            if job.attempts_made >= job.options.attempts:
                self._retain_failed(job)
                continue
            job.state = JobState.WAITING
            job.run_at = now
            logger.warning(f"Requeued stalled job {job.job_id}")
        return len(stalled)

    async def depth(self) -> dict[str, int]:
        counts = {state.value: 0 for state in (JobState.DELAYED, JobState.WAITING, JobState.ACTIVE)}
        for job in self._jobs.values():
            counts[job.state.value] += 1
        counts["failed"] = len(self._failed)
        counts["completed"] = self._completed
        return counts

    async def run_due(self, dispatcher: Any) -> int:
        """
        Dispatch every due job, bounded per queue by the concurrency limit.

        Dispatcher exceptions are already recorded on the job through
        ``fail``; they are logged here and not re-raised.

        Args:
            dispatcher: Object with ``async dispatch(job)``

        Returns:
            Number of jobs dispatched
        """
        jobs = self.due_jobs()

        async def _run(job: Job) -> None:
            async with self._semaphore(job.queue_name):
                try:
                    await dispatcher.dispatch(job)
                except Exception as e:
                    logger.debug(f"Job {job.job_id} raised {type(e).__name__}: {e}")

        await asyncio.gather(*(_run(job) for job in jobs))
        return len(jobs)

    def _semaphore(self, queue_name: str) -> asyncio.Semaphore:
        if queue_name not in self._semaphores:
            self._semaphores[queue_name] = asyncio.Semaphore(self.concurrency)
        return self._semaphores[queue_name]

    def _release(self, job: Job) -> None:
        holder = self._leases.get(job.group_id)
        if holder is not None and holder[0] == job.job_id:
            del self._leases[job.group_id]
        job.lease_expires_at = None

    def _retain_failed(self, job: Job) -> None:
        job.state = JobState.FAILED
        self._jobs.pop(job.job_id, None)
        self._failed.append(job)
