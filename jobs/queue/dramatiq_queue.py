"""
Dramatiq-backed job queue.

Messages travel through the dramatiq Redis broker; delivery delay and
retry backoff are dramatiq's. Bookkeeping the broker does not provide
lives in Redis next to it:

- ``jobs:id:<job_id>``        SET NX to the enqueue token, rejects
                              duplicate job ids
- ``jobs:pending`` (hash)     <job_id>:<token> -> job; a message whose
                              entry was removed is superseded and dropped
- ``jobs:active`` (hash)      <job_id>:<token> -> job with lease expiry,
                              scanned by requeue_stalled
- ``jobs:lease:<group_id>``   SET NX PX to <job_id>:<token>, one
                              group-exclusive job at a time
- ``jobs:failed`` (list)      capped list of permanently failed jobs

Every enqueue draws a fresh token. A stale message left behind when a job
id was superseded and enqueued again carries the old token, so it can
neither claim nor free the entries of the live job.
"""

import asyncio
import json
import time
import uuid
from typing import Any

import dramatiq
import redis.asyncio as redis
from loguru import logger

from app.services.metrics_service import MetricsRecorder
from app.utils.datetime_utils import utc_now
from app.utils.exceptions import JobQueueError
from app.utils.redis_utils import redis_key
from jobs.queue.base import (
    GROUP_EXCLUSIVE_KINDS,
    BackoffStrategy,
    Job,
    JobKind,
    JobOptions,
    JobPayload,
    JobQueue,
    JobState,
)

# Job ids stay reserved this long after their run time
JOB_ID_TTL_MS = 24 * 60 * 60 * 1000


class DramatiqJobQueue(JobQueue):
    """Production job queue on dramatiq + Redis."""

    def __init__(
        self,
        redis_client: redis.Redis,
        actors: dict[JobKind, dramatiq.Actor],
        lease_seconds: float = 300.0,
        failed_retention: int = 1000,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        """
        Initialize queue.

        Args:
            redis_client: Async Redis client (decode_responses=True)
            actors: Actor that executes each job kind
            lease_seconds: Lease length before an active job counts as stalled
            failed_retention: Max failed jobs kept in Redis
            metrics: Recorder counting created jobs
        """
        self.redis = redis_client
        self.actors = actors
        self.lease_seconds = lease_seconds
        self.failed_retention = failed_retention
        self.metrics = metrics
        self.pending_key = redis_key("jobs", "pending")
        self.active_key = redis_key("jobs", "active")
        self.failed_key = redis_key("jobs", "failed")
        self.completed_key = redis_key("jobs", "completed")

    @staticmethod
    def _id_key(job_id: str) -> str:
        return redis_key("jobs", "id", job_id)

    @staticmethod
    def _lease_key(group_id: str) -> str:
        return redis_key("jobs", "lease", group_id)

    @staticmethod
    def _entry(job: Job) -> str:
        return f"{job.job_id}:{job.token}"

    @staticmethod
    def _encode(job: Job, **extra: Any) -> str:
        return json.dumps(
            {
                **job.to_message(),
                "attempts_made": job.attempts_made,
                "run_at": job.run_at,
                **extra,
            }
        )

    @staticmethod
    def _decode(raw: str, state: JobState) -> Job:
        data = json.loads(raw)
        job = Job.from_message(data)
        job.attempts_made = int(data.get("attempts_made", 0))
        job.run_at = float(data.get("run_at", 0.0))
        job.lease_expires_at = data.get("lease_expires_at")
        job.state = state
        return job

    async def _send(self, job: Job, delay_ms: int, **extra: Any) -> None:
        actor = self.actors.get(job.kind)
        if actor is None:
            raise JobQueueError(f"No actor registered for {job.kind.value}")

        options = job.options
        if options.backoff == BackoffStrategy.FIXED:
            min_backoff = max_backoff = options.backoff_ms
        else:
            min_backoff, max_backoff = options.backoff_ms, options.max_backoff_ms

        try:
            await asyncio.to_thread(
                actor.send_with_options,
                args=(job.to_message(),),
                delay=delay_ms or None,
                max_retries=options.attempts - 1,
                min_backoff=min_backoff,
                max_backoff=max_backoff,
                **extra,
            )
        except Exception as e:
            raise JobQueueError(f"Failed to send job {job.job_id}: {e}") from e

    async def resend(self, job: Job, delay_ms: int, retries: int = 0) -> None:
        """Send a job again without touching its bookkeeping (throttled delivery)."""
        await self._send(job, delay_ms, retries=retries)

    async def enqueue(
        self,
        kind: JobKind,
        payload: JobPayload,
        options: JobOptions | None = None,
        job_id: str | None = None,
    ) -> Job | None:
        """Enqueue a job; duplicate job ids are rejected."""
        options = options or JobOptions()
        job_id = job_id or f"{kind.value}:{payload.group_id}:{uuid.uuid4().hex}"
        token = uuid.uuid4().hex

        reserved = await self.redis.set(
            self._id_key(job_id), token, nx=True, px=options.delay_ms + JOB_ID_TTL_MS
        )
        if not reserved:
            logger.debug(f"Job {job_id} already queued, skipping duplicate enqueue")
            return None

        job = Job(
            job_id=job_id,
            kind=kind,
            payload=payload,
            options=options,
            state=JobState.DELAYED if options.delay_ms > 0 else JobState.WAITING,
            run_at=time.time() + options.delay_ms / 1000,
            token=token,
        )
        await self.redis.hset(self.pending_key, self._entry(job), self._encode(job))
        try:
            await self._send(job, options.delay_ms)
        except JobQueueError:
            await self.redis.hdel(self.pending_key, self._entry(job))
            await self._forget_id(job)
            raise

        self._record_created(job)
        logger.debug(f"Enqueued {kind.value} job {job_id} (delay {options.delay_ms}ms)")
        return job

    async def lease(self, job: Job) -> bool:
        """Claim the pending entry, then the group lease."""
        if not await self.redis.hdel(self.pending_key, self._entry(job)):
            job.state = JobState.SUPERSEDED
            return False

        lease_ms = int(self.lease_seconds * 1000)
        if job.kind in GROUP_EXCLUSIVE_KINDS:
            key = self._lease_key(job.group_id)
            holder_value = self._entry(job)
            if not await self.redis.set(key, holder_value, nx=True, px=lease_ms):
                holder = await self.redis.get(key)
                if holder != holder_value:
                    logger.debug(f"Group {job.group_id} lease held by {holder}")
                    return False
                await self.redis.pexpire(key, lease_ms)

        job.state = JobState.ACTIVE
        job.lease_expires_at = time.time() + self.lease_seconds
        await self.redis.hset(
            self.active_key,
            self._entry(job),
            self._encode(job, lease_expires_at=job.lease_expires_at),
        )
        return True

    async def ack(self, job: Job) -> None:
        """
        Mark a job completed.

        A superseded message owns none of the entries under its job id;
        acking it only marks it done.
        """
        if job.state == JobState.SUPERSEDED:
            job.state = JobState.COMPLETED
            return

        was_active = job.state == JobState.ACTIVE
        await self._release(job)
        await self.redis.hdel(self.active_key, self._entry(job))
        await self.redis.hdel(self.pending_key, self._entry(job))
        await self._forget_id(job)
        if was_active:
            await self.redis.incr(self.completed_key)
        job.state = JobState.COMPLETED

    async def fail(self, job: Job, error: BaseException | str) -> bool:
        """Record a failed attempt; dramatiq performs the retry itself."""
        job.errors.append(str(error))
        await self._release(job)
        await self.redis.hdel(self.active_key, self._entry(job))

        if job.attempts_made < job.options.attempts:
            job.state = JobState.DELAYED
            await self.redis.hset(self.pending_key, self._entry(job), self._encode(job))
            return True

        await self._retain_failed(job)
        logger.error(
            f"Job {job.job_id} failed permanently after {job.attempts_made} attempts: {error}"
        )
        return False

    async def remove_pending(self, kind: JobKind, group_id: str) -> int:
        entries = await self.redis.hgetall(self.pending_key)
        doomed: dict[str, str] = {}
        for entry, raw in entries.items():
            data = json.loads(raw)
            if data.get("kind") == kind.value and data.get("payload", {}).get("group_id") == group_id:
                doomed[entry] = data["job_id"]
        if not doomed:
            return 0

        removed = await self.redis.hdel(self.pending_key, *doomed)
        await self.redis.delete(*(self._id_key(job_id) for job_id in doomed.values()))
        logger.debug(f"Superseded {removed} pending {kind.value} job(s) for group {group_id}")
        return removed

    async def pending_jobs(self, kind: JobKind | None = None) -> list[Job]:
        entries = await self.redis.hgetall(self.pending_key)
        jobs = [self._decode(raw, JobState.DELAYED) for raw in entries.values()]
        return [job for job in jobs if kind is None or job.kind == kind]

    async def is_in_flight(self, group_id: str) -> bool:
        return bool(await self.redis.exists(self._lease_key(group_id)))

    async def failed_jobs(self, limit: int = 100) -> list[Job]:
        entries = await self.redis.lrange(self.failed_key, 0, limit - 1)
        return [self._decode(raw, JobState.FAILED) for raw in entries]

    async def requeue_stalled(self) -> int:
        """Re-send active jobs whose lease expired."""
        now = time.time()
        requeued = 0
        entries = await self.redis.hgetall(self.active_key)
        for entry, raw in entries.items():
            job = self._decode(raw, JobState.ACTIVE)
            if job.lease_expires_at is None or job.lease_expires_at > now:
                continue
            # HDEL doubles as a claim when several processes scan at once
            if not await self.redis.hdel(self.active_key, entry):
                continue

            await self._release(job)
            job.errors.append("stalled: lease expired while active")
            if job.attempts_made >= job.options.attempts:
                await self._retain_failed(job)
                continue

            job.state = JobState.WAITING
            job.run_at = now
            await self.redis.hset(self.pending_key, entry, self._encode(job))
            await self._send(job, 0)
            requeued += 1
            logger.warning(f"Requeued stalled job {job.job_id}")
        return requeued

    async def depth(self) -> dict[str, int]:
        pending = await self.redis.hlen(self.pending_key)
        active = await self.redis.hlen(self.active_key)
        failed = await self.redis.llen(self.failed_key)
        completed = await self.redis.get(self.completed_key)
        return {
            "pending": pending,
            "active": active,
            "failed": failed,
            "completed": int(completed or 0),
        }

    async def close(self) -> None:
        await self.redis.aclose()

    async def _release(self, job: Job) -> None:
        if job.kind not in GROUP_EXCLUSIVE_KINDS:
            return
        key = self._lease_key(job.group_id)
        if await self.redis.get(key) == self._entry(job):
            await self.redis.delete(key)

    async def _forget_id(self, job: Job) -> None:
        key = self._id_key(job.job_id)
        if await self.redis.get(key) == job.token:
            await self.redis.delete(key)

    async def _retain_failed(self, job: Job) -> None:
        job.state = JobState.FAILED
        await self.redis.lpush(
            self.failed_key, self._encode(job, failed_at=utc_now().isoformat())
        )
        await self.redis.ltrim(self.failed_key, 0, self.failed_retention - 1)
        await self._forget_id(job)
