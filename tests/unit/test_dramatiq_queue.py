"""
Unit tests for the dramatiq-backed job queue.

Tests cover:
- Job id dedupe and send failures
- Pending-entry claims, group leases and superseded duplicates
- Failed attempts, retention and stalled-job requeue
- Throttled delivery in the cycle actors
"""

import asyncio
import json
from contextlib import contextmanager
from types import SimpleNamespace

import pytest

from app.services.metrics_service import MetricsRecorder
from app.utils.exceptions import JobQueueError
from jobs.queue.base import (
    HandlePausePayload,
    Job,
    JobKind,
    JobOptions,
    JobState,
    RetryPaymentPayload,
    RunCyclePayload,
    SendNotificationPayload,
)
from jobs.queue.dramatiq_queue import DramatiqJobQueue
from tests.fakes import FakeRedis, RecordingActor


@pytest.fixture
def redis_client():
    return FakeRedis()


@pytest.fixture
def actors():
    return {kind: RecordingActor() for kind in JobKind}


@pytest.fixture
def queue(redis_client, actors):
    return DramatiqJobQueue(redis_client, actors, lease_seconds=60, failed_retention=2)


def delivered(actors, kind=JobKind.RUN_CYCLE):
    """Jobs as a worker would rebuild them from the sent messages."""
    return [Job.from_message(message) for message in actors[kind].messages()]


class TestEnqueue:
    """Test enqueue bookkeeping."""

    @pytest.mark.asyncio
    async def test_enqueue_sends_with_job_options(self, queue, actors):
        """Test the message carries the job and dramatiq's retry options."""
        job = await queue.enqueue(
            JobKind.RUN_CYCLE,
            RunCyclePayload(group_id="g1"),
            JobOptions(delay_ms=2_000, attempts=3, backoff_ms=1_000, max_backoff_ms=8_000),
        )

        [send] = actors[JobKind.RUN_CYCLE].sent
        assert send["message"]["job_id"] == job.job_id
        assert send["message"]["token"] == job.token
        assert send["delay"] == 2_000
        assert send["max_retries"] == 2
        assert (send["min_backoff"], send["max_backoff"]) == (1_000, 8_000)
        assert job.state == JobState.DELAYED

    @pytest.mark.asyncio
    async def test_duplicate_job_id_rejected(self, queue, actors):
        """Test a second enqueue with the same id sends nothing."""
        payload = RunCyclePayload(group_id="g1")
        first = await queue.enqueue(JobKind.RUN_CYCLE, payload, job_id="run-cycle:g1:d")
        second = await queue.enqueue(JobKind.RUN_CYCLE, payload, job_id="run-cycle:g1:d")

        assert first is not None
        assert second is None
        assert len(actors[JobKind.RUN_CYCLE].sent) == 1
        assert len(await queue.pending_jobs()) == 1

    @pytest.mark.asyncio
    async def test_send_failure_frees_job_id(self, redis_client):
        """Test a job the broker refused leaves no bookkeeping behind."""
        broken = DramatiqJobQueue(redis_client, {JobKind.RUN_CYCLE: RecordingActor(fail=True)})

        with pytest.raises(JobQueueError):
            await broken.enqueue(
                JobKind.RUN_CYCLE, RunCyclePayload(group_id="g1"), job_id="run-cycle:g1:d"
            )

        assert await broken.pending_jobs() == []
        assert await redis_client.get(broken._id_key("run-cycle:g1:d")) is None

    @pytest.mark.asyncio
    async def test_created_jobs_counted_after_send(self, redis_client, actors):
        """Test only jobs handed to the broker count as created."""
        metrics = MetricsRecorder()
        counted = DramatiqJobQueue(redis_client, actors, metrics=metrics)
        payload = RunCyclePayload(group_id="g1")
        await counted.enqueue(JobKind.RUN_CYCLE, payload, job_id="run-cycle:g1:d")
        await counted.enqueue(JobKind.RUN_CYCLE, payload, job_id="run-cycle:g1:d")

        actors[JobKind.RETRY_PAYMENT].fail = True
        with pytest.raises(JobQueueError):
            await counted.enqueue(
                JobKind.RETRY_PAYMENT, RetryPaymentPayload(group_id="g1", payment_id="p1")
            )

        assert metrics.job_metrics("cycles:run-cycle")["created"] == 1
        assert metrics.job_metrics("payments:retry-payment")["created"] == 0

    @pytest.mark.asyncio
    async def test_remove_pending(self, queue):
        """Test pending jobs of one kind and group are removed."""
        await queue.enqueue(JobKind.RUN_CYCLE, RunCyclePayload(group_id="g1"))
        await queue.enqueue(JobKind.RUN_CYCLE, RunCyclePayload(group_id="g2"))
        await queue.enqueue(JobKind.HANDLE_PAUSE, HandlePausePayload(group_id="g1"))

        assert await queue.remove_pending(JobKind.RUN_CYCLE, "g1") == 1

        remaining = await queue.pending_jobs()
        assert {(j.kind, j.group_id) for j in remaining} == {
            (JobKind.RUN_CYCLE, "g2"),
            (JobKind.HANDLE_PAUSE, "g1"),
        }


class TestLease:
    """Test claims, group leases and acknowledgement."""

    @pytest.mark.asyncio
    async def test_lease_and_ack(self, queue, actors):
        """Test a delivered job leases its group and frees it on ack."""
        await queue.enqueue(JobKind.RUN_CYCLE, RunCyclePayload(group_id="g1"))
        [job] = delivered(actors)

        assert await queue.lease(job) is True
        assert job.state == JobState.ACTIVE
        assert await queue.is_in_flight("g1") is True

        await queue.ack(job)

        assert await queue.is_in_flight("g1") is False
        assert await queue.depth() == {"pending": 0, "active": 0, "failed": 0, "completed": 1}

    @pytest.mark.asyncio
    async def test_group_lease_exclusive(self, queue, actors):
        """Test a second group-mutating job waits for the lease."""
        await queue.enqueue(JobKind.RUN_CYCLE, RunCyclePayload(group_id="g1"))
        await queue.enqueue(
            JobKind.RETRY_PAYMENT, RetryPaymentPayload(group_id="g1", payment_id="p1")
        )
        [cycle] = delivered(actors)
        [retry] = delivered(actors, JobKind.RETRY_PAYMENT)

        assert await queue.lease(cycle) is True
        assert await queue.lease(retry) is False
        assert retry.state != JobState.SUPERSEDED

    @pytest.mark.asyncio
    async def test_removed_job_is_superseded(self, queue, actors):
        """Test a message whose pending entry was removed is not run."""
        await queue.enqueue(JobKind.RUN_CYCLE, RunCyclePayload(group_id="g1"))
        await queue.remove_pending(JobKind.RUN_CYCLE, "g1")
        [job] = delivered(actors)

        assert await queue.lease(job) is False
        assert job.state == JobState.SUPERSEDED

    @pytest.mark.asyncio
    async def test_acking_superseded_duplicate_keeps_live_job(self, queue, actors, redis_client):
        """Test a stale message with a reused job id cannot free the live job."""
        payload = RunCyclePayload(group_id="g1")
        await queue.enqueue(JobKind.RUN_CYCLE, payload, job_id="run-cycle:g1:d")
        await queue.remove_pending(JobKind.RUN_CYCLE, "g1")
        await queue.enqueue(JobKind.RUN_CYCLE, payload, job_id="run-cycle:g1:d")
        stale, live = delivered(actors)

        assert await queue.lease(live) is True
        assert await queue.lease(stale) is False
        assert stale.state == JobState.SUPERSEDED

        await queue.ack(stale)

        assert await queue.is_in_flight("g1") is True
        assert (await queue.depth())["active"] == 1
        assert await redis_client.get(queue._id_key("run-cycle:g1:d")) == live.token

        await queue.ack(live)
        assert await queue.is_in_flight("g1") is False

    @pytest.mark.asyncio
    async def test_stale_message_cannot_claim_reenqueued_entry(self, queue, actors):
        """Test only the message of the latest enqueue claims the pending entry."""
        payload = RunCyclePayload(group_id="g1")
        await queue.enqueue(JobKind.RUN_CYCLE, payload, job_id="run-cycle:g1:d")
        await queue.remove_pending(JobKind.RUN_CYCLE, "g1")
        await queue.enqueue(JobKind.RUN_CYCLE, payload, job_id="run-cycle:g1:d")
        stale, live = delivered(actors)

        assert await queue.lease(stale) is False
        assert await queue.lease(live) is True

    @pytest.mark.asyncio
    async def test_notifications_skip_group_lease(self, queue, actors):
        """Test notification jobs run beside a group's cycle job."""
        await queue.enqueue(JobKind.RUN_CYCLE, RunCyclePayload(group_id="g1"))
        await queue.enqueue(
            JobKind.SEND_NOTIFICATION, SendNotificationPayload(group_id="g1", event={})
        )
        [cycle] = delivered(actors)
        [notification] = delivered(actors, JobKind.SEND_NOTIFICATION)

        assert await queue.lease(cycle) is True
        assert await queue.lease(notification) is True


class TestFailure:
    """Test failed attempts, retention and stalled jobs."""

    @pytest.mark.asyncio
    async def test_fail_returns_job_to_pending(self, queue, actors):
        """Test a failed attempt with attempts left can be claimed again."""
        await queue.enqueue(JobKind.RUN_CYCLE, RunCyclePayload(group_id="g1"))
        [job] = delivered(actors)
        job.attempts_made = 1
        await queue.lease(job)

        assert await queue.fail(job, RuntimeError("gateway down")) is True

        assert job.state == JobState.DELAYED
        assert await queue.is_in_flight("g1") is False
        [pending] = await queue.pending_jobs()
        assert pending.errors == ["gateway down"]

        redelivered = delivered(actors)[0]
        redelivered.attempts_made = 2
        assert await queue.lease(redelivered) is True

    @pytest.mark.asyncio
    async def test_last_attempt_retained_as_failed(self, queue, actors, redis_client):
        """Test a job out of attempts lands in the failed list."""
        await queue.enqueue(
            JobKind.RUN_CYCLE,
            RunCyclePayload(group_id="g1"),
            JobOptions(attempts=1),
            job_id="run-cycle:g1:d",
        )
        [job] = delivered(actors)
        job.attempts_made = 1
        await queue.lease(job)

        assert await queue.fail(job, RuntimeError("boom")) is False

        [failed] = await queue.failed_jobs()
        assert failed.job_id == "run-cycle:g1:d"
        assert failed.state == JobState.FAILED
        assert await queue.pending_jobs() == []
        assert await redis_client.get(queue._id_key("run-cycle:g1:d")) is None

    @pytest.mark.asyncio
    async def test_failed_retention_bounded(self, queue, actors):
        """Test only the most recent failed jobs are kept."""
        for index in range(3):
            await queue.enqueue(
                JobKind.RUN_CYCLE, RunCyclePayload(group_id=f"g{index}"), JobOptions(attempts=1)
            )
        for job in delivered(actors):
            job.attempts_made = 1
            await queue.lease(job)
            await queue.fail(job, "boom")

        failed = await queue.failed_jobs()
        assert [job.group_id for job in failed] == ["g2", "g1"]
        assert (await queue.depth())["failed"] == 2

    @pytest.mark.asyncio
    async def test_requeue_stalled(self, queue, actors, redis_client):
        """Test an active job past its lease is sent again and its group freed."""
        await queue.enqueue(JobKind.RUN_CYCLE, RunCyclePayload(group_id="g1"))
        [job] = delivered(actors)
        job.attempts_made = 1
        await queue.lease(job)
        entry = queue._entry(job)
        stalled = json.loads(await redis_client.hget(queue.active_key, entry))
        stalled["lease_expires_at"] = 0.0
        await redis_client.hset(queue.active_key, entry, json.dumps(stalled))

        assert await queue.requeue_stalled() == 1

        assert await queue.is_in_flight("g1") is False
        assert await queue.depth() == {"pending": 1, "active": 0, "failed": 0, "completed": 0}
        assert len(actors[JobKind.RUN_CYCLE].sent) == 2
        resent = delivered(actors)[1]
        assert resent.errors == ["stalled: lease expired while active"]
        assert await queue.lease(resent) is True

    @pytest.mark.asyncio
    async def test_requeue_skips_live_leases(self, queue, actors):
        """Test jobs still inside their lease stay active."""
        await queue.enqueue(JobKind.RUN_CYCLE, RunCyclePayload(group_id="g1"))
        [job] = delivered(actors)
        await queue.lease(job)

        assert await queue.requeue_stalled() == 0
        assert await queue.is_in_flight("g1") is True


class TestThrottledDelivery:
    """Test the cycle actors when their queue is at its concurrency limit."""

    @pytest.fixture
    def tasks(self, monkeypatch, queue):
        from jobs.tasks import cycle_tasks

        @contextmanager
        def saturated(raise_on_failure=True):
            yield False

        dispatched = []

        async def dispatch(job):
            dispatched.append(job)

        context = SimpleNamespace(
            metrics=MetricsRecorder(),
            queue=queue,
            dispatcher=SimpleNamespace(dispatch=dispatch),
        )
        monkeypatch.setattr(
            cycle_tasks, "get_rate_limiter", lambda name: SimpleNamespace(acquire=saturated)
        )
        monkeypatch.setattr(cycle_tasks, "get_context", lambda: context)
        monkeypatch.setattr(cycle_tasks, "run_async", asyncio.run)
        return SimpleNamespace(module=cycle_tasks, context=context, dispatched=dispatched)

    def test_throttled_job_is_resent_later(self, tasks, queue, actors):
        """Test a throttled message is re-sent with a delay and not dispatched."""
        asyncio.run(queue.enqueue(JobKind.RUN_CYCLE, RunCyclePayload(group_id="g1")))
        message = actors[JobKind.RUN_CYCLE].messages()[0]

        tasks.module._process(message)

        assert tasks.dispatched == []
        resend = actors[JobKind.RUN_CYCLE].sent[1]
        assert resend["message"] == message
        assert resend["delay"] == tasks.module.THROTTLE_DELAY_MS
        assert resend["retries"] == 0
        assert tasks.context.metrics.snapshot()["queue_events"] == {"cycles": {"throttled": 1}}
        assert len(asyncio.run(queue.pending_jobs())) == 1
