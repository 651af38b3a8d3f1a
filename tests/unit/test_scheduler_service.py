"""
Unit tests for the cycle scheduler.

Tests cover:
- Delay computation for future and past-due cycle dates
- Refusal rules (paused, started, completed, in flight)
- Exactly one pending run-cycle job per group
"""

from datetime import timedelta

import pytest

from app.models.enums import GroupStatus
from app.services.scheduler_service import run_cycle_job_id
from jobs.queue.base import JobKind, RetryPaymentPayload, RunCyclePayload
from tests.fakes import seed_group


class TestComputeDelay:
    """Test run time computation."""

    def test_future_date(self, engine):
        """Test a future date runs exactly then."""
        now = engine.clock()
        run_at, delay = engine.scheduler.compute_delay(now + timedelta(hours=2), now)
        assert run_at == now + timedelta(hours=2)
        assert delay == 7200

    def test_past_due_rebased_to_buffer(self, engine):
        """Test a past date runs at now + buffer."""
        now = engine.clock()
        run_at, delay = engine.scheduler.compute_delay(now - timedelta(days=3), now)
        assert delay == engine.settings.schedule_past_due_buffer_seconds
        assert run_at == now + timedelta(seconds=delay)

    def test_minimum_delay(self, engine):
        """Test delays never drop below the configured minimum."""
        now = engine.clock()
        _, delay = engine.scheduler.compute_delay(now + timedelta(seconds=1), now)
        assert delay == engine.settings.schedule_min_delay_seconds

    def test_naive_date_treated_as_utc(self, engine):
        """Test naive stored dates are read as UTC."""
        now = engine.clock()
        naive = (now + timedelta(hours=1)).replace(tzinfo=None)
        _, delay = engine.scheduler.compute_delay(naive, now)
        assert delay == 3600


class TestScheduleNext:
    """Test SchedulerService.schedule_next."""

    @pytest.mark.asyncio
    async def test_schedules_delayed_run_cycle_job(self, engine):
        """Test a run-cycle job is queued for the next cycle date."""
        group, _ = seed_group(engine.store)

        scheduled = await engine.scheduler.schedule_next(group.id)

        assert scheduled is not None
        assert scheduled.delay_seconds == 24 * 3600
        assert scheduled.job_id == run_cycle_job_id(group.id, group.next_cycle_date)
        jobs = await engine.queue.pending_jobs(JobKind.RUN_CYCLE)
        assert [j.job_id for j in jobs] == [scheduled.job_id]
        assert jobs[0].options.delay_ms == 24 * 3600 * 1000
        assert engine.metrics.job_metrics("cycles:run-cycle")["scheduled"] == 1
        assert engine.metrics.job_metrics("cycles:run-cycle")["created"] == 1

    @pytest.mark.asyncio
    async def test_past_due_keeps_stored_date(self, engine):
        """Test a past-due group runs soon without rewriting its date."""
        past = engine.clock() - timedelta(days=2)
        group, _ = seed_group(engine.store, next_cycle_date=past)

        scheduled = await engine.scheduler.schedule_next(group.id)

        assert scheduled.delay_seconds == engine.settings.schedule_past_due_buffer_seconds
        assert group.next_cycle_date == past

    @pytest.mark.asyncio
    async def test_exactly_one_pending_job(self, engine):
        """Test rescheduling replaces the pending job of the group."""
        group, _ = seed_group(engine.store)
        await engine.scheduler.schedule_next(group.id)
        group.next_cycle_date = group.next_cycle_date + timedelta(hours=3)

        scheduled = await engine.scheduler.schedule_next(group.id)

        assert scheduled.replaced_jobs == 1
        assert len(await engine.queue.pending_jobs(JobKind.RUN_CYCLE)) == 1

    @pytest.mark.asyncio
    async def test_other_groups_untouched(self, engine):
        """Test scheduling one group keeps another group's job."""
        first, _ = seed_group(engine.store, group_id="group-a")
        second, _ = seed_group(engine.store, group_id="group-b")
        await engine.scheduler.schedule_next(first.id)
        await engine.scheduler.schedule_next(second.id)

        jobs = await engine.queue.pending_jobs(JobKind.RUN_CYCLE)
        assert {j.group_id for j in jobs} == {"group-a", "group-b"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "field,value",
        [
            ("status", GroupStatus.PAUSED.value),
            ("cycle_started", True),
            ("cycles_completed", True),
            ("next_cycle_date", None),
        ],
    )
    async def test_refuses(self, engine, field, value):
        """Test paused, started, completed and undated groups are not scheduled."""
        group, _ = seed_group(engine.store)
        setattr(group, field, value)

        assert await engine.scheduler.schedule_next(group.id) is None
        assert await engine.queue.pending_jobs() == []

    @pytest.mark.asyncio
    async def test_unknown_group(self, engine):
        """Test unknown groups are not scheduled."""
        assert await engine.scheduler.schedule_next("missing") is None

    @pytest.mark.asyncio
    async def test_skipped_while_in_flight(self, engine):
        """Test a group with a job holding its lease is skipped."""
        group, _ = seed_group(engine.store)
        holder = await engine.queue.enqueue(
            JobKind.RETRY_PAYMENT, RetryPaymentPayload(group_id=group.id, payment_id="p")
        )
        await engine.queue.lease(holder)

        assert await engine.scheduler.schedule_next(group.id) is None
        assert await engine.queue.pending_jobs(JobKind.RUN_CYCLE) == []
        assert engine.metrics.job_metrics("cycles:run-cycle")["skipped"] == 1

    @pytest.mark.asyncio
    async def test_allow_in_flight(self, engine):
        """Test the in-flight job itself may schedule the next cycle."""
        group, _ = seed_group(engine.store)
        holder = await engine.queue.enqueue(JobKind.RUN_CYCLE, RunCyclePayload(group_id=group.id))
        await engine.queue.lease(holder)

        scheduled = await engine.scheduler.schedule_next(group.id, allow_in_flight=True)

        assert scheduled is not None


class TestScheduleAll:
    """Test the scheduling pass over every group."""

    @pytest.mark.asyncio
    async def test_schedules_only_schedulable_groups(self, engine):
        """Test paused groups are left out of the pass."""
        seed_group(engine.store, group_id="group-a")
        seed_group(engine.store, group_id="group-b")
        seed_group(engine.store, group_id="group-c", status=GroupStatus.PAUSED.value)

        assert await engine.scheduler.schedule_all() == 2
