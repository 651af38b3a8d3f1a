"""
Integration tests for failed contributions.

Tests cover:
- Retry with the escalating fee until success
- Pause at the retry cap and member notification
- Manual pause and reactivation
- Circuit breaker deferral while the processor is down
"""

from decimal import Decimal

import pytest
from loguru import logger

from app.models import GroupCycle, Payment
from app.models.enums import GroupStatus, PauseReason, PaymentStatus
from app.utils.circuit_breaker import CircuitState
from app.utils.exceptions import (
    CycleConfigurationError,
    CycleDeferredError,
    PaymentGatewayError,
)
from jobs.queue.base import JobKind, JobState
from tests.fakes import seed_group

RETRY_DELAY_DAYS = 2


def payment_of(engine, user_id, cycle_number=1):
    return next(
        p
        for p in engine.store.rows(Payment)
        if p.user_id == user_id and p.cycle_number == cycle_number
    )


async def start_cycle(engine, group_id="group-1"):
    await engine.scheduler.schedule_next(group_id)
    engine.advance(days=1)
    await engine.run_jobs()


async def run_retry_round(engine):
    engine.advance(days=RETRY_DELAY_DAYS)
    await engine.run_jobs()


class TestRetryUntilSuccess:
    """Test a charge that fails twice and succeeds on the third attempt."""

    @pytest.mark.asyncio
    async def test_fails_twice_then_succeeds(self, engine):
        """Test retry_count 1 -> 2, surcharged fees, no pause, normal finalization."""
        group, _ = seed_group(engine.store, members=3)
        engine.gateway.script("group-1-user-2", "failed", "failed")

        await start_cycle(engine)
        payment = payment_of(engine, "group-1-user-2")
        assert payment.status == PaymentStatus.FAILED.value
        assert payment.retry_count == 1
        await engine.confirm_all_pending()

        await run_retry_round(engine)
        assert payment.retry_count == 2
        assert payment.status == PaymentStatus.FAILED.value

        await run_retry_round(engine)
        assert payment.status == PaymentStatus.PENDING.value
        assert payment.retry_count == 2

        await engine.confirm_all_pending()

        fees = [r.application_fee for r in engine.gateway.requests_for("group-1-user-2")]
        assert fees == [Decimal("1.30"), Decimal("3.80"), Decimal("3.80")]
        assert group.status == GroupStatus.ACTIVE.value
        [cycle] = engine.store.rows(GroupCycle)
        assert cycle.successful_payments == 2
        assert group.total_group_cycles_completed == 1

    @pytest.mark.asyncio
    async def test_retry_job_waits_fixed_delay(self, engine):
        """Test the retry job is delayed by the configured retry delay."""
        seed_group(engine.store, members=3)
        engine.gateway.script("group-1-user-2", "failed")

        await start_cycle(engine)

        [job] = await engine.queue.pending_jobs(JobKind.RETRY_PAYMENT)
        assert job.options.delay_ms == engine.settings.payment_retry_delay_seconds * 1000
        assert job.payload.payment_id == payment_of(engine, "group-1-user-2").id

        engine.advance(days=RETRY_DELAY_DAYS, seconds=-1)
        await engine.run_jobs()
        assert len(engine.gateway.requests_for("group-1-user-2")) == 1

    @pytest.mark.asyncio
    async def test_failure_notifies_member(self, engine):
        """Test a failed charge queues a payment_failed notification."""
        seed_group(engine.store, members=3)
        engine.gateway.script("group-1-user-2", "failed")

        await start_cycle(engine)
        await engine.run_jobs()

        [event] = engine.notifier.events
        assert event.kind.value == "payment_failed"
        assert event.user_id == "group-1-user-2"
        assert event.context["reason"] == "card_declined"

    @pytest.mark.asyncio
    async def test_transient_gateway_error_recorded_as_failure(self, engine):
        """Test a processor error for one member does not stop the others."""
        seed_group(engine.store, members=3)
        engine.gateway.script("group-1-user-2", PaymentGatewayError("timeout"))

        await start_cycle(engine)

        failed = payment_of(engine, "group-1-user-2")
        assert failed.status == PaymentStatus.FAILED.value
        assert failed.failure_reason == "timeout"
        assert payment_of(engine, "group-1-user-3").status == PaymentStatus.PENDING.value


class TestEscalation:
    """Test the pause at the retry cap."""

    @pytest.mark.asyncio
    async def test_third_failure_pauses_group(self, engine):
        """Test retry_count 3 pauses the group and stops charging that payment."""
        group, _ = seed_group(engine.store, members=3)
        engine.gateway.script("group-1-user-2", "failed", "failed", "failed")

        await start_cycle(engine)
        await run_retry_round(engine)
        await run_retry_round(engine)

        payment = payment_of(engine, "group-1-user-2")
        assert payment.retry_count == 3
        assert group.status == GroupStatus.PAUSED.value
        assert group.pause_reason == PauseReason.PAYMENT_FAILURES.value
        assert await engine.queue.pending_jobs(JobKind.RETRY_PAYMENT) == []

        for _ in range(3):
            await run_retry_round(engine)
        assert len(engine.gateway.requests_for("group-1-user-2")) == 3

    @pytest.mark.asyncio
    async def test_pause_notifies_every_member(self, engine):
        """Test the handle-pause job notifies each active member."""
        seed_group(engine.store, members=3)
        engine.gateway.script("group-1-user-2", "failed", "failed", "failed")

        await start_cycle(engine)
        await run_retry_round(engine)
        await run_retry_round(engine)

        paused = [e for e in engine.notifier.events if e.kind.value == "group_paused"]
        assert sorted(e.user_id for e in paused) == [
            "group-1-user-1",
            "group-1-user-2",
            "group-1-user-3",
        ]
        assert all(e.context["pause_reason"] == "PAYMENT_FAILURES" for e in paused)

    @pytest.mark.asyncio
    async def test_retry_on_paused_group_is_noop(self, engine):
        """Test a retry job for a paused group does not charge."""
        group, _ = seed_group(engine.store, members=3)
        engine.gateway.script("group-1-user-2", "failed")
        await start_cycle(engine)
        payment = payment_of(engine, "group-1-user-2")

        await engine.cycles.pause_group(group.id, PauseReason.OTHER)

        assert await engine.cycles.retry_payment(payment.id) is None
        assert len(engine.gateway.requests_for("group-1-user-2")) == 1

    @pytest.mark.asyncio
    async def test_retry_of_non_failed_payment_is_noop(self, engine):
        """Test an already retried payment short-circuits."""
        seed_group(engine.store, members=3)
        await start_cycle(engine)
        payment = payment_of(engine, "group-1-user-2")

        assert await engine.cycles.retry_payment(payment.id) is None
        assert len(engine.gateway.requests_for("group-1-user-2")) == 1

    @pytest.mark.asyncio
    async def test_retry_of_unknown_payment(self, engine):
        """Test a retry job naming an unknown payment is a configuration error."""
        with pytest.raises(CycleConfigurationError, match="not found"):
            await engine.cycles.retry_payment("missing", "group-1")


class TestPauseAndReactivate:
    """Test manual pause and recovery."""

    @pytest.mark.asyncio
    async def test_pause_group_twice(self, engine):
        """Test pausing an already paused group reports False."""
        group, _ = seed_group(engine.store)
        assert await engine.cycles.pause_group(group.id, PauseReason.OTHER) is True
        assert await engine.cycles.pause_group(group.id, PauseReason.OTHER) is False
        assert len(await engine.queue.pending_jobs(JobKind.HANDLE_PAUSE)) == 1

    @pytest.mark.asyncio
    async def test_pause_job_id_follows_engine_clock(self, engine):
        """Test the handle-pause job id is stamped with the engine's clock."""
        group, _ = seed_group(engine.store)
        await engine.cycles.pause_group(group.id, PauseReason.OTHER)

        [job] = await engine.queue.pending_jobs(JobKind.HANDLE_PAUSE)
        assert job.job_id == f"handle-pause:{group.id}:{int(engine.clock().timestamp())}"

    @pytest.mark.asyncio
    async def test_cap_pause_job_id_follows_engine_clock(self, engine):
        """Test the pause at the retry cap stamps its job id with the engine's clock."""
        group, _ = seed_group(engine.store, members=3)
        engine.gateway.script("group-1-user-2", "failed", "failed", "failed")
        await start_cycle(engine)
        await run_retry_round(engine)
        engine.advance(days=RETRY_DELAY_DAYS)
        paused_at = int(engine.clock().timestamp())
        await engine.queue.run_due(engine.dispatcher)

        assert group.status == GroupStatus.PAUSED.value
        [job] = await engine.queue.pending_jobs(JobKind.HANDLE_PAUSE)
        assert job.job_id == f"handle-pause:{group.id}:{paused_at}"

    @pytest.mark.asyncio
    async def test_reactivate_idle_group_schedules_next_cycle(self, engine):
        """Test reactivation clears the pause and schedules the next cycle."""
        group, _ = seed_group(engine.store)
        await engine.cycles.pause_group(group.id, PauseReason.OTHER)

        assert await engine.cycles.reactivate_group(group.id) is True

        assert group.status == GroupStatus.ACTIVE.value
        assert group.pause_reason is None
        jobs = await engine.queue.pending_jobs(JobKind.RUN_CYCLE)
        assert len(jobs) == 1

    @pytest.mark.asyncio
    async def test_pause_notification_skipped_after_reactivation(self, engine):
        """Test a handle-pause job for a reactivated group sends nothing."""
        group, _ = seed_group(engine.store)
        await engine.cycles.pause_group(group.id, PauseReason.OTHER)
        await engine.cycles.reactivate_group(group.id)

        await engine.run_jobs()

        assert "group_paused" not in engine.notifier.kinds()

    @pytest.mark.asyncio
    async def test_reactivate_mid_cycle_resumes_retries(self, engine):
        """Test failed payments below the cap get retried after reactivation."""
        group, _ = seed_group(engine.store, members=3)
        engine.gateway.script("group-1-user-2", "failed")
        await start_cycle(engine)
        await engine.confirm_all_pending()
        await engine.cycles.pause_group(group.id, PauseReason.OTHER)

        await run_retry_round(engine)
        payment = payment_of(engine, "group-1-user-2")
        assert payment.retry_count == 1
        assert len(engine.gateway.requests_for("group-1-user-2")) == 1

        await engine.cycles.reactivate_group(group.id)
        for _ in range(3):
            engine.advance(seconds=10)
            await engine.run_jobs()

        assert payment.status == PaymentStatus.PENDING.value
        assert payment.retry_count == 1
        await engine.confirm_all_pending()
        assert group.total_group_cycles_completed == 1

    @pytest.mark.asyncio
    async def test_reactivate_keeps_retry_counts(self, engine):
        """Test reactivation after the cap does not reset retry history."""
        group, _ = seed_group(engine.store, members=3)
        engine.gateway.script("group-1-user-2", "failed", "failed", "failed")
        await start_cycle(engine)
        await run_retry_round(engine)
        await run_retry_round(engine)

        await engine.cycles.reactivate_group(group.id)
        engine.advance(seconds=10)
        await engine.run_jobs()

        payment = payment_of(engine, "group-1-user-2")
        assert payment.retry_count == 3
        assert group.status == GroupStatus.ACTIVE.value
        assert len(engine.gateway.requests_for("group-1-user-2")) == 3

    @pytest.mark.asyncio
    async def test_reactivate_reports_capped_payments(self, engine):
        """Test reactivation warns about payments that still block finalization."""
        group, _ = seed_group(engine.store, members=3)
        engine.gateway.script("group-1-user-2", "failed", "failed", "failed")
        await start_cycle(engine)
        await run_retry_round(engine)
        await run_retry_round(engine)
        payment = payment_of(engine, "group-1-user-2")
        warnings = []
        sink = logger.add(lambda message: warnings.append(str(message)), level="WARNING")
        try:
            await engine.cycles.reactivate_group(group.id)
        finally:
            logger.remove(sink)

        assert [w for w in warnings if "retry cap" in w and payment.id in w]
        assert await engine.queue.pending_jobs(JobKind.RETRY_PAYMENT) == []

    @pytest.mark.asyncio
    async def test_reactivate_unknown_group(self, engine):
        """Test reactivating an unknown group is a configuration error."""
        with pytest.raises(CycleConfigurationError):
            await engine.cycles.reactivate_group("missing")


class TestProcessorOutage:
    """Test the circuit breaker around the processor."""

    @pytest.mark.asyncio
    async def test_open_circuit_defers_members(self, engine):
        """Test an open circuit skips charges and the job retries later."""
        group, _ = seed_group(engine.store, members=3)
        await engine.scheduler.schedule_next(group.id)
        engine.advance(days=1)
        for _ in range(engine.breaker.failure_threshold):
            engine.breaker.record_failure(PaymentGatewayError("processor down"))
        assert engine.breaker.state == CircuitState.OPEN

        await engine.run_jobs()

        assert engine.gateway.requests == []
        assert engine.store.rows(Payment) == []
        assert group.cycle_started is True
        [job] = await engine.queue.pending_jobs(JobKind.RUN_CYCLE)
        assert job.state == JobState.DELAYED
        assert "deferred" in job.errors[-1]

        engine.advance(seconds=engine.settings.circuit_breaker_reset_timeout + 1)
        await engine.run_jobs()

        assert len(engine.gateway.requests) == 2
        assert engine.breaker.state == CircuitState.CLOSED
        assert all(p.status == PaymentStatus.PENDING.value for p in engine.store.rows(Payment))

    @pytest.mark.asyncio
    async def test_repeated_outage_opens_circuit(self, engine):
        """Test processor errors across members open the circuit mid-run."""
        seed_group(engine.store, members=5)
        for n in range(2, 6):
            engine.gateway.script(f"group-1-user-{n}", PaymentGatewayError("503"))

        with pytest.raises(CycleDeferredError) as exc_info:
            await engine.cycles.run_cycle("group-1")

        assert exc_info.value.deferred_members == 1
        assert len(engine.gateway.requests) == 3
        assert engine.breaker.state == CircuitState.OPEN
        assert len(engine.store.rows(Payment)) == 3
