"""
Cycle Service - Core Module.

Drives one group through its cycle state machine:

    Scheduled -> Collecting -> (Retrying)* -> Finalizing
              -> Completed | AllCyclesExhausted | Paused

Every state change of one operation happens inside a single store
transaction on the locked group row. Jobs and notifications produced by
an operation are published after it commits.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from loguru import logger

from app.config.settings import Settings
from app.models.enums import GroupStatus, PauseReason, PayoutStatus, TransactionType
from app.models.group import Group
from app.models.group_cycle import GroupCycle
from app.models.membership import GroupMembership
from app.repositories.unit_of_work import Repositories, UnitOfWork
from app.services.cycle_service.charging import ChargeOutcome, MemberCharger
from app.services.cycle_service.effects import CycleEffects, mark_group_paused
from app.services.cycle_service.finalizer import CycleFinalizer
from app.services.notification_service import group_paused_event
from app.services.payment_gateway.guarded import GuardedPaymentGateway
from app.services.scheduler_service import SchedulerService
from app.utils.datetime_utils import utc_now
from app.utils.exceptions import (
    CycleConfigurationError,
    CycleDeferredError,
    CycleIntegrityError,
)
from jobs.queue.base import JobKind, JobOptions, JobQueue, RetryPaymentPayload, RunCyclePayload


@dataclass
class CycleRunResult:
    """Summary of one run_cycle call."""

    group_id: str
    cycle_number: int
    payee_user_id: str | None = None
    charged: int = 0
    failed: int = 0
    existing: int = 0
    unverified: int = 0
    deferred: int = 0
    paused: bool = False
    finalized: bool = False
    cycles_completed: bool = False


class CycleService:
    """Cycle state machine entry points."""

    def __init__(
        self,
        uow: UnitOfWork,
        queue: JobQueue,
        gateway: GuardedPaymentGateway,
        scheduler: SchedulerService,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Initialize cycle service.

        Args:
            uow: Unit of work
            queue: Job queue for retry and pause jobs
            gateway: Circuit-breaker guarded payment gateway
            scheduler: Scheduler used after finalization and reactivation
            settings: Application settings
            clock: Current time provider
        """
        self.uow = uow
        self.queue = queue
        self.scheduler = scheduler
        self.settings = settings
        self.clock = clock
        self.charger = MemberCharger(gateway, settings, clock)
        self.finalizer = CycleFinalizer()

    def _job_options(self, delay_ms: int = 0) -> JobOptions:
        return JobOptions(
            delay_ms=delay_ms,
            attempts=self.settings.job_default_attempts,
            backoff_ms=self.settings.job_backoff_base_ms,
            max_backoff_ms=self.settings.job_backoff_max_ms,
        )

    # ------------------------------------------------------------------
    # run
    # ------------------------------------------------------------------

    async def run_cycle(self, group_id: str, test_mode: bool = False) -> CycleRunResult:
        """
        Run (or resume) the current cycle of a group.

        Charges every non-payee active member that has no Payment for the
        cycle yet, records the payee's payout, then attempts finalization.

        Args:
            group_id: Group ID
            test_mode: Flag charges as test charges

        Returns:
            Run summary

        Raises:
            CycleConfigurationError: Group missing, not active or misconfigured
            CycleIntegrityError: A verified write did not stick (rolled back)
            CycleDeferredError: Members were skipped while the circuit was open
        """
        effects = CycleEffects()

        async with self.uow.transaction() as repos:
            group = await repos.groups.get_for_update(group_id)
            self._require_runnable(group, group_id)

            cycle_number = group.current_cycle_number
            result = CycleRunResult(group_id=group_id, cycle_number=cycle_number)
            if group.cycles_completed:
                logger.info(f"Group {group_id} has completed all cycles, nothing to run")
                result.cycles_completed = True
                return result

            members = await repos.memberships.find_active_by_group(group_id)
            if len(members) < 2:
                raise CycleConfigurationError(
                    group_id, f"needs at least 2 active members, has {len(members)}"
                )

            payee = await self._select_payee(repos, group, members, cycle_number)
            if payee is None:
                logger.info(
                    f"Group {group_id} cycle {cycle_number}: every member settled, "
                    f"proceeding to finalization"
                )
            else:
                await self._collect(repos, group, members, payee, cycle_number, effects, result, test_mode)

            result.paused = group.status == GroupStatus.PAUSED.value

        await effects.publish(self.queue)

        logger.info(
            f"Group {group_id} cycle {result.cycle_number} run: "
            f"charged={result.charged} failed={result.failed} existing={result.existing} "
            f"unverified={result.unverified} deferred={result.deferred} paused={result.paused}"
        )

        if not result.paused:
            cycle = await self.check_and_finalize_cycle(group_id, allow_in_flight=True)
            if cycle is not None:
                result.finalized = True
                async with self.uow.transaction() as repos:
                    refreshed = await repos.groups.get_by_id(group_id)
                    result.cycles_completed = bool(refreshed and refreshed.cycles_completed)

        if result.deferred:
            raise CycleDeferredError(group_id, result.deferred)
        return result

    async def _collect(
        self,
        repos: Repositories,
        group: Group,
        members: list[GroupMembership],
        payee: GroupMembership,
        cycle_number: int,
        effects: CycleEffects,
        result: CycleRunResult,
        test_mode: bool,
    ) -> None:
        """Charging pass over every non-payee member, then the payee payout."""
        result.payee_user_id = payee.user_id
        if not payee.user.payout_account_ref:
            raise CycleConfigurationError(
                group.id, f"payee {payee.user_id} has no payout account"
            )
        group.current_member_cycle_number = payee.payout_order

        for member in members:
            if member.id == payee.id:
                continue
            if not group.is_active:
                logger.warning(f"Group {group.id} paused mid-run, stopping charges")
                break
            outcome = await self.charger.charge_member(
                repos, group, member, payee, cycle_number, effects, test_mode
            )
            if outcome == ChargeOutcome.CHARGED:
                result.charged += 1
            elif outcome == ChargeOutcome.FAILED:
                result.failed += 1
            elif outcome == ChargeOutcome.EXISTING:
                result.existing += 1
            elif outcome == ChargeOutcome.UNVERIFIED:
                result.unverified += 1
            elif outcome == ChargeOutcome.DEFERRED:
                result.deferred += 1

        payout_created = await self._record_payout(repos, group, payee, members, cycle_number)

        if (result.charged or result.failed or payout_created) and not group.cycle_started:
            group.cycle_started = True
            logger.info(f"Group {group.id} cycle {cycle_number} started")

    async def _select_payee(
        self,
        repos: Repositories,
        group: Group,
        members: list[GroupMembership],
        cycle_number: int,
    ) -> GroupMembership | None:
        """
        Pick the payee of the current cycle.

        A payout already recorded for the cycle fixes the payee; otherwise
        it is the first member by payout order that is not settled and has
        not been paid out in an earlier cycle.
        """
        payout = await repos.payouts.get_for_cycle(group.id, cycle_number)
        if payout is not None:
            for member in members:
                if member.user_id == payout.user_id:
                    return member
            raise CycleConfigurationError(
                group.id,
                f"payee {payout.user_id} of cycle {cycle_number} is no longer an active member",
            )

        paid_before = await repos.payouts.find_paid_user_ids(group.id, cycle_number)
        for member in members:
            if not member.has_been_paid and member.user_id not in paid_before:
                return member
        return None

    async def _record_payout(
        self,
        repos: Repositories,
        group: Group,
        payee: GroupMembership,
        members: list[GroupMembership],
        cycle_number: int,
    ) -> bool:
        """
        Record the payee's payout and mark the payee settled.

        The settled flag is read back inside the transaction; a write that
        did not stick aborts the whole run.

        Returns:
            True if the payout row was created by this call
        """
        created = False
        payout = await repos.payouts.get_for_cycle(group.id, cycle_number)
        if payout is None:
            amount = group.contribution_amount * (len(members) - 1)
            payout = await repos.payouts.create(
                group_id=group.id,
                user_id=payee.user_id,
                cycle_number=cycle_number,
                payout_order=payee.payout_order,
                amount=amount,
                status=PayoutStatus.PENDING.value,
            )
            await repos.transactions.create(
                group_id=group.id,
                user_id=payee.user_id,
                payout_id=payout.id,
                cycle_number=cycle_number,
                type=TransactionType.CREDIT.value,
                amount=amount,
                status=payout.status,
                description="Cycle payout recorded",
            )
            created = True
            logger.info(
                f"Recorded payout {amount} to user {payee.user_id} "
                f"for group {group.id} cycle {cycle_number}"
            )

        if not payee.has_been_paid:
            if not await repos.memberships.set_has_been_paid(payee.id, True):
                raise CycleIntegrityError(
                    f"Group {group.id} cycle {cycle_number}: "
                    f"payee flag for membership {payee.id} did not persist"
                )
            payee.has_been_paid = True
        return created

    @staticmethod
    def _require_runnable(group: Group | None, group_id: str) -> Group:
        if group is None:
            raise CycleConfigurationError(group_id, "group not found")
        if not group.is_active:
            raise CycleConfigurationError(group_id, f"group is {group.status}")
        if group.contribution_amount is None or group.contribution_amount <= 0:
            raise CycleConfigurationError(group_id, "contribution amount must be positive")
        return group

    # ------------------------------------------------------------------
    # finalize
    # ------------------------------------------------------------------

    async def check_and_finalize_cycle(
        self, group_id: str, allow_in_flight: bool = False
    ) -> GroupCycle | None:
        """
        Finalize the group's current cycle if it is fully resolved.

        No-op unless every active membership is settled and every Payment
        of the cycle is Successful. Schedules the next cycle afterwards.

        Args:
            group_id: Group ID
            allow_in_flight: The caller is the group's in-flight job

        Returns:
            The GroupCycle audit row, or None
        """
        effects = CycleEffects()
        async with self.uow.transaction() as repos:
            group = await repos.groups.get_for_update(group_id)
            if group is None:
                logger.warning(f"Cannot finalize group {group_id}: not found")
                return None
            cycle = await self.finalizer.finalize_if_complete(repos, group, effects)
            schedule = cycle is not None and group.is_active and not group.cycles_completed

        if cycle is None:
            return None

        await effects.publish(self.queue)
        if schedule:
            await self.scheduler.schedule_next(group_id, allow_in_flight=allow_in_flight)
        return cycle

    # ------------------------------------------------------------------
    # retry
    # ------------------------------------------------------------------

    async def retry_payment(
        self, payment_id: str, group_id: str | None = None, test_mode: bool = False
    ) -> ChargeOutcome | None:
        """
        Retry a failed contribution.

        No-op unless the owning group is still Active and the payment is
        still Failed and below the retry cap.

        Args:
            payment_id: Payment ID
            group_id: Owning group, when known by the caller
            test_mode: Flag the charge as a test charge

        Returns:
            Outcome of the attempt, or None when skipped

        Raises:
            CycleConfigurationError: Payment or payee data missing
            CycleDeferredError: Circuit open, retry later
        """
        effects = CycleEffects()
        async with self.uow.transaction() as repos:
            payment = await repos.payments.get_for_update(payment_id)
            if payment is None:
                raise CycleConfigurationError(
                    group_id or "unknown", f"payment {payment_id} not found"
                )

            group = await repos.groups.get_for_update(payment.group_id)
            if group is None or not group.is_active:
                logger.info(f"Skipping retry of payment {payment_id}: group not active")
                return None
            if not payment.is_failed:
                logger.info(
                    f"Skipping retry of payment {payment_id}: status {payment.status}"
                )
                return None
            if payment.retry_count >= self.settings.payment_max_retries:
                logger.warning(
                    f"Skipping retry of payment {payment_id}: "
                    f"retry cap reached ({payment.retry_count})"
                )
                return None
            if payment.cycle_number != group.current_cycle_number:
                logger.warning(
                    f"Skipping retry of payment {payment_id}: cycle {payment.cycle_number} "
                    f"is not the current cycle {group.current_cycle_number}"
                )
                return None

            user = await repos.users.get_by_id(payment.user_id)
            payout = await repos.payouts.get_for_cycle(group.id, payment.cycle_number)
            payee_user = await repos.users.get_by_id(payout.user_id) if payout else None
            if payee_user is None or not payee_user.payout_account_ref:
                raise CycleConfigurationError(
                    group.id, f"no payee payout account for cycle {payment.cycle_number}"
                )
            if user is None or not user.has_verified_payment_method:
                logger.warning(
                    f"Skipping retry of payment {payment_id}: "
                    f"member has no verified payment method"
                )
                return None

            outcome = await self.charger.retry_charge(
                repos, group, payment, user, payee_user, effects, test_mode
            )

        await effects.publish(self.queue)
        if outcome == ChargeOutcome.DEFERRED:
            raise CycleDeferredError(payment.group_id, 1)
        return outcome

    # ------------------------------------------------------------------
    # pause / reactivate
    # ------------------------------------------------------------------

    async def pause_group(self, group_id: str, reason: PauseReason) -> bool:
        """
        Pause a group and queue member notification.

        Returns:
            False if the group was already paused
        """
        effects = CycleEffects()
        async with self.uow.transaction() as repos:
            group = await repos.groups.get_for_update(group_id)
            if group is None:
                raise CycleConfigurationError(group_id, "group not found")
            paused = mark_group_paused(
                group, reason, effects, self._job_options(), self.clock()
            )
        await effects.publish(self.queue)
        return paused

    async def handle_group_pause(self, group_id: str, pause_reason: str | None = None) -> int:
        """
        Notify every active member that the group is paused.

        Returns:
            Number of notifications queued
        """
        effects = CycleEffects()
        async with self.uow.transaction() as repos:
            group = await repos.groups.get_by_id(group_id)
            if group is None:
                raise CycleConfigurationError(group_id, "group not found")
            if group.status != GroupStatus.PAUSED.value:
                logger.info(f"Group {group_id} is no longer paused, skipping notifications")
                return 0
            members = await repos.memberships.find_active_by_group(group_id)
            reason = group.pause_reason or pause_reason
            for member in members:
                effects.notify(group_paused_event(member.user, group, reason))

        await effects.publish(self.queue)
        logger.info(f"Queued pause notifications for {len(members)} member(s) of group {group_id}")
        return len(members)

    async def reactivate_group(self, group_id: str) -> bool:
        """
        Reactivate a paused group.

        Clears the pause reason and re-triggers work: a cycle in progress
        is resumed and its failed payments below the retry cap get retry
        jobs; otherwise the next cycle is scheduled. Retry counts and
        payment history are kept.

        Returns:
            True if the group was paused before
        """
        effects = CycleEffects()
        min_delay_ms = self.settings.schedule_min_delay_seconds * 1000
        stamp = int(self.clock().timestamp())

        async with self.uow.transaction() as repos:
            group = await repos.groups.get_for_update(group_id)
            if group is None:
                raise CycleConfigurationError(group_id, "group not found")

            was_paused = group.status == GroupStatus.PAUSED.value
            group.status = GroupStatus.ACTIVE.value
            group.pause_reason = None
            in_progress = group.cycle_started
            capped: list[str] = []

            if in_progress:
                payments = await repos.payments.find_by_cycle(group.id, group.current_cycle_number)
                for payment in payments:
                    if not payment.is_failed:
                        continue
                    if payment.retry_count >= self.settings.payment_max_retries:
                        capped.append(payment.id)
                    else:
                        effects.add_job(
                            JobKind.RETRY_PAYMENT,
                            RetryPaymentPayload(group_id=group.id, payment_id=payment.id),
                            self._job_options(min_delay_ms),
                            job_id=f"retry-payment:{payment.id}:{payment.retry_count}",
                        )
                effects.add_job(
                    JobKind.RUN_CYCLE,
                    RunCyclePayload(group_id=group.id),
                    self._job_options(min_delay_ms),
                    job_id=f"run-cycle:{group.id}:resume:{stamp}",
                )

        await effects.publish(self.queue)
        if not in_progress:
            await self.scheduler.schedule_next(group_id)

        if capped:
            logger.warning(
                f"Group {group_id} reactivated with {len(capped)} payment(s) at the retry cap "
                f"({', '.join(capped)}); cycle {group.current_cycle_number} cannot finalize "
                f"until they succeed through a processor callback"
            )
        logger.info(f"Group {group_id} reactivated (was paused: {was_paused})")
        return was_paused
