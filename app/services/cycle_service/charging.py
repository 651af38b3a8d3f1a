"""
Member charging.

Debits one member for one cycle through the circuit-breaker guarded
gateway and records the outcome: a Payment row plus a ledger entry per
attempt, and the retry or pause escalation for failures.
"""

from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from enum import Enum

from loguru import logger

from app.config.settings import Settings
from app.models.enums import PauseReason, PaymentStatus, TransactionType
from app.models.group import Group
from app.models.membership import GroupMembership
from app.models.payment import Payment
from app.models.user import User
from app.repositories.unit_of_work import Repositories
from app.services.cycle_service.effects import CycleEffects, mark_group_paused
from app.services.cycle_service.fees import calculate_processor_fee
from app.services.notification_service import payment_failed_event
from app.services.payment_gateway.base import ChargeRequest, ChargeResult
from app.services.payment_gateway.guarded import GuardedPaymentGateway
from app.utils.datetime_utils import utc_now
from app.utils.exceptions import PaymentGatewayError
from jobs.queue.base import JobKind, JobOptions, RetryPaymentPayload


class ChargeOutcome(str, Enum):
    """What happened to one member in one pass."""

    CHARGED = "charged"
    FAILED = "failed"
    EXISTING = "existing"
    UNVERIFIED = "unverified"
    DEFERRED = "deferred"


class MemberCharger:
    """Charges members and escalates failures."""

    def __init__(
        self,
        gateway: GuardedPaymentGateway,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.gateway = gateway
        self.settings = settings
        self.clock = clock

    def fee_for(self, amount: Decimal, retry_count: int) -> Decimal:
        """Processor fee for an attempt made after ``retry_count`` failures."""
        return calculate_processor_fee(
            amount,
            retry_count,
            percent=self.settings.processor_fee_percent,
            fixed_fee=self.settings.processor_fixed_fee,
            cap=self.settings.processor_fee_cap,
            retry_surcharge=self.settings.retry_fee_surcharge,
        )

    async def charge_member(
        self,
        repos: Repositories,
        group: Group,
        member: GroupMembership,
        payee: GroupMembership,
        cycle_number: int,
        effects: CycleEffects,
        test_mode: bool = False,
    ) -> ChargeOutcome:
        """
        Make the first charge attempt of a member for a cycle.

        Args:
            repos: Repositories of the open transaction
            group: Group (locked)
            member: Contributing membership
            payee: Membership receiving this cycle's payout
            cycle_number: Current cycle
            effects: Post-commit collector
            test_mode: Flag the charge as a test charge

        Returns:
            Outcome for this member
        """
        existing = await repos.payments.get_for_member_cycle(
            member.user_id, group.id, cycle_number
        )
        if existing is not None:
            logger.debug(
                f"Payment exists for user {member.user_id} in group {group.id} "
                f"cycle {cycle_number} ({existing.status}), skipping"
            )
            return ChargeOutcome.EXISTING

        user = member.user
        if not user.has_verified_payment_method:
            logger.warning(
                f"User {user.id} in group {group.id} has no verified payment method, "
                f"skipping charge for cycle {cycle_number}"
            )
            return ChargeOutcome.UNVERIFIED

        amount = group.contribution_amount
        fee = self.fee_for(amount, 0)
        request = self._build_request(
            group, user, payee.user, amount, fee, cycle_number, 0, test_mode
        )

        result, reason = await self._attempt(request)
        if result is None and reason is None:
            logger.warning(
                f"Payment processor circuit open, deferring user {user.id} "
                f"in group {group.id}"
            )
            return ChargeOutcome.DEFERRED

        if reason is not None:
            payment = await repos.payments.create(
                user_id=user.id,
                group_id=group.id,
                cycle_number=cycle_number,
                amount=amount,
                fee=fee,
                status=PaymentStatus.FAILED.value,
                retry_count=1,
                external_ref=result.external_ref if result else None,
                failure_reason=reason,
            )
            await self._record_ledger(repos, payment, fee, "Contribution charge failed")
            logger.warning(
                f"Charge failed for user {user.id} in group {group.id} "
                f"cycle {cycle_number}: {reason}"
            )
            await self.escalate(repos, group, payment, user, effects)
            return ChargeOutcome.FAILED

        payment = await repos.payments.create(
            user_id=user.id,
            group_id=group.id,
            cycle_number=cycle_number,
            amount=amount,
            fee=fee,
            status=PaymentStatus.PENDING.value,
            retry_count=0,
            external_ref=result.external_ref,
        )
        await self._record_ledger(repos, payment, fee, "Contribution charge initiated")
        logger.info(
            f"Charged user {user.id} {amount} (fee {fee}) for group {group.id} "
            f"cycle {cycle_number}, ref {result.external_ref}"
        )
        return ChargeOutcome.CHARGED

    async def retry_charge(
        self,
        repos: Repositories,
        group: Group,
        payment: Payment,
        user: User,
        payee_user: User,
        effects: CycleEffects,
        test_mode: bool = False,
    ) -> ChargeOutcome:
        """
        Retry a failed payment with the retry surcharge.

        Success moves the payment back to Pending under its new processor
        reference; failure increments retry_count and escalates.
        """
        fee = self.fee_for(payment.amount, payment.retry_count)
        request = self._build_request(
            group,
            user,
            payee_user,
            payment.amount,
            fee,
            payment.cycle_number,
            payment.retry_count,
            test_mode,
        )

        result, reason = await self._attempt(request)
        if result is None and reason is None:
            logger.warning(
                f"Payment processor circuit open, deferring retry of payment {payment.id}"
            )
            return ChargeOutcome.DEFERRED

        payment.fee = fee
        if reason is not None:
            payment.retry_count += 1
            payment.failure_reason = reason
            if result is not None:
                payment.external_ref = result.external_ref
            await self._record_ledger(repos, payment, fee, "Contribution retry failed")
            logger.warning(
                f"Retry of payment {payment.id} failed "
                f"(retry_count={payment.retry_count}): {reason}"
            )
            await self.escalate(repos, group, payment, user, effects)
            return ChargeOutcome.FAILED

        payment.status = PaymentStatus.PENDING.value
        payment.external_ref = result.external_ref
        payment.failure_reason = None
        await self._record_ledger(repos, payment, fee, "Contribution retry initiated")
        logger.info(
            f"Retry of payment {payment.id} accepted (fee {fee}), ref {result.external_ref}"
        )
        return ChargeOutcome.CHARGED

    async def escalate(
        self,
        repos: Repositories,
        group: Group,
        payment: Payment,
        user: User,
        effects: CycleEffects,
    ) -> bool:
        """
        Apply the retry-or-pause rule to a failed payment.

        Below the retry cap a retry job is queued after the retry delay;
        at the cap the group is paused with PAYMENT_FAILURES.

        Returns:
            True if the group was paused
        """
        effects.notify(
            payment_failed_event(
                user, group, payment.amount, payment.retry_count, payment.failure_reason
            )
        )
        if not group.is_active:
            return False

        if payment.retry_count < self.settings.payment_max_retries:
            effects.add_job(
                JobKind.RETRY_PAYMENT,
                RetryPaymentPayload(group_id=group.id, payment_id=payment.id),
                JobOptions(
                    delay_ms=self.settings.payment_retry_delay_seconds * 1000,
                    attempts=self.settings.job_default_attempts,
                    backoff_ms=self.settings.job_backoff_base_ms,
                    max_backoff_ms=self.settings.job_backoff_max_ms,
                ),
                job_id=f"retry-payment:{payment.id}:{payment.retry_count}",
            )
            return False

        logger.error(
            f"Payment {payment.id} reached {payment.retry_count} failures, "
            f"pausing group {group.id}"
        )
        return mark_group_paused(
            group,
            PauseReason.PAYMENT_FAILURES,
            effects,
            JobOptions(
                attempts=self.settings.job_default_attempts,
                backoff_ms=self.settings.job_backoff_base_ms,
                max_backoff_ms=self.settings.job_backoff_max_ms,
            ),
            self.clock(),
        )

    async def _attempt(
        self, request: ChargeRequest
    ) -> tuple[ChargeResult | None, str | None]:
        """
        Send one charge.

        Returns:
            (result, failure reason). (None, None) means the circuit is open.
        """
        try:
            result = await self.gateway.create_charge(request)
        except PaymentGatewayError as e:
            return None, str(e) or type(e).__name__
        if result is None:
            return None, None
        if result.failed:
            return result, result.failure_message or "Charge failed"
        return result, None

    def _build_request(
        self,
        group: Group,
        user: User,
        payee_user: User,
        amount: Decimal,
        fee: Decimal,
        cycle_number: int,
        attempt: int,
        test_mode: bool,
    ) -> ChargeRequest:
        metadata = {
            "group_id": group.id,
            "user_id": user.id,
            "cycle_number": str(cycle_number),
            "attempt": str(attempt),
        }
        if test_mode:
            metadata["test_mode"] = "true"
        return ChargeRequest(
            amount=amount,
            currency=self.settings.currency,
            payer_ref=user.payment_customer_ref,
            payment_method_ref=user.payment_method_ref,
            mandate_ref=user.mandate_ref,
            destination_account_ref=payee_user.payout_account_ref,
            application_fee=fee,
            idempotency_key=f"contribution:{group.id}:{cycle_number}:{user.id}:{attempt}",
            metadata=metadata,
        )

    @staticmethod
    async def _record_ledger(
        repos: Repositories, payment: Payment, fee: Decimal, description: str
    ) -> None:
        await repos.transactions.create(
            group_id=payment.group_id,
            user_id=payment.user_id,
            payment_id=payment.id,
            cycle_number=payment.cycle_number,
            type=TransactionType.DEBIT.value,
            amount=payment.amount,
            fee=fee,
            status=payment.status,
            external_ref=payment.external_ref,
            description=description,
        )
