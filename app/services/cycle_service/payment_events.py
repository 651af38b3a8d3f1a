"""
Payment processor callbacks.

Applies the asynchronous terminal status of a charge to its Payment row.
Idempotent: replaying a callback never changes state twice.
"""

from loguru import logger

from app.models.enums import PaymentStatus, TransactionType
from app.models.payment import Payment
from app.repositories.unit_of_work import UnitOfWork
from app.services.cycle_service.core import CycleService
from app.services.cycle_service.effects import CycleEffects
from app.services.payment_gateway.base import ChargeStatus
from app.utils.exceptions import CycleIntegrityError
from jobs.queue.base import JobQueue


class PaymentEventHandler:
    """Boundary between processor callbacks and the cycle engine."""

    def __init__(self, uow: UnitOfWork, queue: JobQueue, cycle_service: CycleService) -> None:
        self.uow = uow
        self.queue = queue
        self.cycle_service = cycle_service

    async def apply_charge_status(
        self,
        external_ref: str,
        status: ChargeStatus | str,
        failure_message: str | None = None,
    ) -> Payment | None:
        """
        Apply a processor-reported charge status.

        - succeeded: Pending/Failed -> Successful, the contributor is
          settled and finalization is attempted
        - failed: Pending -> Failed with retry_count + 1, then the
          retry-or-pause rule
        - processing: no change

        Args:
            external_ref: Processor charge reference
            status: Reported status
            failure_message: Processor failure message

        Returns:
            The payment, or None for an unknown reference
        """
        status = ChargeStatus(status)
        effects = CycleEffects()
        settled = False

        async with self.uow.transaction() as repos:
            payment = await repos.payments.get_by_external_ref(external_ref, for_update=True)
            if payment is None:
                logger.warning(f"Charge callback for unknown reference {external_ref}")
                return None

            if status == ChargeStatus.PROCESSING:
                logger.debug(f"Payment {payment.id} still processing")
                return payment

            if status == ChargeStatus.SUCCEEDED:
                if payment.status == PaymentStatus.SUCCESSFUL.value:
                    return payment
                payment.status = PaymentStatus.SUCCESSFUL.value
                payment.failure_reason = None

                membership = await repos.memberships.get_by_group_and_user(
                    payment.group_id, payment.user_id
                )
                group = await repos.groups.get_by_id(payment.group_id)
                if (
                    membership is not None
                    and group is not None
                    and payment.cycle_number == group.current_cycle_number
                ):
                    if not await repos.memberships.set_has_been_paid(membership.id, True):
                        raise CycleIntegrityError(
                            f"Settled flag for membership {membership.id} did not persist"
                        )
                    settled = True
                logger.info(
                    f"Payment {payment.id} confirmed for user {payment.user_id} "
                    f"in group {payment.group_id} cycle {payment.cycle_number}"
                )

            elif status == ChargeStatus.FAILED:
                if payment.status != PaymentStatus.PENDING.value:
                    logger.debug(
                        f"Ignoring failure callback for payment {payment.id} "
                        f"in status {payment.status}"
                    )
                    return payment

                group = await repos.groups.get_for_update(payment.group_id)
                user = await repos.users.get_by_id(payment.user_id)
                payment.status = PaymentStatus.FAILED.value
                payment.retry_count += 1
                payment.failure_reason = failure_message or "Charge failed"
                await repos.transactions.create(
                    group_id=payment.group_id,
                    user_id=payment.user_id,
                    payment_id=payment.id,
                    cycle_number=payment.cycle_number,
                    type=TransactionType.DEBIT.value,
                    amount=payment.amount,
                    fee=payment.fee,
                    status=payment.status,
                    external_ref=payment.external_ref,
                    description="Contribution charge failed (processor callback)",
                )
                logger.warning(
                    f"Payment {payment.id} failed asynchronously "
                    f"(retry_count={payment.retry_count}): {payment.failure_reason}"
                )
                if group is not None and user is not None:
                    await self.cycle_service.charger.escalate(
                        repos, group, payment, user, effects
                    )

        await effects.publish(self.queue)
        if settled:
            # A finalizing callback owns the next schedule even while a job holds the lease
            await self.cycle_service.check_and_finalize_cycle(
                payment.group_id, allow_in_flight=True
            )
        return payment
