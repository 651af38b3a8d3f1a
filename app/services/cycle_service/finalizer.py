"""
Cycle finalization.

A cycle resolves only when every active membership is settled and every
Payment of the cycle is Successful. Finalization writes the GroupCycle
audit row, marks the payout Successful and advances the group to the next
agreed date (or marks its cycles exhausted).
"""

from decimal import Decimal

from loguru import logger

from app.models.enums import CycleStatus, PaymentStatus, PayoutStatus
from app.models.group import Group
from app.models.group_cycle import GroupCycle
from app.repositories.unit_of_work import Repositories
from app.services.cycle_service.effects import CycleEffects
from app.services.notification_service import payout_recorded_event


class CycleFinalizer:
    """Finalization gate and advancement."""

    async def finalize_if_complete(
        self, repos: Repositories, group: Group, effects: CycleEffects
    ) -> GroupCycle | None:
        """
        Finalize the group's current cycle when it is fully resolved.

        Safe to call repeatedly; returns None without changes otherwise.

        Args:
            repos: Repositories of the open transaction
            group: Group loaded for update
            effects: Post-commit collector

        Returns:
            The new GroupCycle row, or None if the cycle is not resolved
        """
        if group.cycles_completed:
            return None

        cycle_number = group.current_cycle_number
        members = await repos.memberships.find_active_by_group(group.id)
        if not members:
            return None

        unsettled = [m.user_id for m in members if not m.has_been_paid]
        if unsettled:
            logger.debug(
                f"Group {group.id} cycle {cycle_number}: "
                f"{len(unsettled)} member(s) not settled, not finalizing"
            )
            return None

        payments = await repos.payments.find_by_cycle(group.id, cycle_number)
        open_payments = [
            p for p in payments if p.status != PaymentStatus.SUCCESSFUL.value
        ]
        if open_payments:
            logger.debug(
                f"Group {group.id} cycle {cycle_number}: "
                f"{len(open_payments)} payment(s) not successful, not finalizing"
            )
            return None

        payout = await repos.payouts.get_for_cycle(group.id, cycle_number)
        if payout is None:
            logger.warning(
                f"Group {group.id} cycle {cycle_number}: all members settled "
                f"but no payout recorded, not finalizing"
            )
            return None

        if await repos.cycles.exists(group_id=group.id, cycle_number=cycle_number):
            logger.error(
                f"Group {group.id} cycle {cycle_number} already has an audit row, "
                f"refusing to finalize twice"
            )
            return None

        dates = group.future_cycle_dates or []
        cycle_date = dates[cycle_number - 1] if cycle_number <= len(dates) else group.next_cycle_date
        total_amount = sum((p.amount for p in payments), Decimal("0.00"))

        cycle = await repos.cycles.create(
            group_id=group.id,
            cycle_number=cycle_number,
            payee_user_id=payout.user_id,
            total_amount=total_amount,
            status=CycleStatus.COMPLETED.value,
            successful_payments=len(payments),
            failed_payments=0,
            pending_payments=0,
            total_members=len(members),
            cycle_date=cycle_date,
        )

        await repos.payouts.update(payout.id, for_update=True, status=PayoutStatus.SUCCESSFUL.value)

        group.total_group_cycles_completed += 1
        group.current_member_cycle_number = 1
        group.cycle_started = False
        await repos.memberships.reset_paid_flags(group.id)

        if cycle_number < len(dates):
            group.next_cycle_date = dates[cycle_number]
        else:
            group.cycles_completed = True
            group.next_cycle_date = None

        payee = next((m for m in members if m.user_id == payout.user_id), None)
        if payee is not None:
            effects.notify(
                payout_recorded_event(payee.user, group, payout.amount, cycle_number)
            )

        logger.success(
            f"Group {group.id} cycle {cycle_number} finalized: "
            f"total {total_amount}, payee {payout.user_id}, "
            f"next {group.next_cycle_date.isoformat() if group.next_cycle_date else 'none (all cycles completed)'}"
        )
        return cycle
