"""
Payment repository.

Data access layer for Payment model.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.enums import GroupStatus, PaymentStatus
from app.models.group import Group
from app.models.payment import Payment
from app.repositories.base import BaseRepository


class PaymentRepository(BaseRepository[Payment]):
    """Payment repository with idempotency and retry queries."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize payment repository."""
        super().__init__(Payment, session)

    async def get_for_update(self, payment_id: str) -> Payment | None:
        """Load a payment and lock its row."""
        stmt = select(Payment).where(Payment.id == payment_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_for_member_cycle(
        self, user_id: str, group_id: str, cycle_number: int
    ) -> Payment | None:
        """
        Get the payment for the idempotency key (member, group, cycle).

        Args:
            user_id: Member's user ID
            group_id: Group ID
            cycle_number: Cycle number

        Returns:
            Existing payment or None
        """
        return await self.get_by(
            user_id=user_id, group_id=group_id, cycle_number=cycle_number
        )

    async def find_by_cycle(self, group_id: str, cycle_number: int) -> list[Payment]:
        """Get every payment recorded for one cycle of a group."""
        return await self.find_by(group_id=group_id, cycle_number=cycle_number)

    async def get_by_external_ref(
        self, external_ref: str, for_update: bool = False
    ) -> Payment | None:
        """
        Get payment by processor reference.

        Args:
            external_ref: Processor-assigned charge reference
            for_update: Lock the row

        Returns:
            Payment or None
        """
        stmt = select(Payment).where(Payment.external_ref == external_ref)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_retryable(self, max_retries: int) -> list[Payment]:
        """
        Failed payments below the retry cap in active groups.

        Args:
            max_retries: Retry cap

        Returns:
            Payments ordered oldest first
        """
        stmt = (
            select(Payment)
            .join(Group, Group.id == Payment.group_id)
            .where(
                Payment.status == PaymentStatus.FAILED.value,
                Payment.retry_count < max_retries,
                Group.status == GroupStatus.ACTIVE.value,
            )
            .order_by(Payment.updated_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
