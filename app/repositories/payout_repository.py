"""
Payout repository.

Data access layer for Payout model.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.payout import Payout
from app.repositories.base import BaseRepository


class PayoutRepository(BaseRepository[Payout]):
    """Payout repository."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize payout repository."""
        super().__init__(Payout, session)

    async def get_for_cycle(self, group_id: str, cycle_number: int) -> Payout | None:
        """Get the payout of one cycle of a group."""
        return await self.get_by(group_id=group_id, cycle_number=cycle_number)

    async def find_paid_user_ids(self, group_id: str, before_cycle: int) -> set[str]:
        """
        Users that received a payout in an earlier cycle.

        Args:
            group_id: Group ID
            before_cycle: Only cycles strictly before this number count

        Returns:
            Set of user IDs
        """
        stmt = select(Payout.user_id).where(
            Payout.group_id == group_id,
            Payout.cycle_number < before_cycle,
        )
        result = await self.session.execute(stmt)
        return set(result.scalars().all())
