"""
Group cycle repository.

Data access layer for GroupCycle audit rows. Rows are created, never updated.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.group_cycle import GroupCycle
from app.repositories.base import BaseRepository


class GroupCycleRepository(BaseRepository[GroupCycle]):
    """Group cycle repository."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize group cycle repository."""
        super().__init__(GroupCycle, session)

    async def find_by_group(self, group_id: str) -> list[GroupCycle]:
        """Get all finalized cycles of a group in order."""
        stmt = (
            select(GroupCycle)
            .where(GroupCycle.group_id == group_id)
            .order_by(GroupCycle.cycle_number)
        )
        return await self._all(stmt)
