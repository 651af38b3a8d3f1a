"""
Group repository.

Data access layer for Group model.
"""

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.enums import GroupStatus
from app.models.group import Group
from app.repositories.base import BaseRepository


class GroupRepository(BaseRepository[Group]):
    """Group repository with cycle-engine queries."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize group repository."""
        super().__init__(Group, session)

    async def get_for_update(self, group_id: str) -> Group | None:
        """
        Load a group and lock its row for the rest of the transaction.

        The group row is the serialization point for cycle execution.

        Args:
            group_id: Group ID

        Returns:
            Locked group or None
        """
        stmt = select(Group).where(Group.id == group_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_schedulable(self) -> list[Group]:
        """Active groups waiting for their next cycle."""
        stmt = (
            select(Group)
            .where(
                Group.status == GroupStatus.ACTIVE.value,
                Group.cycle_started.is_(False),
                Group.cycles_completed.is_(False),
                Group.next_cycle_date.is_not(None),
            )
            .order_by(Group.next_cycle_date)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def find_in_progress(self) -> list[Group]:
        """Active groups with a cycle mid-execution."""
        stmt = select(Group).where(
            Group.status == GroupStatus.ACTIVE.value,
            Group.cycle_started.is_(True),
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def find_due_between(self, start: datetime, end: datetime) -> list[Group]:
        """
        Active groups whose next cycle falls in [start, end).

        Args:
            start: Window start (inclusive)
            end: Window end (exclusive)

        Returns:
            Groups ordered by next cycle date
        """
        stmt = (
            select(Group)
            .where(
                Group.status == GroupStatus.ACTIVE.value,
                Group.cycles_completed.is_(False),
                Group.next_cycle_date >= start,
                Group.next_cycle_date < end,
            )
            .order_by(Group.next_cycle_date)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
