"""
Group membership repository.

Data access layer for GroupMembership model.
"""

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from app.models.enums import MembershipStatus
from app.models.membership import GroupMembership
from app.repositories.base import BaseRepository


class MembershipRepository(BaseRepository[GroupMembership]):
    """Membership repository with rotation queries."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize membership repository."""
        super().__init__(GroupMembership, session)

    async def find_active_by_group(self, group_id: str) -> list[GroupMembership]:
        """
        Get active memberships in payout order, with users loaded.

        Args:
            group_id: Group ID

        Returns:
            Memberships ordered by payout_order
        """
        stmt = (
            select(GroupMembership)
            .where(
                GroupMembership.group_id == group_id,
                GroupMembership.status == MembershipStatus.ACTIVE.value,
            )
            .options(joinedload(GroupMembership.user))
            .order_by(GroupMembership.payout_order)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().unique().all())

    async def get_by_group_and_user(
        self, group_id: str, user_id: str
    ) -> GroupMembership | None:
        """Get the membership of a user in a group."""
        return await self.get_by(group_id=group_id, user_id=user_id)

    async def set_has_been_paid(self, membership_id: str, value: bool) -> bool:
        """
        Set the settled flag and read it back.

        Args:
            membership_id: Membership ID
            value: New flag value

        Returns:
            True if the stored value now equals ``value``
        """
        await self.session.execute(
            update(GroupMembership)
            .where(GroupMembership.id == membership_id)
            .values(has_been_paid=value)
            .execution_options(synchronize_session="fetch")
        )
        await self.session.flush()
        stored = await self.session.scalar(
            select(GroupMembership.has_been_paid).where(
                GroupMembership.id == membership_id
            )
        )
        return stored is value

    async def reset_paid_flags(self, group_id: str) -> int:
        """
        Clear has_been_paid on every membership of a group.

        Args:
            group_id: Group ID

        Returns:
            Number of memberships updated
        """
        result = await self.session.execute(
            update(GroupMembership)
            .where(GroupMembership.group_id == group_id)
            .values(has_been_paid=False)
            .execution_options(synchronize_session="fetch")
        )
        await self.session.flush()
        return result.rowcount or 0
