"""
Group membership model.
"""

import uuid
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, TimestampMixin
from app.models.enums import MembershipStatus


if TYPE_CHECKING:
    from app.models.group import Group
    from app.models.user import User


class GroupMembership(TimestampMixin, Base):
    """
    Membership of one user in one group.

    payout_order defines the rotation (unique per group, contiguous over
    active memberships). has_been_paid marks the membership settled for
    the current cycle: the payee once its payout is recorded, a
    contributor once its contribution is confirmed. All flags are reset
    when the cycle is finalized.
    """

    __tablename__ = "group_memberships"
    __table_args__ = (
        UniqueConstraint("group_id", "payout_order", name="uq_membership_group_payout_order"),
        UniqueConstraint("group_id", "user_id", name="uq_membership_group_user"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    group_id: Mapped[str] = mapped_column(
        ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    payout_order: Mapped[int] = mapped_column(Integer, nullable=False)
    has_been_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MembershipStatus.ACTIVE.value
    )

    group: Mapped["Group"] = relationship("Group", back_populates="memberships")
    user: Mapped["User"] = relationship("User", lazy="joined")

    @property
    def is_active(self) -> bool:
        """Check if membership is active."""
        return self.status == MembershipStatus.ACTIVE.value

    def __repr__(self) -> str:
        return (
            f"<GroupMembership(group={self.group_id}, user={self.user_id}, "
            f"order={self.payout_order}, paid={self.has_been_paid})>"
        )
