"""
Payout model.
"""

import uuid
from decimal import Decimal

from sqlalchemy import ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin
from app.models.enums import PayoutStatus
from app.models.types import MoneyType


class Payout(TimestampMixin, Base):
    """
    Aggregate credit to the payee of one cycle.

    Recorded Pending at the end of the charging pass and marked
    Successful when the cycle is finalized.
    """

    __tablename__ = "payouts"
    __table_args__ = (
        UniqueConstraint("group_id", "cycle_number", name="uq_payout_group_cycle"),
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
    cycle_number: Mapped[int] = mapped_column(Integer, nullable=False)
    payout_order: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PayoutStatus.PENDING.value
    )
    external_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Payout(group={self.group_id}, cycle={self.cycle_number}, "
            f"user={self.user_id}, amount={self.amount}, status={self.status})>"
        )
