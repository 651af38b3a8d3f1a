"""
Group cycle audit model.

Written once when a cycle resolves; never updated afterwards.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base
from app.models.types import MoneyType


class GroupCycle(Base):
    """Immutable record of a finalized cycle."""

    __tablename__ = "group_cycles"
    __table_args__ = (
        UniqueConstraint("group_id", "cycle_number", name="uq_group_cycle_number"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    group_id: Mapped[str] = mapped_column(
        ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True
    )
    cycle_number: Mapped[int] = mapped_column(Integer, nullable=False)
    payee_user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    total_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    successful_payments: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_payments: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pending_payments: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_members: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cycle_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    def __repr__(self) -> str:
        return (
            f"<GroupCycle(group={self.group_id}, cycle={self.cycle_number}, "
            f"total={self.total_amount}, status={self.status})>"
        )
