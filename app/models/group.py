"""
Group model.

The group is the root aggregate of a rotating savings cycle. It owns its
memberships, payments, payouts, cycle audit rows and ledger entries, and
its row is the serialization point for cycle execution.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, CheckConstraint, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, TimestampMixin
from app.models.enums import GroupStatus
from app.models.types import CycleDateList, MoneyType


if TYPE_CHECKING:
    from app.models.membership import GroupMembership


class Group(TimestampMixin, Base):
    """
    Savings group.

    Cycle bookkeeping:
    - cycle N (1-based) is total_group_cycles_completed + 1
    - future_cycle_dates[N - 1] is the agreed date of cycle N
    - next_cycle_date is None only once cycles_completed is True
    """

    __tablename__ = "groups"
    __table_args__ = (
        CheckConstraint(
            "contribution_amount IS NULL OR contribution_amount > 0",
            name="check_group_contribution_positive",
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    contribution_amount: Mapped[Decimal | None] = mapped_column(MoneyType, nullable=True)
    cycle_frequency: Mapped[str | None] = mapped_column(String(20), nullable=True)

    next_cycle_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    future_cycle_dates: Mapped[list[datetime] | None] = mapped_column(
        CycleDateList, nullable=True, comment="One agreed date per cycle"
    )

    cycle_started: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, comment="A cycle is mid-execution"
    )
    total_group_cycles_completed: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    current_member_cycle_number: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        comment="Payout-order position of the current cycle's payee",
    )
    cycles_completed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, comment="No cycles remain"
    )

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=GroupStatus.ACTIVE.value, index=True
    )
    pause_reason: Mapped[str | None] = mapped_column(String(40), nullable=True)

    memberships: Mapped[list["GroupMembership"]] = relationship(
        "GroupMembership", back_populates="group", cascade="all, delete-orphan"
    )

    @property
    def current_cycle_number(self) -> int:
        """Number of the cycle currently due or running."""
        return self.total_group_cycles_completed + 1

    @property
    def is_active(self) -> bool:
        """Check if group is active."""
        return self.status == GroupStatus.ACTIVE.value

    def __repr__(self) -> str:
        return (
            f"<Group(id={self.id}, status={self.status}, "
            f"cycle={self.current_cycle_number}, started={self.cycle_started})>"
        )
