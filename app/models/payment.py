"""
Payment model.

One contribution charge per (member, group, cycle). The unique key on
that triple is what keeps re-delivered jobs from charging a member twice.
"""

import uuid
from decimal import Decimal

from sqlalchemy import ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin
from app.models.enums import PaymentStatus
from app.models.types import MoneyType


class Payment(TimestampMixin, Base):
    """
    Contribution payment.

    Lifecycle:
    - Pending: charge initiated, waiting for the processor callback
    - Successful: processor confirmed the charge
    - Failed: charge rejected; retried while retry_count is below the cap
    """

    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "group_id", "cycle_number", name="uq_payment_user_group_cycle"
        ),
        Index("idx_payment_group_cycle", "group_id", "cycle_number"),
        Index("idx_payment_status_retry", "status", "retry_count"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    group_id: Mapped[str] = mapped_column(
        ForeignKey("groups.id", ondelete="CASCADE"), nullable=False
    )
    cycle_number: Mapped[int] = mapped_column(Integer, nullable=False)

    amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    fee: Mapped[Decimal] = mapped_column(
        MoneyType, nullable=False, default=Decimal("0.00"), comment="Processor fee of the last attempt"
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    external_ref: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True, index=True
    )
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def is_failed(self) -> bool:
        """Check if payment is failed."""
        return self.status == PaymentStatus.FAILED.value

    @property
    def is_successful(self) -> bool:
        """Check if payment is confirmed."""
        return self.status == PaymentStatus.SUCCESSFUL.value

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, user={self.user_id}, group={self.group_id}, "
            f"cycle={self.cycle_number}, status={self.status}, retries={self.retry_count})>"
        )
