"""
User model.

Only the fields the cycle engine needs: contact details for notifications,
the verified payment method used for contributions and the payout account
that receives a cycle's pooled contributions.
"""

import uuid

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin


class User(TimestampMixin, Base):
    """Group member identity and payment setup."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Contribution side (direct debit)
    payment_customer_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_method_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    mandate_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_method_verified: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    # Payout side (connected account receiving the pool)
    payout_account_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)

    @property
    def has_verified_payment_method(self) -> bool:
        """Check that the user can be debited."""
        return bool(
            self.payment_method_verified
            and self.payment_customer_ref
            and self.payment_method_ref
        )

    @property
    def full_name(self) -> str:
        """Display name for notifications."""
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) if parts else self.email

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"
