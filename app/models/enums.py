"""
Enum definitions for models.
"""

from enum import Enum


class GroupStatus(str, Enum):
    """Group lifecycle status."""

    ACTIVE = "Active"
    PAUSED = "Paused"


class PauseReason(str, Enum):
    """Why a group was paused."""

    PAYMENT_FAILURES = "PAYMENT_FAILURES"
    REFUND_ALL = "REFUND_ALL"
    INACTIVE_SUBSCRIPTION = "INACTIVE_SUBSCRIPTION"
    OTHER = "OTHER"


class CycleFrequency(str, Enum):
    """How often a group's cycles run."""

    DAILY = "Daily"
    WEEKLY = "Weekly"
    BIWEEKLY = "BiWeekly"
    MONTHLY = "Monthly"


class MembershipStatus(str, Enum):
    """Group membership status."""

    ACTIVE = "Active"
    INACTIVE = "Inactive"
    PENDING = "Pending"


class PaymentStatus(str, Enum):
    """Contribution payment status."""

    PENDING = "Pending"
    SUCCESSFUL = "Successful"
    FAILED = "Failed"


class PayoutStatus(str, Enum):
    """Payout status (mirrors the payment lifecycle)."""

    PENDING = "Pending"
    SUCCESSFUL = "Successful"
    FAILED = "Failed"


class CycleStatus(str, Enum):
    """Outcome recorded on a group cycle audit row."""

    COMPLETED = "Completed"
    PARTIAL = "Partial"
    FAILED = "Failed"


class TransactionType(str, Enum):
    """Ledger entry direction."""

    DEBIT = "Debit"
    CREDIT = "Credit"
