"""
Database models.
"""

from app.models.base import Base
from app.models.enums import (
    CycleFrequency,
    CycleStatus,
    GroupStatus,
    MembershipStatus,
    PauseReason,
    PaymentStatus,
    PayoutStatus,
    TransactionType,
)
from app.models.group import Group
from app.models.group_cycle import GroupCycle
from app.models.membership import GroupMembership
from app.models.payment import Payment
from app.models.payout import Payout
from app.models.transaction import Transaction
from app.models.user import User

__all__ = [
    "Base",
    "CycleFrequency",
    "CycleStatus",
    "Group",
    "GroupCycle",
    "GroupMembership",
    "GroupStatus",
    "MembershipStatus",
    "PauseReason",
    "Payment",
    "PaymentStatus",
    "Payout",
    "PayoutStatus",
    "Transaction",
    "TransactionType",
    "User",
]
