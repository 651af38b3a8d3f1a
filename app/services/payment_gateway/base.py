"""
Abstract payment gateway interface.

Only the contract the cycle engine needs: create a charge that debits a
member and routes the funds to the payee's payout account.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum


class ChargeStatus(str, Enum):
    """Processor-reported charge status."""

    SUCCEEDED = "succeeded"
    PROCESSING = "processing"
    FAILED = "failed"


@dataclass
class ChargeRequest:
    """Request to debit one member for one cycle."""

    amount: Decimal
    currency: str
    payer_ref: str
    payment_method_ref: str
    mandate_ref: str | None
    destination_account_ref: str
    application_fee: Decimal
    idempotency_key: str
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class ChargeResult:
    """Synchronous answer to a charge request."""

    external_ref: str
    status: ChargeStatus
    failure_message: str | None = None

    @property
    def failed(self) -> bool:
        return self.status == ChargeStatus.FAILED


class PaymentGateway(ABC):
    """Abstract base class for payment processors."""

    @abstractmethod
    async def create_charge(self, request: ChargeRequest) -> ChargeResult:
        """
        Submit a charge to the processor.

        The final outcome of a charge accepted here (``processing`` or
        ``succeeded``) arrives later through the processor callback,
        keyed by ``external_ref``.

        Raises:
            PaymentDeclinedError: Processor refused the charge.
            PaymentGatewayError: Transient failure (network, 5xx, timeout).
        """
        ...

    async def close(self) -> None:
        """Release network resources."""
