"""
Payment gateway adapters.

The cycle engine talks to the external payment processor only through
the PaymentGateway interface.
"""

from app.services.payment_gateway.base import (
    ChargeRequest,
    ChargeResult,
    ChargeStatus,
    PaymentGateway,
)
from app.services.payment_gateway.guarded import GuardedPaymentGateway
from app.services.payment_gateway.http_gateway import HttpPaymentGateway

__all__ = [
    "ChargeRequest",
    "ChargeResult",
    "ChargeStatus",
    "GuardedPaymentGateway",
    "HttpPaymentGateway",
    "PaymentGateway",
]
