"""
Circuit-breaker guarded gateway.
"""

from app.services.payment_gateway.base import ChargeRequest, ChargeResult, PaymentGateway
from app.utils.circuit_breaker import CircuitBreaker


class GuardedPaymentGateway:
    """
    Route every charge through a circuit breaker.

    While the circuit is open ``create_charge`` returns the breaker's
    fallback (None) without calling the processor; callers treat None
    as "skip this member for now".
    """

    def __init__(self, gateway: PaymentGateway, breaker: CircuitBreaker) -> None:
        self.gateway = gateway
        self.breaker = breaker

    async def create_charge(self, request: ChargeRequest) -> ChargeResult | None:
        return await self.breaker.execute(lambda: self.gateway.create_charge(request))

    async def close(self) -> None:
        await self.gateway.close()
