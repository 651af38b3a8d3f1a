"""
HTTP payment gateway.

JSON client for a generic processor endpoint:

    POST {base_url}/charges
    Authorization: Bearer <api key>
    Idempotency-Key: <payment key>

    200/201 -> {"id": "...", "status": "succeeded|processing|failed", "failure_message": ...}
    402/4xx with decline -> PaymentDeclinedError
    anything else -> PaymentGatewayError
"""

from typing import Any

import aiohttp
from loguru import logger

from app.services.payment_gateway.base import (
    ChargeRequest,
    ChargeResult,
    ChargeStatus,
    PaymentGateway,
)
from app.utils.exceptions import PaymentDeclinedError, PaymentGatewayError

DECLINE_STATUS_CODES = {400, 402, 422}


class HttpPaymentGateway(PaymentGateway):
    """aiohttp client for the payment processor."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        timeout: float,
    ) -> None:
        """
        Initialize gateway.

        Args:
            base_url: Processor API base URL
            api_key: Bearer token
            timeout: Total request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._session = aiohttp.ClientSession(headers=headers, timeout=self.timeout)
        return self._session

    async def create_charge(self, request: ChargeRequest) -> ChargeResult:
        """Submit a charge to the processor."""
        payload: dict[str, Any] = {
            "amount": str(request.amount),
            "currency": request.currency,
            "customer": request.payer_ref,
            "payment_method": request.payment_method_ref,
            "mandate": request.mandate_ref,
            "destination": request.destination_account_ref,
            "application_fee": str(request.application_fee),
            "metadata": request.metadata,
        }

        session = await self._get_session()
        try:
            async with session.post(
                f"{self.base_url}/charges",
                json=payload,
                headers={"Idempotency-Key": request.idempotency_key},
            ) as response:
                data = await response.json(content_type=None)
                if response.status in (200, 201):
                    return self._parse_result(data)
                message = self._error_message(data, response.status)
                if response.status in DECLINE_STATUS_CODES:
                    raise PaymentDeclinedError(message)
                raise PaymentGatewayError(message)
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.warning(f"Payment processor request failed: {e}")
            raise PaymentGatewayError(f"Processor unreachable: {e}") from e
        except ValueError as e:
            raise PaymentGatewayError(f"Malformed processor response: {e}") from e

    @staticmethod
    def _parse_result(data: Any) -> ChargeResult:
        if not isinstance(data, dict) or "id" not in data:
            raise PaymentGatewayError(f"Unexpected processor response: {data!r}")
        try:
            status = ChargeStatus(str(data.get("status", "processing")))
        except ValueError as e:
            raise PaymentGatewayError(f"Unknown charge status: {data.get('status')}") from e
        return ChargeResult(
            external_ref=str(data["id"]),
            status=status,
            failure_message=data.get("failure_message"),
        )

    @staticmethod
    def _error_message(data: Any, status: int) -> str:
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict):
                return str(error.get("message") or error)
            if error:
                return str(error)
        return f"Processor returned HTTP {status}"

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
