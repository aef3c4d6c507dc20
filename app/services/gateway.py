"""
Payment Gateway - external charge/refund collaborator.

The core treats the gateway as fallible and does not retry it.
"""

import logging
import random
import secrets
import string
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

import httpx

from app.config import settings

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """
    Gateway rejected the request or could not be reached.

    ``requires_reconciliation`` is set when the request may have been acted on
    even though no answer arrived.
    """

    def __init__(
        self,
        message: str,
        code: str = "gateway_error",
        raw: Optional[Dict[str, Any]] = None,
        requires_reconciliation: bool = False,
    ):
        self.message = message
        self.code = code
        self.raw = raw or {}
        self.requires_reconciliation = requires_reconciliation
        super().__init__(message)

    def to_response(self) -> Dict[str, Any]:
        return {
            "error_code": self.code,
            "error_message": self.message,
            "raw": self.raw,
            "requires_reconciliation": self.requires_reconciliation,
        }


@dataclass
class GatewayCharge:
    transaction_id: str
    status: str = "succeeded"
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_response(self) -> Dict[str, Any]:
        return {"id": self.transaction_id, "status": self.status, "raw": self.raw}


@dataclass
class GatewayRefund:
    refund_id: str
    status: str = "succeeded"
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    async def charge(self, amount: Decimal, method: str) -> GatewayCharge:
        ...

    async def refund(self, transaction_id: str, amount: Decimal) -> GatewayRefund:
        ...


def _token(length: int) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


class MockGateway:
    """
    Local stand-in for a card processor.
    Succeeds with ``success_rate`` probability, otherwise fails with insufficient funds.
    """

    def __init__(self, success_rate: Optional[float] = None):
        self.success_rate = (
            settings.mock_gateway_success_rate if success_rate is None else success_rate
        )

    async def charge(self, amount: Decimal, method: str) -> GatewayCharge:
        if random.random() >= self.success_rate:
            raise GatewayError("Payment failed: Insufficient funds", code="insufficient_funds")

        transaction_id = f"pi_{_token(13)}"
        return GatewayCharge(
            transaction_id=transaction_id,
            raw={
                "id": transaction_id,
                "status": "succeeded",
                "amount": int(Decimal(amount) * 100),  # cents
                "currency": settings.default_currency.lower(),
                "payment_method": method,
            },
        )

    async def refund(self, transaction_id: str, amount: Decimal) -> GatewayRefund:
        refund_id = f"re_{_token(13)}"
        return GatewayRefund(
            refund_id=refund_id,
            raw={"id": refund_id, "payment_intent": transaction_id, "amount": int(Decimal(amount) * 100)},
        )


class HttpGateway:
    """Gateway client over a JSON HTTP API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.gateway_base_url).rstrip("/")
        self.api_key = api_key or settings.gateway_api_key
        self.timeout = timeout or settings.gateway_timeout_seconds
        self.transport = transport

        self.headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.base_url:
            raise GatewayError("Gateway base URL not configured", code="not_configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}{path}",
                    json=payload,
                    headers=self.headers,
                )
        except (httpx.ConnectTimeout, httpx.PoolTimeout) as e:
            # Request never left this process
            raise GatewayError(f"Gateway timed out before sending: {e}", code="timeout")
        except httpx.TimeoutException as e:
            raise GatewayError(
                f"Gateway timed out: {e}",
                code="timeout",
                requires_reconciliation=True,
            )
        except httpx.HTTPError as e:
            raise GatewayError(f"Gateway unreachable: {e}", code="unreachable")

        try:
            data = response.json()
        except ValueError:
            data = {"body": response.text[:500]}

        if response.status_code not in (200, 201):
            error = data.get("error", {}) if isinstance(data, dict) else {}
            logger.error(f"Gateway error {response.status_code}: {data}")
            raise GatewayError(
                error.get("message") or f"Gateway returned {response.status_code}",
                code=error.get("code") or f"http_{response.status_code}",
                raw=data,
            )
        return data

    async def charge(self, amount: Decimal, method: str) -> GatewayCharge:
        data = await self._post(
            "/charges",
            {
                "amount": int(Decimal(amount) * 100),
                "currency": settings.default_currency.lower(),
                "payment_method": method,
            },
        )
        if not data.get("id"):
            raise GatewayError("Gateway response missing transaction id", code="malformed", raw=data)
        return GatewayCharge(transaction_id=data["id"], status=data.get("status", "succeeded"), raw=data)

    async def refund(self, transaction_id: str, amount: Decimal) -> GatewayRefund:
        data = await self._post(
            "/refunds",
            {"payment_intent": transaction_id, "amount": int(Decimal(amount) * 100)},
        )
        if not data.get("id"):
            raise GatewayError("Gateway response missing refund id", code="malformed", raw=data)
        return GatewayRefund(refund_id=data["id"], status=data.get("status", "succeeded"), raw=data)


def get_gateway() -> PaymentGateway:
    """Gateway selected by settings.gateway_mode."""
    if settings.gateway_mode == "http":
        return HttpGateway()
    return MockGateway()
