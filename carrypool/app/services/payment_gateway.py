"""
Payment gateway adapters.

The escrow engine only talks to BasePaymentGateway. Every call carries an
idempotency key so a retried request never double-charges.
"""

import enum
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from carrypool.app.core.config import settings

logger = logging.getLogger(__name__)


class GatewayStatus(str, enum.Enum):
    APPROVED = "APPROVED"
    DECLINED = "DECLINED"


@dataclass
class GatewayResult:
    status: GatewayStatus
    gateway_txn_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def approved(self) -> bool:
        return self.status == GatewayStatus.APPROVED


class GatewayUnavailableError(Exception):
    """Transient failure (timeout, 5xx). Safe to retry with the same key."""


class BasePaymentGateway(ABC):
    """
    Abstract base class for payment gateways.
    Amounts are integer minor units.
    """

    def __init__(self, **kwargs):
        self.config = kwargs

    @abstractmethod
    async def authorize_payment(
        self, amount: int, currency: str, payment_method_id: str, idempotency_key: str
    ) -> GatewayResult:
        """
        Place a hold on the sender's payment method.

        Returns:
            GatewayResult with the authorization id on approval
        """

    @abstractmethod
    async def capture_payment(self, gateway_txn_id: str, amount: int, idempotency_key: str) -> GatewayResult:
        """Capture a previously authorized hold."""

    @abstractmethod
    async def refund_payment(self, gateway_txn_id: str, amount: int, idempotency_key: str) -> GatewayResult:
        """Void an uncaptured hold or refund captured funds."""


class SandboxPaymentGateway(BasePaymentGateway):
    """
    In-memory gateway for local development and tests.

    Payment methods starting with "pm_decline" are declined.
    """

    DECLINE_PREFIX = "pm_decline"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.authorizations: Dict[str, dict] = {}
        self._responses: Dict[str, GatewayResult] = {}
        self.calls = []

    def _replay(self, idempotency_key: str) -> Optional[GatewayResult]:
        return self._responses.get(idempotency_key)

    async def authorize_payment(self, amount, currency, payment_method_id, idempotency_key):
        self.calls.append(("authorize", idempotency_key))
        if idempotency_key in self._responses:
            return self._replay(idempotency_key)

        if payment_method_id.startswith(self.DECLINE_PREFIX):
            result = GatewayResult(GatewayStatus.DECLINED, reason="card_declined")
        else:
            auth_id = f"auth_{uuid.uuid4().hex[:16]}"
            self.authorizations[auth_id] = {
                "amount": amount, "currency": currency, "captured": 0, "refunded": 0
            }
            result = GatewayResult(GatewayStatus.APPROVED, gateway_txn_id=auth_id)

        self._responses[idempotency_key] = result
        return result

    async def capture_payment(self, gateway_txn_id, amount, idempotency_key):
        self.calls.append(("capture", idempotency_key))
        if idempotency_key in self._responses:
            return self._replay(idempotency_key)

        auth = self.authorizations.get(gateway_txn_id)
        if auth is None or amount > auth["amount"]:
            result = GatewayResult(GatewayStatus.DECLINED, reason="invalid_authorization")
        else:
            auth["captured"] = amount
            result = GatewayResult(GatewayStatus.APPROVED, gateway_txn_id=gateway_txn_id)

        self._responses[idempotency_key] = result
        return result

    async def refund_payment(self, gateway_txn_id, amount, idempotency_key):
        self.calls.append(("refund", idempotency_key))
        if idempotency_key in self._responses:
            return self._replay(idempotency_key)

        auth = self.authorizations.get(gateway_txn_id)
        if auth is None or auth["refunded"] + amount > auth["amount"]:
            result = GatewayResult(GatewayStatus.DECLINED, reason="refund_exceeds_charge")
        else:
            auth["refunded"] += amount
            result = GatewayResult(GatewayStatus.APPROVED, gateway_txn_id=f"re_{uuid.uuid4().hex[:16]}")

        self._responses[idempotency_key] = result
        return result


class HttpPaymentGateway(BasePaymentGateway):
    """
    JSON-over-HTTP gateway client.

    4xx responses are declines; timeouts, transport errors and 5xx are
    raised as GatewayUnavailableError so the caller can retry.
    """

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 10.0, **kwargs):
        super().__init__(**kwargs)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    async def _post(self, path: str, body: dict, idempotency_key: str) -> GatewayResult:
        headers = {"Idempotency-Key": idempotency_key}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout) as client:
                response = await client.post(path, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise GatewayUnavailableError(f"{path}: {e}") from e

        if response.status_code >= 500:
            raise GatewayUnavailableError(f"{path}: HTTP {response.status_code}")

        data = response.json()
        if response.status_code >= 400 or data.get("status") != GatewayStatus.APPROVED.value:
            return GatewayResult(GatewayStatus.DECLINED, reason=data.get("reason") or f"HTTP {response.status_code}")

        return GatewayResult(GatewayStatus.APPROVED, gateway_txn_id=data.get("id"))

    async def authorize_payment(self, amount, currency, payment_method_id, idempotency_key):
        return await self._post(
            "/authorizations",
            {"amount": amount, "currency": currency, "payment_method": payment_method_id},
            idempotency_key
        )

    async def capture_payment(self, gateway_txn_id, amount, idempotency_key):
        return await self._post(f"/authorizations/{gateway_txn_id}/capture", {"amount": amount}, idempotency_key)

    async def refund_payment(self, gateway_txn_id, amount, idempotency_key):
        return await self._post(f"/authorizations/{gateway_txn_id}/refund", {"amount": amount}, idempotency_key)


_sandbox = SandboxPaymentGateway()


def get_payment_gateway() -> BasePaymentGateway:
    """
    Factory for the configured gateway. Used as a FastAPI dependency.
    """
    if settings.payment_gateway == "sandbox":
        return _sandbox
    if settings.payment_gateway == "http":
        if not settings.payment_gateway_url:
            raise ValueError("PAYMENT_GATEWAY_URL is required for the http gateway")
        return HttpPaymentGateway(
            settings.payment_gateway_url,
            api_key=settings.payment_gateway_api_key,
            timeout=settings.payment_gateway_timeout_seconds
        )
    raise ValueError(f"Unknown payment gateway: {settings.payment_gateway}")
