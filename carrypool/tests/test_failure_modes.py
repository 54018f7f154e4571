"""
Failure Injection Tests.

Validates resilience against payment gateway failures.
"""

import httpx
import pytest
from carrypool.app.core.config import settings
from carrypool.app.core.exceptions import SettlementGatewayError
from carrypool.app.core.reliability import CircuitBreaker, CircuitOpenError, settlement_circuit_breaker
from carrypool.app.domain.escrow.escrow_service import call_gateway
from carrypool.app.models.dlq import DLQStatus
from carrypool.app.models.safety_enums import SafetyEvent
from carrypool.app.services.dead_letter import record_dead_letter
from carrypool.app.services.payment_gateway import (
    SandboxPaymentGateway, HttpPaymentGateway, GatewayUnavailableError
)


class FlakyGateway(SandboxPaymentGateway):
    """Sandbox whose capture/refund can be switched off."""

    def __init__(self):
        super().__init__()
        self.capture_down = False
        self.refund_down = False

    async def capture_payment(self, gateway_txn_id, amount, idempotency_key):
        if self.capture_down:
            self.calls.append(("capture", idempotency_key))
            raise GatewayUnavailableError("HTTP 503")
        return await super().capture_payment(gateway_txn_id, amount, idempotency_key)

    async def refund_payment(self, gateway_txn_id, amount, idempotency_key):
        if self.refund_down:
            self.calls.append(("refund", idempotency_key))
            raise GatewayUnavailableError("timeout")
        return await super().refund_payment(gateway_txn_id, amount, idempotency_key)


@pytest.fixture
def gateway():
    return FlakyGateway()


@pytest.mark.asyncio
async def test_circuit_breaker_activates():
    """Test that circuit breaker opens after threshold failures."""
    cb = CircuitBreaker(failure_threshold=2, reset_timeout=1)

    async def failing_func():
        raise ValueError("Boom")

    for _ in range(2):
        with pytest.raises(ValueError):
            await cb.call(failing_func)

    with pytest.raises(CircuitOpenError):
        await cb.call(failing_func)


@pytest.mark.asyncio
async def test_gateway_call_retries_transient_errors():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise GatewayUnavailableError("503")
        return "ok"

    assert await call_gateway("capture", flaky) == "ok"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_gateway_call_does_not_retry_bugs():
    calls = []

    async def broken():
        calls.append(1)
        raise KeyError("bug")

    with pytest.raises(KeyError):
        await call_gateway("capture", broken)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_gateway_call_gives_up_after_max_attempts(monkeypatch):
    monkeypatch.setattr(settings, "gateway_max_attempts", 4)
    calls = []

    async def down():
        calls.append(1)
        raise GatewayUnavailableError("HTTP 503")

    with pytest.raises(SettlementGatewayError) as exc:
        await call_gateway("refund", down)
    assert len(calls) == 4
    assert exc.value.details == {"operation": "refund", "attempts": 4, "reason": "HTTP 503"}


@pytest.mark.asyncio
async def test_gateway_call_stops_on_open_circuit():
    for _ in range(settlement_circuit_breaker.failure_threshold):
        settlement_circuit_breaker.record_failure()
    calls = []

    async def never_reached():
        calls.append(1)

    with pytest.raises(SettlementGatewayError) as exc:
        await call_gateway("capture", never_reached)
    assert calls == []
    assert exc.value.details["attempts"] == 1
    assert exc.value.details["reason"] == "Circuit is OPEN"


@pytest.mark.asyncio
async def test_capture_outage_keeps_assignment_confirmed(market, client, gateway, traveler, admin):
    state = await market.confirmed()
    assignment_id = state["assignment"]["id"]
    await market.tick(assignment_id, SafetyEvent.PICKUP)

    gateway.capture_down = True
    response = await client.post(f"/v1/assignments/{assignment_id}/pickup", headers=traveler["headers"])
    assert response.status_code == 502
    body = response.json()
    assert body["error_code"] == "ERR_PAY_003"
    assert body["details"]["attempts"] == 3

    snapshot = await market.get(assignment_id)
    assert snapshot["status"] == "CONFIRMED"
    assert snapshot["pending_operation"] is None
    assert (await market.transactions(assignment_id))[0]["status"] == "PENDING"

    response = await client.get("/v1/admin/ops/dlq", headers=admin["headers"])
    items = response.json()
    assert len(items) == 1
    assert items[0]["task_name"] == "escrow.capture"
    assert items[0]["payload"]["assignment_id"] == assignment_id

    response = await client.post(f"/v1/admin/ops/dlq/{items[0]['id']}/archive", headers=admin["headers"])
    assert response.json()["status"] == "ARCHIVED"
    assert (await client.get("/v1/admin/ops/dlq", headers=admin["headers"])).json() == []

    # Same idempotency key on every attempt, and the retry succeeds once the gateway is back
    keys = {key for name, key in gateway.calls if name == "capture"}
    assert len(keys) == 1

    settlement_circuit_breaker.reset_state()
    gateway.capture_down = False
    response = await client.post(f"/v1/assignments/{assignment_id}/pickup", headers=traveler["headers"])
    assert response.status_code == 200
    assert response.json()["status"] == "IN_TRANSIT"


@pytest.mark.asyncio
async def test_refund_outage_blocks_cancel(market, client, gateway, sender):
    state = await market.matched()
    assignment_id = state["assignment"]["id"]

    gateway.refund_down = True
    response = await client.post(f"/v1/assignments/{assignment_id}/cancel", headers=sender["headers"])
    assert response.status_code == 502

    snapshot = await market.get(assignment_id)
    assert snapshot["status"] == "MATCHED"
    assert snapshot["pending_operation"] is None
    assert (await market.trip(state["trip"]["id"]))["available_space_g"] == 0

    ledger = await market.transactions(assignment_id)
    assert [t["type"] for t in ledger] == ["PAYMENT"]


@pytest.mark.asyncio
async def test_dlq_requires_admin(client, sender):
    response = await client.get("/v1/admin/ops/dlq", headers=sender["headers"])
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_dlq_capture(db_session):
    """Test that a failed gateway call is parked in the DLQ."""
    item = await record_dead_letter(db_session, "escrow.refund", "Payment gateway timeout", {"assignment_id": 500})

    assert item.id is not None
    assert item.status == DLQStatus.FAILED
    assert item.retry_count == 0


# HTTP gateway client

@pytest.mark.asyncio
async def test_http_gateway_maps_responses(mocker):
    client = HttpPaymentGateway("https://gateway.test/", api_key="sk_test")
    post = mocker.patch.object(
        httpx.AsyncClient, "post",
        return_value=httpx.Response(200, json={"status": "APPROVED", "id": "auth_42"})
    )

    result = await client.authorize_payment(4000, "USD", "pm_card_visa", "auth-7")
    assert result.approved
    assert result.gateway_txn_id == "auth_42"
    _, kwargs = post.call_args
    assert kwargs["headers"]["Idempotency-Key"] == "auth-7"
    assert kwargs["headers"]["Authorization"] == "Bearer sk_test"

    post.return_value = httpx.Response(402, json={"status": "DECLINED", "reason": "card_declined"})
    result = await client.authorize_payment(4000, "USD", "pm_card_visa", "auth-8")
    assert not result.approved
    assert result.reason == "card_declined"


@pytest.mark.asyncio
async def test_http_gateway_outages_are_retryable(mocker):
    client = HttpPaymentGateway("https://gateway.test")
    mocker.patch.object(httpx.AsyncClient, "post", return_value=httpx.Response(503))
    with pytest.raises(GatewayUnavailableError):
        await client.capture_payment("auth_42", 4000, "capture-1")

    mocker.patch.object(httpx.AsyncClient, "post", side_effect=httpx.ConnectTimeout("timed out"))
    with pytest.raises(GatewayUnavailableError):
        await client.refund_payment("auth_42", 4000, "refund-1")
