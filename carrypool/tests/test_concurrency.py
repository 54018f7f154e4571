"""
Concurrency Tests.

Validates that conflicting writes on one assignment are serialized and
that a cancel arriving during a gateway call is queued, not lost.
"""

import pytest
from carrypool.app.core.exceptions import ConcurrentModificationError
from carrypool.app.domain.assignment.assignment_service import (
    AssignmentService, commit_or_conflict, load_assignment
)
from carrypool.app.models.safety_enums import SafetyEvent, SafetyItem
from carrypool.app.services.payment_gateway import GatewayUnavailableError, SandboxPaymentGateway


class HookedGateway(SandboxPaymentGateway):
    """Sandbox that runs a coroutine while a call is "in flight"."""

    def __init__(self):
        super().__init__()
        self.on_authorize = None
        self.on_capture = None
        self.refund_down = False

    async def authorize_payment(self, amount, currency, payment_method_id, idempotency_key):
        if self.on_authorize is not None:
            hook, self.on_authorize = self.on_authorize, None
            await hook()
        return await super().authorize_payment(amount, currency, payment_method_id, idempotency_key)

    async def capture_payment(self, gateway_txn_id, amount, idempotency_key):
        if self.on_capture is not None:
            hook, self.on_capture = self.on_capture, None
            await hook()
        return await super().capture_payment(gateway_txn_id, amount, idempotency_key)

    async def refund_payment(self, gateway_txn_id, amount, idempotency_key):
        if self.refund_down:
            raise GatewayUnavailableError("timeout")
        return await super().refund_payment(gateway_txn_id, amount, idempotency_key)


@pytest.fixture
def gateway():
    return HookedGateway()


@pytest.mark.asyncio
async def test_stale_expected_version_is_rejected(market, client, sender, traveler):
    package = await market.post_package()
    trip = await market.post_trip()
    assignment = await market.request_match(package["id"], trip["id"])
    seen_version = assignment["version"]

    response = await client.post(
        f"/v1/assignments/{assignment['id']}/proposals",
        json={"price": 4500, "expected_version": seen_version},
        headers=traveler["headers"]
    )
    assert response.status_code == 200
    assert response.json()["version"] > seen_version

    # Sender acts on the snapshot it read before the counter-offer
    response = await client.post(
        f"/v1/assignments/{assignment['id']}/confirm-price",
        json={"payment_method_id": market.CARD, "expected_version": seen_version},
        headers=sender["headers"]
    )
    assert response.status_code == 409
    body = response.json()
    assert body["error_code"] == "ERR_CONFLICT_001"
    assert body["details"]["current_version"] == seen_version + 1

    snapshot = await market.get(assignment["id"])
    assert snapshot["confirmed_by_sender"] is False


@pytest.mark.asyncio
async def test_lost_update_becomes_conflict(market, session_factory, sender, traveler):
    package = await market.post_package()
    trip = await market.post_trip()
    assignment = await market.request_match(package["id"], trip["id"])

    async with session_factory() as slow, session_factory() as fast:
        stale = await load_assignment(slow, assignment["id"])

        await AssignmentService.propose(fast, assignment["id"], traveler["id"], 4500)

        stale.proposed_price = 9999
        with pytest.raises(ConcurrentModificationError):
            await commit_or_conflict(slow)

    snapshot = await market.get(assignment["id"])
    assert snapshot["proposed_price"] == 4500


@pytest.mark.asyncio
async def test_cancel_during_authorization_is_queued(market, client, gateway, sender, traveler):
    package = await market.post_package()
    trip = await market.post_trip()
    assignment = await market.request_match(package["id"], trip["id"])
    await market.confirm(assignment["id"], traveler)

    queued = {}

    async def cancel_mid_flight():
        queued["response"] = await client.post(
            f"/v1/assignments/{assignment['id']}/cancel",
            json={"reason": "Found a cheaper option"},
            headers=sender["headers"]
        )

    gateway.on_authorize = cancel_mid_flight
    response = await market.confirm(assignment["id"], sender, market.CARD)

    cancel = queued["response"]
    assert cancel.status_code == 202
    assert cancel.json()["queued"] is True
    assert cancel.json()["assignment"]["pending_operation"] == "AUTHORIZING"

    # The authorization finished, then the queued cancel ran
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "CANCELLED"
    assert data["cancel_requested"] is False
    assert data["cancel_reason"] == "Found a cheaper option"

    ledger = await market.transactions(assignment["id"])
    assert [(t["type"], t["status"], t["amount"]) for t in ledger] == [
        ("PAYMENT", "REFUNDED", 4000),
        ("REFUND", "COMPLETED", 4000),
    ]
    assert (await market.trip(trip["id"]))["available_space_g"] == 5000


@pytest.mark.asyncio
async def test_queued_cancel_is_dropped_once_picked_up(market, client, gateway, sender, traveler):
    state = await market.confirmed()
    assignment_id = state["assignment"]["id"]
    await market.tick(assignment_id, SafetyEvent.PICKUP)

    queued = {}

    async def cancel_mid_flight():
        queued["response"] = await client.post(
            f"/v1/assignments/{assignment_id}/cancel", headers=sender["headers"]
        )

    gateway.on_capture = cancel_mid_flight
    response = await client.post(f"/v1/assignments/{assignment_id}/pickup", headers=traveler["headers"])

    assert queued["response"].status_code == 202
    assert response.status_code == 200
    assert response.json()["status"] == "IN_TRANSIT"
    assert response.json()["cancel_requested"] is False


@pytest.mark.asyncio
async def test_no_second_trigger_while_call_in_flight(market, client, gateway, sender, traveler):
    state = await market.confirmed()
    assignment_id = state["assignment"]["id"]
    await market.tick(assignment_id, SafetyEvent.PICKUP)

    attempts = {}

    async def pickup_again():
        attempts["response"] = await client.post(
            f"/v1/assignments/{assignment_id}/pickup", headers=sender["headers"]
        )

    gateway.on_capture = pickup_again
    response = await client.post(f"/v1/assignments/{assignment_id}/pickup", headers=traveler["headers"])

    assert response.status_code == 200
    assert attempts["response"].status_code == 409
    assert attempts["response"].json()["details"]["pending_operation"] == "CAPTURING"
    assert [name for name, _ in gateway.calls].count("capture") == 1


@pytest.mark.asyncio
async def test_checklist_is_frozen_while_capturing(market, client, gateway, traveler):
    state = await market.confirmed()
    assignment_id = state["assignment"]["id"]
    await market.tick(assignment_id, SafetyEvent.PICKUP)

    attempts = {}

    async def untick_photo():
        attempts["response"] = await client.post(
            f"/v1/assignments/{assignment_id}/safety-confirmations",
            json={"event": "PICKUP", "item": "photo_taken", "value": False},
            headers=traveler["headers"]
        )

    gateway.on_capture = untick_photo
    response = await client.post(f"/v1/assignments/{assignment_id}/pickup", headers=traveler["headers"])

    assert attempts["response"].status_code == 409
    assert attempts["response"].json()["details"]["pending_operation"] == "CAPTURING"
    assert response.status_code == 200
    assert response.json()["status"] == "IN_TRANSIT"
    assert response.json()["checklist_status"]["PICKUP"] == "complete"


@pytest.mark.asyncio
async def test_pickup_rechecks_checklist_after_capture(market, client, gateway, session_factory, traveler):
    state = await market.confirmed()
    assignment_id = state["assignment"]["id"]
    await market.tick(assignment_id, SafetyEvent.PICKUP)

    async def checklist_changes_underneath():
        async with session_factory() as other:
            row = await load_assignment(other, assignment_id)
            checklist = {k: dict(v) for k, v in row.safety_checklist.items()}
            checklist["PICKUP"]["photo_taken"] = False
            row.safety_checklist = checklist
            await commit_or_conflict(other)

    gateway.on_capture = checklist_changes_underneath
    response = await client.post(f"/v1/assignments/{assignment_id}/pickup", headers=traveler["headers"])

    assert response.status_code == 409
    assert response.json()["error_code"] == "ERR_SAFETY_001"
    snapshot = await market.get(assignment_id)
    assert snapshot["status"] == "CONFIRMED"
    assert snapshot["pending_operation"] is None
    assert (await market.transactions(assignment_id))[0]["status"] == "COMPLETED"

    # Capture is already on file, so the retry does not charge again
    await market.tick(assignment_id, SafetyEvent.PICKUP, items=[SafetyItem.PHOTO_TAKEN])
    response = await client.post(f"/v1/assignments/{assignment_id}/pickup", headers=traveler["headers"])
    assert response.status_code == 200
    assert response.json()["status"] == "IN_TRANSIT"
    assert [name for name, _ in gateway.calls].count("capture") == 1


@pytest.mark.asyncio
async def test_failed_queued_cancel_notifies_requester(market, client, gateway, sender, traveler):
    package = await market.post_package()
    trip = await market.post_trip()
    assignment = await market.request_match(package["id"], trip["id"])
    await market.confirm(assignment["id"], traveler)

    queued = {}

    async def cancel_mid_flight():
        queued["response"] = await client.post(
            f"/v1/assignments/{assignment['id']}/cancel", headers=sender["headers"]
        )

    gateway.on_authorize = cancel_mid_flight
    gateway.refund_down = True
    response = await market.confirm(assignment["id"], sender, market.CARD)

    assert queued["response"].status_code == 202
    assert response.status_code == 200
    assert response.json()["status"] == "MATCHED"
    assert response.json()["cancel_requested"] is True

    response = await client.get("/v1/notifications", headers=sender["headers"])
    failures = [n for n in response.json() if n["event_type"] == "PAYMENT_FAILED"]
    assert len(failures) == 1
    assert failures[0]["payload"]["operation"] == "cancel"
    assert failures[0]["payload"]["error_code"] == "ERR_PAY_003"
