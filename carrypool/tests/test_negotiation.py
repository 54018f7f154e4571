"""
Price negotiation: proposals, confirmations and the reset rule.
"""

import pytest
from carrypool.app.core.exceptions import InvalidPriceError
from carrypool.app.domain.assignment.assignment_service import AssignmentService
from carrypool.app.domain.negotiation.negotiation_service import (
    NegotiationState, apply_proposal, apply_confirmation
)
from carrypool.app.models.enums import Party


def test_new_proposal_clears_both_confirmations():
    state = NegotiationState(4000, Party.SENDER, confirmed_by_sender=True, confirmed_by_traveler=True)
    state = apply_proposal(state, Party.TRAVELER, 5000)
    assert state.proposed_price == 5000
    assert state.proposed_by == Party.TRAVELER
    assert not state.confirmed_by_sender
    assert not state.confirmed_by_traveler


def test_confirmation_is_per_party():
    state = NegotiationState(4000, Party.SENDER, False, False)
    state = apply_confirmation(state, Party.TRAVELER)
    assert state.confirmed_by_traveler and not state.both_confirmed
    state = apply_confirmation(state, Party.SENDER)
    assert state.both_confirmed


def test_non_positive_price_is_rejected():
    with pytest.raises(InvalidPriceError) as exc:
        apply_proposal(NegotiationState(4000, Party.SENDER, False, False), Party.SENDER, 0)
    assert exc.value.error_code == "ERR_VALIDATION"
    assert exc.value.status_code == 422


@pytest.mark.asyncio
async def test_match_request_rejects_non_positive_price(market, session_factory, sender):
    package = await market.post_package()
    trip = await market.post_trip()

    async with session_factory() as session:
        with pytest.raises(InvalidPriceError) as exc:
            await AssignmentService.request_match(session, package["id"], trip["id"], sender["id"], proposed_price=-5)
    assert exc.value.details == {"price": -5}


@pytest.mark.asyncio
async def test_counter_proposal_resets_and_agrees_on_new_price(market, sender, traveler, client):
    """Sender offers 40, traveler counters 50; only a double confirm at 50 matches."""
    package = await market.post_package(offered_price=4000)
    trip = await market.post_trip()
    assignment = await market.request_match(package["id"], trip["id"])
    assert assignment["status"] == "PROPOSED"
    assert assignment["proposed_by"] == "SENDER"

    response = await market.confirm(assignment["id"], sender, market.CARD)
    assert response.status_code == 200
    assert response.json()["status"] == "NEGOTIATING"
    assert response.json()["confirmed_by_sender"] is True

    response = await client.post(
        f"/v1/assignments/{assignment['id']}/proposals",
        json={"price": 5000, "note": "Heavy box"},
        headers=traveler["headers"]
    )
    assert response.status_code == 200
    data = response.json()
    assert data["proposed_price"] == 5000
    assert data["proposed_by"] == "TRAVELER"
    assert data["confirmed_by_sender"] is False
    assert data["confirmed_by_traveler"] is False
    assert data["agreed_price"] is None

    response = await market.confirm(assignment["id"], traveler)
    assert response.json()["status"] == "NEGOTIATING"

    # Payment method is remembered from the first confirmation
    response = await market.confirm(assignment["id"], sender)
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "MATCHED"
    assert data["agreed_price"] == 5000

    ledger = await market.transactions(assignment["id"])
    assert [(t["type"], t["status"], t["amount"]) for t in ledger] == [("PAYMENT", "PENDING", 5000)]

    history = await client.get(f"/v1/assignments/{assignment['id']}/proposals", headers=sender["headers"])
    assert [(p["party"], p["price"]) for p in history.json()] == [("SENDER", 4000), ("TRAVELER", 5000)]

    package = await market.package(package["id"])
    assert package["final_price"] == 5000
    assert package["status"] == "MATCHED"


@pytest.mark.asyncio
async def test_sender_confirmation_requires_payment_method(market, sender, traveler):
    package = await market.post_package()
    trip = await market.post_trip()
    assignment = await market.request_match(package["id"], trip["id"], user=traveler)
    assert assignment["proposed_by"] == "TRAVELER"

    response = await market.confirm(assignment["id"], sender)
    assert response.status_code == 402
    assert response.json()["error_code"] == "ERR_PAY_001"


@pytest.mark.asyncio
async def test_price_is_fixed_once_matched(market, traveler, client):
    state = await market.matched()
    response = await client.post(
        f"/v1/assignments/{state['assignment']['id']}/proposals",
        json={"price": 9000},
        headers=traveler["headers"]
    )
    assert response.status_code == 409
    assert response.json()["error_code"] == "ERR_STATE_001"


@pytest.mark.asyncio
async def test_cancelled_assignment_is_not_negotiable(market, sender, client):
    package = await market.post_package()
    trip = await market.post_trip()
    assignment = await market.request_match(package["id"], trip["id"])
    response = await client.post(f"/v1/assignments/{assignment['id']}/cancel", headers=sender["headers"])
    assert response.status_code == 200

    response = await client.post(
        f"/v1/assignments/{assignment['id']}/proposals", json={"price": 100}, headers=sender["headers"]
    )
    assert response.status_code == 409
    assert response.json()["error_code"] == "ERR_STATE_002"


@pytest.mark.asyncio
async def test_only_parties_negotiate(market, stranger, client):
    package = await market.post_package()
    trip = await market.post_trip()
    assignment = await market.request_match(package["id"], trip["id"])

    response = await client.post(
        f"/v1/assignments/{assignment['id']}/proposals", json={"price": 100}, headers=stranger["headers"]
    )
    assert response.status_code == 403
    assert response.json()["error_code"] == "ERR_PERM_001"


@pytest.mark.asyncio
async def test_zero_price_is_a_validation_error(market, sender, client):
    package = await market.post_package()
    trip = await market.post_trip()
    assignment = await market.request_match(package["id"], trip["id"])

    response = await client.post(
        f"/v1/assignments/{assignment['id']}/proposals", json={"price": 0}, headers=sender["headers"]
    )
    assert response.status_code == 422
    assert response.json()["error_code"] == "ERR_VALIDATION"
