"""
Assignment engine: matching, acceptance, handover and cancellation.
"""

import pytest


@pytest.mark.asyncio
async def test_exact_capacity_match(market):
    """Scenario: 5kg package, 5kg trip, 40.00 confirmed by both -> MATCHED, no space left."""
    state = await market.matched()
    assignment = state["assignment"]
    assert assignment["status"] == "MATCHED"
    assert assignment["agreed_price"] == 4000
    assert assignment["pending_operation"] is None

    trip = await market.trip(state["trip"]["id"])
    assert trip["available_space_g"] == 0

    package = await market.package(state["package"]["id"])
    assert package["trip_id"] == state["trip"]["id"]
    assert package["assignment_id"] == assignment["id"]


@pytest.mark.asyncio
async def test_declined_authorization_keeps_negotiating(market, sender, traveler, client):
    package = await market.post_package()
    trip = await market.post_trip()
    assignment = await market.request_match(package["id"], trip["id"])
    await market.confirm(assignment["id"], traveler)

    response = await market.confirm(assignment["id"], sender, market.DECLINED_CARD)
    assert response.status_code == 402
    body = response.json()
    assert body["error_code"] == "ERR_PAY_001"
    assert body["details"]["reason"] == "card_declined"

    snapshot = await market.get(assignment["id"])
    assert snapshot["status"] == "NEGOTIATING"
    assert snapshot["confirmed_by_sender"] is False
    assert snapshot["confirmed_by_traveler"] is True
    assert snapshot["agreed_price"] is None
    assert snapshot["pending_operation"] is None

    assert (await market.trip(trip["id"]))["available_space_g"] == 5000
    reloaded = await market.package(package["id"])
    assert reloaded["status"] == "POSTED"
    assert reloaded["assignment_id"] is None

    ledger = await market.transactions(assignment["id"])
    assert [(t["type"], t["status"]) for t in ledger] == [("PAYMENT", "FAILED")]

    notifications = await client.get("/v1/notifications", headers=sender["headers"])
    assert "PAYMENT_FAILED" in [n["event_type"] for n in notifications.json()]

    # Another card goes through
    response = await market.confirm(assignment["id"], sender, market.CARD)
    assert response.status_code == 200
    assert response.json()["status"] == "MATCHED"


@pytest.mark.asyncio
async def test_matching_cancels_other_proposals(market, sender, stranger):
    package = await market.post_package(weight_kg="2")
    trip = await market.post_trip()
    other_trip = await market.post_trip(traveler=stranger)

    winner = await market.request_match(package["id"], trip["id"])
    loser = await market.request_match(package["id"], other_trip["id"])

    await market.confirm(winner["id"], market.traveler)
    response = await market.confirm(winner["id"], sender, market.CARD)
    assert response.json()["status"] == "MATCHED"

    sibling = await market.get(loser["id"])
    assert sibling["status"] == "CANCELLED"
    assert str(winner["id"]) in sibling["cancel_reason"]

    # The other trip never held capacity
    assert (await market.trip(other_trip["id"]))["available_space_g"] == 5000


@pytest.mark.asyncio
async def test_second_package_loses_the_remaining_space(market, sender, traveler):
    first = await market.post_package(weight_kg="3")
    second = await market.post_package(weight_kg="3")
    trip = await market.post_trip()

    winner = await market.request_match(first["id"], trip["id"])
    loser = await market.request_match(second["id"], trip["id"])

    await market.confirm(winner["id"], traveler)
    response = await market.confirm(winner["id"], sender, market.CARD)
    assert response.json()["status"] == "MATCHED"

    await market.confirm(loser["id"], traveler)
    response = await market.confirm(loser["id"], sender, market.CARD)
    assert response.status_code == 409
    assert response.json()["error_code"] == "ERR_CAPACITY_001"

    snapshot = await market.get(loser["id"])
    assert snapshot["status"] == "NEGOTIATING"
    assert snapshot["pending_operation"] is None
    assert (await market.trip(trip["id"]))["available_space_g"] == 2000


@pytest.mark.asyncio
async def test_bound_package_cannot_be_proposed_again(market, stranger, client):
    state = await market.matched()
    other_trip = await market.post_trip(traveler=stranger)

    response = await client.post(
        "/v1/assignments",
        json={"package_id": state["package"]["id"], "trip_id": other_trip["id"]},
        headers=market.sender["headers"]
    )
    assert response.status_code == 409
    assert response.json()["error_code"] == "ERR_STATE_001"


@pytest.mark.asyncio
async def test_overweight_package_is_rejected(market, client):
    package = await market.post_package(weight_kg="5.001")
    trip = await market.post_trip()
    response = await client.post(
        "/v1/assignments",
        json={"package_id": package["id"], "trip_id": trip["id"]},
        headers=market.sender["headers"]
    )
    assert response.status_code == 409
    assert response.json()["error_code"] == "ERR_CAPACITY_001"
    assert response.json()["details"]["required_g"] == 5001


@pytest.mark.asyncio
async def test_refused_package_type(market, client):
    package = await market.post_package(package_type="FOOD")
    trip = await market.post_trip(accepted_package_types=["DOCUMENTS", "CLOTHING"])
    response = await client.post(
        "/v1/assignments",
        json={"package_id": package["id"], "trip_id": trip["id"]},
        headers=market.sender["headers"]
    )
    assert response.status_code == 422
    assert response.json()["error_code"] == "ERR_CAPACITY_002"


@pytest.mark.asyncio
async def test_traveler_cannot_carry_own_package(market, client, sender):
    package = await market.post_package()
    own_trip = await market.post_trip(traveler=sender)
    response = await client.post(
        "/v1/assignments",
        json={"package_id": package["id"], "trip_id": own_trip["id"]},
        headers=sender["headers"]
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_stranger_cannot_read_assignment(market, stranger, admin, client):
    state = await market.matched()
    assignment_id = state["assignment"]["id"]

    response = await client.get(f"/v1/assignments/{assignment_id}", headers=stranger["headers"])
    assert response.status_code == 403

    response = await client.get(f"/v1/assignments/{assignment_id}", headers=admin["headers"])
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_acceptance_needs_both_parties(market, sender, traveler):
    state = await market.matched()
    assignment_id = state["assignment"]["id"]

    response = await market.accept(assignment_id, sender)
    assert response.json()["status"] == "MATCHED"
    assert response.json()["accepted_by_sender"] is True

    # Repeating is a no-op
    response = await market.accept(assignment_id, sender)
    assert response.json()["status"] == "MATCHED"

    response = await market.accept(assignment_id, traveler)
    assert response.json()["status"] == "CONFIRMED"

    package = await market.package(state["package"]["id"])
    assert package["status"] == "CONFIRMED"


@pytest.mark.asyncio
async def test_voided_hold_blocks_acceptance(market, client, sender, traveler, admin):
    state = await market.matched()
    assignment_id = state["assignment"]["id"]

    response = await client.post(f"/v1/admin/assignments/{assignment_id}/refund", headers=admin["headers"])
    assert response.status_code == 200

    assert (await market.accept(assignment_id, sender)).status_code == 200
    response = await market.accept(assignment_id, traveler)
    assert response.status_code == 409
    assert response.json()["error_code"] == "ERR_PAY_002"
    assert response.json()["details"]["payment_status"] == "REFUNDED"

    snapshot = await market.get(assignment_id)
    assert snapshot["status"] == "MATCHED"


@pytest.mark.asyncio
async def test_delivery_requires_its_own_checklist(market, client, traveler):
    state = await market.in_transit()
    assignment_id = state["assignment"]["id"]

    response = await client.post(f"/v1/assignments/{assignment_id}/deliver", headers=traveler["headers"])
    assert response.status_code == 409
    assert response.json()["details"]["event"] == "DELIVERY"

    # No payout without delivery
    ledger = await market.transactions(assignment_id)
    assert [t["type"] for t in ledger] == ["PAYMENT"]


@pytest.mark.asyncio
async def test_in_transit_cannot_be_cancelled(market, client, sender):
    state = await market.in_transit()
    response = await client.post(
        f"/v1/assignments/{state['assignment']['id']}/cancel", headers=sender["headers"]
    )
    assert response.status_code == 409
    assert "dispute" in response.json()["message"]


@pytest.mark.asyncio
async def test_cancel_after_confirmation_refunds(market, client, traveler):
    state = await market.confirmed()
    assignment_id = state["assignment"]["id"]

    response = await client.post(f"/v1/assignments/{assignment_id}/cancel", headers=traveler["headers"])
    assert response.status_code == 200
    assert response.json()["assignment"]["status"] == "CANCELLED"

    ledger = await market.transactions(assignment_id)
    assert [(t["type"], t["amount"]) for t in ledger] == [("PAYMENT", 4000), ("REFUND", 4000)]

    # A released package can be matched again
    package = await market.package(state["package"]["id"])
    trip = await market.trip(state["trip"]["id"])
    assert package["status"] == "POSTED"
    assert trip["available_space_g"] == 5000
    again = await market.request_match(package["id"], trip["id"])
    assert again["status"] == "PROPOSED"


@pytest.mark.asyncio
async def test_tracking_timeline(market, client, sender, traveler, stranger):
    state = await market.in_transit()
    package_id = state["package"]["id"]

    response = await client.get(f"/v1/packages/{package_id}/tracking", headers=sender["headers"])
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "IN_TRANSIT"
    assert [e["event"] for e in data["events"]] == [
        "PROPOSED", "NEGOTIATING", "MATCHED", "CONFIRMED", "IN_TRANSIT"
    ]

    response = await client.get(f"/v1/packages/{package_id}/tracking", headers=traveler["headers"])
    assert response.status_code == 200

    response = await client.get(f"/v1/packages/{package_id}/tracking", headers=stranger["headers"])
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_withdraw_posted_package(market, client, sender, traveler):
    package = await market.post_package()
    trip = await market.post_trip()
    assignment = await market.request_match(package["id"], trip["id"], user=traveler)

    response = await client.post(f"/v1/packages/{package['id']}/cancel", headers=traveler["headers"])
    assert response.status_code == 403

    response = await client.post(f"/v1/packages/{package['id']}/cancel", headers=sender["headers"])
    assert response.status_code == 200
    assert response.json()["status"] == "CANCELLED"
    assert response.json()["is_active"] is False

    assert (await market.get(assignment["id"]))["status"] == "CANCELLED"


@pytest.mark.asyncio
async def test_matched_package_cannot_be_withdrawn(market, client, sender):
    state = await market.matched()
    response = await client.post(f"/v1/packages/{state['package']['id']}/cancel", headers=sender["headers"])
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_weight_is_stored_in_grams(market):
    package = await market.post_package(weight_kg="1.25")
    assert package["weight_g"] == 1250


@pytest.mark.asyncio
async def test_trip_dates_are_validated(market, client, traveler):
    response = await client.post(
        "/v1/trips",
        json={
            "title": "Backwards",
            "origin_address": {"line1": "a", "city": "A", "country": "US"},
            "destination_address": {"line1": "b", "city": "B", "country": "US"},
            "departure_date": "2030-05-02",
            "arrival_date": "2030-05-01",
            "max_weight_kg": "3",
        },
        headers=traveler["headers"]
    )
    assert response.status_code == 400
    assert response.json()["error_code"] == "ERR_BAD_REQUEST"
