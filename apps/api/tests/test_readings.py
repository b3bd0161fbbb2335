import pytest

from config import settings


@pytest.mark.asyncio
async def test_reading_charge_uses_server_side_cost(client, auth_headers):
    headers = auth_headers("reader-1")
    response = await client.post(
        "/readings/charge",
        json={"spread_type": "three-card", "reading_id": "r-1", "client_total": 1},
        headers=headers,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["amount"] == 3
    assert body["balance"] == 0
    assert body["cost"]["total_cost"] == 3


@pytest.mark.asyncio
async def test_reading_charge_is_idempotent_per_reading(client, auth_headers):
    headers = auth_headers("reader-2")
    first = await client.post("/readings/charge", json={"spread_type": "single", "reading_id": "r-2"}, headers=headers)
    second = await client.post("/readings/charge", json={"spread_type": "single", "reading_id": "r-2"}, headers=headers)
    assert first.json()["applied"] is True
    assert second.json()["applied"] is False
    assert second.json()["event_id"] == first.json()["event_id"]
    assert second.json()["balance"] == 2


@pytest.mark.asyncio
async def test_insufficient_credits_and_unknown_spread(client, auth_headers):
    headers = auth_headers("reader-3")
    broke = await client.post("/readings/charge", json={"spread_type": "celtic_cross"}, headers=headers)
    assert broke.status_code == 402
    detail = broke.json()["detail"]
    assert detail["reason"] == "insufficient_credits"
    assert detail["required"] == 10
    assert detail["balance"] == 3

    unknown = await client.post("/readings/charge", json={"spread_type": "tree_of_life"}, headers=headers)
    assert unknown.status_code == 422


@pytest.mark.asyncio
async def test_users_cannot_refund_their_own_charges(client, auth_headers, monkeypatch):
    monkeypatch.setattr(settings, "INTERNAL_SERVICE_TOKEN", "reading-generator-token")
    headers = auth_headers("reader-4")
    charge = await client.post("/readings/charge", json={"spread_type": "three_card", "reading_id": "r-4"}, headers=headers)
    event_id = charge.json()["event_id"]
    body = {"user_id": "reader-4", "event_id": event_id}

    as_user = await client.post("/readings/refund", json=body, headers=headers)
    assert as_user.status_code == 401
    forged = await client.post("/readings/refund", json=body, headers={"X-Service-Token": "guess"})
    assert forged.status_code == 403

    me = await client.get("/users/me/credits", headers=headers)
    assert me.json()["balance"] == 0
    assert me.json()["lifetime_spent"] == 3


@pytest.mark.asyncio
async def test_service_refund_applies_once_and_frees_the_reading_for_a_new_charge(client, auth_headers, monkeypatch):
    monkeypatch.setattr(settings, "INTERNAL_SERVICE_TOKEN", "reading-generator-token")
    service = {"X-Service-Token": "reading-generator-token"}
    headers = auth_headers("reader-5")
    charge = await client.post("/readings/charge", json={"spread_type": "three_card", "reading_id": "r-5"}, headers=headers)
    event_id = charge.json()["event_id"]
    body = {"user_id": "reader-5", "event_id": event_id}

    refunded = await client.post("/readings/refund", json=body, headers=service)
    assert refunded.status_code == 200
    assert refunded.json()["balance"] == 3

    again = await client.post("/readings/refund", json=body, headers=service)
    assert again.json()["applied"] is False
    assert again.json()["message"]

    missing = await client.post("/readings/refund", json={"user_id": "reader-5", "event_id": "nope"}, headers=service)
    assert missing.status_code == 404
    other = await client.post("/readings/refund", json={"user_id": "reader-6", "event_id": event_id}, headers=service)
    assert other.status_code == 404

    recharge = await client.post("/readings/charge", json={"spread_type": "three_card", "reading_id": "r-5"}, headers=headers)
    assert recharge.json()["applied"] is True
    assert recharge.json()["event_id"] != event_id
    assert recharge.json()["balance"] == 0

    replay = await client.post("/readings/charge", json={"spread_type": "three_card", "reading_id": "r-5"}, headers=headers)
    assert replay.json()["applied"] is False
    assert replay.json()["event_id"] == recharge.json()["event_id"]


@pytest.mark.asyncio
async def test_refund_endpoint_is_closed_without_a_configured_service_token(client, monkeypatch):
    monkeypatch.setattr(settings, "INTERNAL_SERVICE_TOKEN", "")
    response = await client.post(
        "/readings/refund",
        json={"user_id": "anyone", "event_id": "evt"},
        headers={"X-Service-Token": ""},
    )
    assert response.status_code == 503


@pytest.mark.asyncio
async def test_follow_up_and_summarize_charges(client, auth_headers):
    headers = auth_headers("reader-6")
    follow_up = await client.post("/readings/r-6/follow-up/charge", json={"question_id": "q-1"}, headers=headers)
    assert follow_up.json()["cost"] == 1
    assert follow_up.json()["balance"] == 2

    summarize = await client.post("/readings/summarize-question/charge", json={"request_id": "s-1"}, headers=headers)
    assert summarize.json()["balance"] == 1

    ledger = await client.get("/users/me/ledger", headers=headers)
    types = [item["entry_type"] for item in ledger.json()["items"]]
    assert "follow_up_spend" in types
    assert "question_summarization_spend" in types
