import json

import pytest
from sqlalchemy import update

from models.user import User


async def _make_admin(client, session_maker, headers, user_id):
    await client.get("/users/me", headers=headers)
    async with session_maker() as session:
        await session.execute(update(User).where(User.id == user_id).values(is_admin=True))
        await session.commit()


@pytest.mark.asyncio
async def test_admin_routes_require_admin_flag(client, auth_headers):
    response = await client.get("/admin/packages", headers=auth_headers("plain-user"))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_admin_adjusts_and_reconciles_user_balance(client, auth_headers, session_maker):
    admin = auth_headers("admin-1")
    await _make_admin(client, session_maker, admin, "admin-1")
    customer = auth_headers("customer-1")
    await client.get("/users/me", headers=customer)

    granted = await client.post(
        "/admin/users/customer-1/credits",
        json={"amount": 20, "reason": "support gesture"},
        headers=admin,
    )
    assert granted.status_code == 200
    assert granted.json()["balance"] == 23

    overdraw = await client.post(
        "/admin/users/customer-1/credits",
        json={"amount": -50, "reason": "chargeback"},
        headers=admin,
    )
    assert overdraw.status_code == 402

    zero = await client.post("/admin/users/customer-1/credits", json={"amount": 0, "reason": "noop"}, headers=admin)
    assert zero.status_code == 422

    missing = await client.post("/admin/users/ghost/credits", json={"amount": 5, "reason": "typo"}, headers=admin)
    assert missing.status_code == 404

    audit = await client.get("/admin/users/customer-1/reconcile", headers=admin)
    assert audit.json()["consistent"] is True
    assert audit.json()["balance"] == 23

    ledger = await client.get("/admin/users/customer-1/ledger", headers=admin)
    assert [item["entry_type"] for item in ledger.json()["items"]] == ["admin_adjustment", "welcome_bonus"]


@pytest.mark.asyncio
async def test_admin_package_catalog(client, auth_headers, session_maker):
    admin = auth_headers("admin-2")
    await _make_admin(client, session_maker, admin, "admin-2")

    created = await client.post(
        "/admin/packages",
        json={"id": "mega", "credits": 500, "price_cents": 10000, "name_en": "Mega", "name_fr": "Méga", "sort_order": 6},
        headers=admin,
    )
    assert created.status_code == 201
    duplicate = await client.post(
        "/admin/packages",
        json={"id": "mega", "credits": 500, "price_cents": 10000, "name_en": "Mega", "name_fr": "Méga"},
        headers=admin,
    )
    assert duplicate.status_code == 409

    patched = await client.patch("/admin/packages/mega", json={"bonus_credits": 50}, headers=admin)
    assert patched.json()["bonus_credits"] == 50
    invalid = await client.patch("/admin/packages/mega", json={"price_cents": -1}, headers=admin)
    assert invalid.status_code == 422
    assert (await client.patch("/admin/packages/nope", json={"credits": 1}, headers=admin)).status_code == 404

    removed = await client.delete("/admin/packages/mega", headers=admin)
    assert removed.json()["is_active"] is False
    public = await client.get("/billing/packages")
    assert "mega" not in [package["id"] for package in public.json()["packages"]]

    listed = await client.get("/admin/packages", headers=admin)
    assert "mega" in [package["id"] for package in listed.json()["packages"]]
    assert (await client.post("/admin/packages/seed", headers=admin)).json()["created"] == 0


@pytest.mark.asyncio
async def test_admin_lists_transactions_by_status(client, auth_headers, session_maker):
    admin = auth_headers("admin-3")
    await _make_admin(client, session_maker, admin, "admin-3")
    buyer = auth_headers("buyer-admin-view")
    await client.post("/billing/checkout", json={"package_id": "starter"}, headers=buyer)

    pending = await client.get("/admin/transactions?status=pending", headers=admin)
    assert [item["user_id"] for item in pending.json()["items"]] == ["buyer-admin-view"]
    assert (await client.get("/admin/transactions?status=succeeded", headers=admin)).json()["items"] == []


@pytest.mark.asyncio
async def test_admin_lists_transactions_needing_review(client, auth_headers, session_maker):
    admin = auth_headers("admin-4")
    await _make_admin(client, session_maker, admin, "admin-4")
    buyer = auth_headers("buyer-review")
    closed = (await client.post("/billing/checkout", json={"package_id": "starter"}, headers=buyer)).json()["provider_ref"]
    await client.post("/billing/checkout", json={"package_id": "starter"}, headers=buyer)
    await client.post("/billing/cancel", json={"provider_ref": closed}, headers=buyer)
    await client.post(
        "/webhooks/stripe",
        content=json.dumps({"id": "evt_review", "type": "completed", "provider_ref": closed}),
    )

    flagged = await client.get("/admin/transactions?needs_review=true", headers=admin)
    items = flagged.json()["items"]
    assert [item["provider_ref"] for item in items] == [closed]
    assert items[0]["anomaly"] == "late_success"
    assert items[0]["status"] == "cancelled"
