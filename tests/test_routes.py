"""HTTP surface over in-memory stores (dependency overrides, no MongoDB)."""

import pytest
from conftest import sign, webhook_body

from creditflow.ledger.types import CreditClass

pytestmark = pytest.mark.asyncio


async def test_balance_and_deduct(client, engine):
    await engine.ledger.allocate("user-1", CreditClass.PERMANENT, 100, "topup_1")

    r = await client.get("/v1/credits/balance")
    assert r.status_code == 200
    assert r.json()["total"] == 100

    r = await client.post("/v1/credits/deduct", json={"amount": 30, "task_id": "t1", "description": "upscale"})
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["from_permanent"] == 30

    r = await client.get("/v1/credits/balance")
    assert r.json()["total"] == 70


async def test_deduct_insufficient_returns_402(client, engine):
    await engine.ledger.allocate("user-1", CreditClass.PERMANENT, 10, "topup_1")
    r = await client.post("/v1/credits/deduct", json={"amount": 11, "task_id": "t1"})
    assert r.status_code == 402
    err = r.json()["error"]
    assert err["code"] == "INSUFFICIENT_CREDITS"
    assert err["details"] == {"required": 11, "available": 10}


async def test_deduct_validates_body(client):
    r = await client.post("/v1/credits/deduct", json={"amount": 0, "task_id": "t1"})
    assert r.status_code == 422


async def test_ledger_listing(client, engine):
    await engine.ledger.allocate("user-1", CreditClass.PERMANENT, 10, "topup_1")
    await engine.ledger.deduct("user-1", 4, "t1")
    r = await client.get("/v1/credits/ledger", params={"limit": 10})
    assert r.status_code == 200
    entries = r.json()["entries"]
    assert [e["amount"] for e in entries] == [-4, 10]
    assert entries[1]["expires_at"] is None


async def test_expiring(client, engine):
    await engine.ledger.allocate_plan("user-1", "day pass", "daily", "pay_day")
    r = await client.get("/v1/credits/expiring", params={"days": 2})
    assert r.status_code == 200
    assert r.json()["items"][0]["amount"] == 9900


async def test_webhook_applies_and_acknowledges(client, engine, audit_events):
    raw = webhook_body("payment.succeeded", {"payment_id": "pay_abc", "metadata": {"userId": "u9", "plan": "basic"}}, "evt_1")
    r = await client.post("/v1/payments/webhook", content=raw, headers={"webhook-signature": sign(raw)})
    assert r.status_code == 200
    assert r.json()["state"] == "applied"
    assert (await engine.ledger.get_balance("u9")).total == 16200
    assert audit_events[-1]["event_type"] == "webhook_applied"


async def test_webhook_bad_signature_401(client, engine, audit_events):
    raw = webhook_body("payment.succeeded", {"payment_id": "pay_abc", "metadata": {"userId": "u9"}})
    r = await client.post("/v1/payments/webhook", content=raw, headers={"webhook-signature": "0" * 64})
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "INVALID_SIGNATURE"
    assert (await engine.ledger.get_balance("u9")).total == 0
    assert audit_events[-1]["event_type"] == "webhook_rejected"


async def test_webhook_unknown_event_200(client):
    raw = webhook_body("dispute.opened", {"dispute_id": "d1"})
    r = await client.post("/v1/payments/webhook", content=raw, headers={"webhook-signature": sign(raw)})
    assert r.status_code == 200
    assert r.json()["state"] == "skipped"


async def test_checkout_mapping_then_bare_webhook(client, engine):
    r = await client.post("/v1/payments/checkout-mapping", json={"plan": "Creator", "billing_period": "monthly", "subscription_id": "sub_1"})
    assert r.status_code == 200
    assert r.json()["plan"] == "creator"

    raw = webhook_body("subscription.active", {"subscription_id": "sub_1", "next_billing_date": "2026-03-31T00:00:00Z"})
    r = await client.post("/v1/payments/webhook", content=raw, headers={"webhook-signature": sign(raw)})
    assert r.json()["state"] == "applied"
    assert (await engine.ledger.get_balance("user-1")).total == 44400


async def test_checkout_mapping_unknown_plan(client):
    r = await client.post("/v1/payments/checkout-mapping", json={"plan": "platinum"})
    assert r.status_code == 400


async def test_admin_grant_is_idempotent(client, engine, audit_events):
    payload = {"user_id": "u5", "amount": 250, "transaction_id": "admin-1", "reason": "support"}
    first = await client.post("/v1/admin/credits/grant", json=payload)
    second = await client.post("/v1/admin/credits/grant", json=payload)
    assert first.json()["granted"] is True
    assert second.json()["duplicate"] is True
    r = await client.get("/v1/admin/users/u5/balance")
    assert r.json()["permanent_remaining"] == 250
    assert audit_events[-1]["event_type"] == "admin_credit_grant"


async def test_admin_grant_limit(client):
    r = await client.post("/v1/admin/credits/grant", json={"user_id": "u5", "amount": 100_001, "transaction_id": "big"})
    assert r.status_code == 400


async def test_admin_subscription_grant_gets_period_expiry(client, engine, clock):
    r = await client.post(
        "/v1/admin/credits/grant",
        json={"user_id": "u5", "amount": 10, "transaction_id": "sub-grant", "credit_class": "subscription", "billing_period": "daily"},
    )
    assert r.json()["granted"] is True
    balance = await engine.ledger.get_balance("u5")
    assert balance.subscription_remaining == 10
    assert balance.subscription_expires_at is not None


async def test_admin_expire_runs_sweep(client, engine, clock):
    await engine.ledger.allocate_plan("u5", "day pass", "daily", "pay_day")
    clock.advance(days=2)
    r = await client.post("/v1/admin/credits/expire")
    assert r.status_code == 200
    assert r.json() == {"expired": 1}


async def test_admin_pricing_reload_swaps_engine(client, engine, tmp_path, monkeypatch):
    from creditflow import deps

    path = tmp_path / "pricing.json"
    path.write_text('{"plans": [{"name": "Solo", "credits": 100}], "default_plan": "solo"}')
    monkeypatch.setattr(deps, "get_settings", lambda: engine.settings.model_copy(update={"pricing_config_path": str(path)}))

    r = await client.post("/v1/admin/pricing/reload")
    assert r.status_code == 200
    assert [p["name"] for p in r.json()["plans"]] == ["Solo"]
    swapped = deps.get_engine()
    assert swapped is not engine
    assert swapped.pricing.credits_for("solo") == 100
    # old snapshot untouched
    assert engine.pricing.has_plan("basic")
    assert swapped.stores is engine.stores
