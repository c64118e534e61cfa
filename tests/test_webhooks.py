"""Webhook ingestion state machine over in-memory stores."""

from datetime import timedelta

import pytest
from conftest import sign, webhook_body

from creditflow.core.config import Settings
from creditflow.core.exceptions import InvalidSignatureError
from creditflow.ledger.types import CheckoutMapping, CreditClass
from creditflow.services.engine import build_engine
from creditflow.services.webhooks import WebhookState

pytestmark = pytest.mark.asyncio

S = WebhookState


def payment(payment_id="pay_abc", **extra):
    data = {"payment_id": payment_id, "total_amount": 900, "currency": "USD"}
    data.update(extra)
    return data


async def deliver(engine, raw: bytes, signature: str | None = "sign"):
    if signature == "sign":
        signature = sign(raw)
    return await engine.webhooks.process(raw, signature)


async def test_grant_deduct_redeliver_scenario(engine):
    raw = webhook_body("payment.succeeded", payment(metadata={"userId": "u1", "plan": "basic"}), "evt_1")

    outcome = await deliver(engine, raw)
    assert outcome.state == S.APPLIED
    assert outcome.history == [S.RECEIVED, S.SIGNATURE_VERIFIED, S.CLASSIFIED, S.RESOLVED, S.APPLIED]
    balance = await engine.ledger.get_balance("u1")
    assert balance.total == 16200
    assert balance.subscription_expires_at == engine.clock() + timedelta(days=30)

    result = await engine.ledger.deduct("u1", 150, "t1")
    assert (result.from_subscription, result.from_permanent) == (150, 0)
    assert (await engine.ledger.get_balance("u1")).total == 16050

    again = await deliver(engine, raw)
    assert again.state == S.APPLIED
    assert again.duplicate
    assert again.credits == 0
    assert (await engine.ledger.get_balance("u1")).total == 16050


async def test_tampered_body_rejected_without_mutation(engine):
    raw = webhook_body("payment.succeeded", payment(metadata={"userId": "u1", "plan": "basic"}))
    signature = sign(raw)
    tampered = raw.replace(b"basic", b"enterprise")
    with pytest.raises(InvalidSignatureError):
        await engine.webhooks.process(tampered, signature)
    assert (await engine.ledger.get_balance("u1")).total == 0


async def test_missing_signature_rejected(engine):
    raw = webhook_body("payment.succeeded", payment(metadata={"userId": "u1"}))
    with pytest.raises(InvalidSignatureError):
        await deliver(engine, raw, signature=None)


async def test_unsigned_bypass_only_outside_production(pricing, stores, clock):
    raw = webhook_body("payment.succeeded", payment(metadata={"userId": "u1"}))

    dev = build_engine(Settings(env="development", PAYMENTS_ALLOW_UNSIGNED_WEBHOOKS=True), pricing, stores, clock=clock)
    outcome = await dev.webhooks.process(raw, None)
    assert outcome.state == S.APPLIED

    prod = build_engine(Settings(env="production", PAYMENTS_ALLOW_UNSIGNED_WEBHOOKS=True), pricing, stores, clock=clock)
    with pytest.raises(InvalidSignatureError):
        await prod.webhooks.process(raw, None)


async def test_unknown_event_skipped(engine):
    outcome = await deliver(engine, webhook_body("refund.succeeded", {"refund_id": "r1"}))
    assert outcome.state == S.SKIPPED
    assert outcome.history[-2:] == [S.CLASSIFIED, S.SKIPPED]
    assert outcome.reason == "unhandled_event_type"


async def test_subscription_payment_grants_nothing(engine):
    raw = webhook_body("payment.succeeded", payment(subscription_id="sub_1", metadata={"userId": "u1"}))
    outcome = await deliver(engine, raw)
    assert outcome.state == S.SKIPPED
    assert outcome.reason == "subscription_payment"
    assert (await engine.ledger.get_balance("u1")).total == 0


async def test_unresolved_identity_is_skipped(engine):
    outcome = await deliver(engine, webhook_body("payment.succeeded", payment()))
    assert outcome.state == S.SKIPPED
    assert outcome.history[-2:] == [S.UNRESOLVED, S.SKIPPED]
    assert outcome.reason == "unresolved_identity"


async def test_topup_grants_permanent_credits(engine, stores):
    raw = webhook_body("payment.succeeded", payment("pay_topup", metadata={"userId": "u1", "credits": "500"}))
    outcome = await deliver(engine, raw)
    assert outcome.state == S.APPLIED
    balance = await engine.ledger.get_balance("u1")
    assert balance.permanent_remaining == 500
    assert balance.subscription_remaining == 0
    entry = (await stores.ledger.query("u1"))[0]
    assert entry.credit_class == CreditClass.PERMANENT
    assert entry.source_transaction_id == "pay_topup"


async def test_subscription_active_and_renewed_collapse_to_one_grant(engine):
    data = {
        "subscription_id": "sub_1",
        "next_billing_date": "2026-03-31T00:00:00Z",
        "metadata": {"userId": "u1", "plan": "professional", "billingPeriod": "monthly"},
    }
    first = await deliver(engine, webhook_body("subscription.active", data, "evt_a"))
    second = await deliver(engine, webhook_body("subscription.renewed", data, "evt_b"))
    assert first.state == S.APPLIED and not first.duplicate
    assert second.state == S.APPLIED and second.duplicate
    assert first.source_transaction_id == "sub_period_sub_1_2026-03-31"
    assert (await engine.ledger.get_balance("u1")).total == 73800


async def test_subscription_resolved_through_checkout_mapping(engine):
    await engine.resolver.record_checkout(
        CheckoutMapping(user_id="u-map", plan="enterprise", billing_period="yearly", subscription_id="sub_9")
    )
    outcome = await deliver(engine, webhook_body("subscription.active", {"subscription_id": "sub_9"}))
    assert outcome.state == S.APPLIED
    assert outcome.user_id == "u-map"
    assert (await engine.ledger.get_balance("u-map")).total == 187800


async def test_payment_resolved_by_time_window_with_product_hint(pricing, stores, clock, settings):
    plans = tuple(
        p.model_copy(update={"product_ids": {"monthly": "prod_basic_m"}}) if p.key == "basic" else p
        for p in pricing.plans
    )
    priced = pricing.model_copy(update={"plans": plans})
    engine = build_engine(settings, priced, stores, clock=clock)
    await engine.resolver.record_checkout(
        CheckoutMapping(user_id="u-recent", plan="basic", billing_period="monthly", created_at=clock())
    )
    clock.advance(minutes=2)

    outcome = await deliver(engine, webhook_body("payment.succeeded", payment("pay_w", product_id="prod_basic_m")))
    assert outcome.state == S.APPLIED
    assert outcome.user_id == "u-recent"
    assert (await engine.ledger.get_balance("u-recent")).total == 16200


async def test_bare_payment_resolved_by_recent_checkout(engine, clock):
    await engine.resolver.record_checkout(CheckoutMapping(user_id="u-recent", plan="creator", billing_period="monthly"))
    clock.advance(seconds=30)

    outcome = await deliver(engine, webhook_body("payment.succeeded", {"payment_id": "pay_bare"}))
    assert outcome.state == S.APPLIED
    assert outcome.user_id == "u-recent"
    assert (await engine.ledger.get_balance("u-recent")).total == 44400


async def test_unknown_plan_fails_without_granting(engine):
    raw = webhook_body("payment.succeeded", payment("pay_platinum", metadata={"userId": "u1", "plan": "platinum"}))
    outcome = await deliver(engine, raw)
    assert outcome.state == S.FAILED
    assert outcome.acknowledged
    assert outcome.history[-2:] == [S.CLASSIFIED, S.FAILED]
    assert "platinum" in outcome.reason
    assert (await engine.ledger.get_balance("u1")).total == 0


async def test_customer_email_fallback(engine):
    raw = webhook_body("payment.succeeded", payment("pay_mail", customer={"email": "payer@example.com"}))
    outcome = await deliver(engine, raw)
    assert outcome.state == S.APPLIED
    assert outcome.user_id == "user-by-email"
    # no plan in the event: default plan
    assert (await engine.ledger.get_balance("user-by-email")).total == 44400


async def test_malformed_payload_fails_but_is_acknowledged(engine):
    raw = webhook_body("payment.succeeded", {"total_amount": 5})
    outcome = await deliver(engine, raw)
    assert outcome.state == S.FAILED
    assert outcome.acknowledged


async def test_storage_error_after_verification_fails_but_is_acknowledged(engine, stores, monkeypatch):
    from creditflow.core.exceptions import StorageFailureError

    async def down(*args, **kwargs):
        raise StorageFailureError("Storage timed out during append")

    monkeypatch.setattr(stores.ledger, "append", down)
    raw = webhook_body("payment.succeeded", payment(metadata={"userId": "u1"}))
    outcome = await deliver(engine, raw)
    assert outcome.state == S.FAILED
    assert outcome.history[-2:] == [S.RESOLVED, S.FAILED]
    assert outcome.reason == "Storage timed out during append"


async def test_daily_pass_replaces_monthly_credits(engine):
    monthly = payment("pay_month", metadata={"userId": "u1", "plan": "creator", "billingPeriod": "monthly"})
    daily = payment("pay_day", metadata={"userId": "u1", "plan": "day pass", "billingPeriod": "daily"})
    await deliver(engine, webhook_body("payment.succeeded", monthly))
    await deliver(engine, webhook_body("payment.succeeded", daily))
    balance = await engine.ledger.get_balance("u1")
    assert balance.subscription_remaining == 9900
    assert balance.subscription_expires_at == engine.clock() + timedelta(days=1)
