import json

import pytest

from creditflow.services.events import (
    EventParseError,
    PaymentSucceeded,
    SubscriptionActivated,
    SubscriptionRenewed,
    UnknownEvent,
    parse_event,
)


def body(envelope: dict) -> bytes:
    return json.dumps(envelope).encode()


def test_payment_event_parsed_into_variant():
    event_id, event = parse_event(
        body(
            {
                "id": "evt_1",
                "type": "payment.succeeded",
                "data": {
                    "payment_id": "pay_abc",
                    "customer": {"email": "a@example.com", "metadata": {"userId": "from-customer"}},
                    "metadata": {"userId": "u1", "plan": "basic"},
                    "total_amount": 900,
                },
            }
        )
    )
    assert event_id == "evt_1"
    assert isinstance(event, PaymentSucceeded)
    assert event.data.payment_id == "pay_abc"
    # event metadata wins over customer metadata
    assert event.data.explicit_user_id() == "u1"
    assert event.data.customer_email() == "a@example.com"


def test_payment_id_alias_and_product_cart():
    _, event = parse_event(
        body({"type": "payment.succeeded", "data": {"id": "pay_1", "product_cart": [{"product_id": "prod_9"}]}})
    )
    assert event.data.payment_id == "pay_1"
    assert event.data.first_product_id() == "prod_9"


def test_user_id_from_customer_metadata():
    _, event = parse_event(
        body(
            {
                "type": "subscription.active",
                "data": {"subscription_id": "sub_1", "customer": {"metadata": {"user_id": "u7"}}},
            }
        )
    )
    assert isinstance(event, SubscriptionActivated)
    assert event.data.explicit_user_id() == "u7"


def test_period_transaction_id_from_next_billing_date():
    _, active = parse_event(
        body(
            {
                "type": "subscription.active",
                "data": {"subscription_id": "sub_1", "next_billing_date": "2026-03-31T10:15:00Z"},
            }
        )
    )
    _, renewed = parse_event(
        body(
            {
                "type": "subscription.renewed",
                "data": {"subscription_id": "sub_1", "next_billing_date": "2026-03-31T23:00:00Z"},
            }
        )
    )
    assert isinstance(renewed, SubscriptionRenewed)
    assert active.data.period_transaction_id() == "sub_period_sub_1_2026-03-31"
    assert renewed.data.period_transaction_id() == active.data.period_transaction_id()


def test_period_transaction_id_fallbacks():
    _, with_payment = parse_event(
        body({"type": "subscription.renewed", "data": {"subscription_id": "sub_1", "latest_payment_id": "pay_9"}})
    )
    _, bare = parse_event(body({"type": "subscription.renewed", "data": {"subscription_id": "sub_1"}}))
    assert with_payment.data.period_transaction_id() == "pay_9"
    assert bare.data.period_transaction_id() == "sub-sub_1"


def test_topup_credits():
    _, event = parse_event(body({"type": "payment.succeeded", "data": {"payment_id": "p", "metadata": {"credits": "500"}}}))
    assert event.data.topup_credits() == 500
    _, event = parse_event(body({"type": "payment.succeeded", "data": {"payment_id": "p", "metadata": {"credits": "lots"}}}))
    with pytest.raises(EventParseError):
        event.data.topup_credits()


def test_unknown_event_type():
    event_id, event = parse_event(body({"type": "refund.succeeded", "data": {"refund_id": "r1"}}), header_id="wh_1")
    assert event_id == "wh_1"
    assert isinstance(event, UnknownEvent)
    assert event.type == "refund.succeeded"


def test_event_id_falls_back_to_body_hash():
    raw = body({"type": "refund.succeeded", "data": {}})
    first, _ = parse_event(raw)
    second, _ = parse_event(raw)
    assert first.startswith("sha256:")
    assert first == second


@pytest.mark.parametrize(
    "raw",
    [
        b"not json",
        b"[1, 2]",
        b'{"data": {}}',
        body({"type": "payment.succeeded", "data": {"total_amount": 10}}),
    ],
)
def test_malformed_bodies_rejected(raw):
    with pytest.raises(EventParseError):
        parse_event(raw)
