"""Provider webhook payloads, parsed into a closed set of event variants.

Handlers downstream only see ``PaymentSucceeded``, ``SubscriptionActivated``,
``SubscriptionRenewed`` or ``UnknownEvent``; no ad hoc probing of raw dicts.
"""

import hashlib
import json
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from creditflow.core.exceptions import BadRequestError

USER_ID_KEYS = ("userId", "user_id")
EMAIL_KEYS = ("user_email", "userEmail", "email")


class EventParseError(BadRequestError):
    pass


class CustomerInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    customer_id: str | None = None
    email: str | None = None
    name: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class _ProviderObject(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    customer: CustomerInfo | None = None
    customer_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    product_id: str | None = None
    product_cart: list[dict[str, Any]] = Field(default_factory=list)

    def merged_metadata(self) -> dict[str, Any]:
        """Event metadata wins over customer metadata."""
        customer_meta = self.customer.metadata if self.customer else {}
        return {**customer_meta, **self.metadata}

    def explicit_user_id(self) -> str | None:
        meta = self.merged_metadata()
        for key in USER_ID_KEYS:
            value = meta.get(key)
            if value:
                return str(value)
        return None

    def customer_email(self) -> str | None:
        if self.customer and self.customer.email:
            return self.customer.email
        meta = self.merged_metadata()
        for key in EMAIL_KEYS:
            if meta.get(key):
                return str(meta[key])
        return None

    def first_product_id(self) -> str | None:
        if self.product_id:
            return self.product_id
        for item in self.product_cart:
            if item.get("product_id"):
                return str(item["product_id"])
        return None


class PaymentData(_ProviderObject):
    payment_id: str = Field(validation_alias=AliasChoices("payment_id", "id"))
    subscription_id: str | None = None
    total_amount: int | None = Field(default=None, validation_alias=AliasChoices("total_amount", "amount"))
    currency: str | None = None

    def topup_credits(self) -> int | None:
        """Credits bought by a one-time top-up, when the checkout said so."""
        raw = self.metadata.get("credits")
        if raw in (None, ""):
            return None
        try:
            credits = int(raw)
        except (TypeError, ValueError):
            raise EventParseError(f"Invalid credits in payment metadata: {raw!r}")
        return credits if credits > 0 else None


class SubscriptionData(_ProviderObject):
    subscription_id: str = Field(validation_alias=AliasChoices("subscription_id", "id"))
    plan: str | None = None
    billing_period: str | None = None
    next_billing_date: datetime | None = None
    current_period_end: datetime | None = None
    latest_payment_id: str | None = None
    payment_id: str | None = None

    def period_transaction_id(self) -> str:
        """One id per billing period, so 'active' and 'renewed' for the same period collapse."""
        period_end = self.next_billing_date or self.current_period_end
        if period_end is not None:
            return f"sub_period_{self.subscription_id}_{period_end.date().isoformat()}"
        return self.latest_payment_id or self.payment_id or f"sub-{self.subscription_id}"


class PaymentSucceeded(BaseModel):
    type: Literal["payment.succeeded", "payment.completed"]
    data: PaymentData


class SubscriptionActivated(BaseModel):
    type: Literal["subscription.active", "subscription.created"]
    data: SubscriptionData


class SubscriptionRenewed(BaseModel):
    type: Literal["subscription.renewed"]
    data: SubscriptionData


class UnknownEvent(BaseModel):
    type: str
    data: dict[str, Any] = Field(default_factory=dict)


KnownEvent = Annotated[
    Union[PaymentSucceeded, SubscriptionActivated, SubscriptionRenewed],
    Field(discriminator="type"),
]
ProviderEvent = Union[PaymentSucceeded, SubscriptionActivated, SubscriptionRenewed, UnknownEvent]

_known_adapter = TypeAdapter(KnownEvent)

KNOWN_EVENT_TYPES = frozenset(
    {
        "payment.succeeded",
        "payment.completed",
        "subscription.active",
        "subscription.created",
        "subscription.renewed",
    }
)


def event_id_for(envelope: dict[str, Any], raw: bytes, header_id: str | None = None) -> str:
    for candidate in (header_id, envelope.get("id"), envelope.get("webhook_id")):
        if candidate:
            return str(candidate)
    return "sha256:" + hashlib.sha256(raw).hexdigest()


def parse_event(raw: bytes, header_id: str | None = None) -> tuple[str, ProviderEvent]:
    """Decode and validate a webhook body. Returns (provider_event_id, event)."""
    try:
        envelope = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise EventParseError("Webhook body is not valid JSON") from e
    if not isinstance(envelope, dict) or not isinstance(envelope.get("type"), str):
        raise EventParseError("Webhook body has no event type")
    event_id = event_id_for(envelope, raw, header_id)
    event_type = envelope["type"]
    data = envelope.get("data") or {}
    if event_type not in KNOWN_EVENT_TYPES:
        return event_id, UnknownEvent(type=event_type, data=data if isinstance(data, dict) else {})
    try:
        return event_id, _known_adapter.validate_python({"type": event_type, "data": data})
    except ValidationError as e:
        raise EventParseError(
            f"Malformed {event_type} payload",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e
