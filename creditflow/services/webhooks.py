"""Payment webhook ingestion.

Each delivery walks ``received -> signature_verified -> classified ->
(resolved | unresolved) -> applied | skipped | failed``. Only a bad signature is
reported back to the provider as an error; everything after that is acknowledged so
the provider does not redeliver forever, and failures are left to operators via logs.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from creditflow.core.exceptions import AppError, InvalidSignatureError, UnresolvedIdentityError
from creditflow.core.logging import bind_webhook_context, get_logger
from creditflow.core.pricing import PricingConfig
from creditflow.core.security import verify_webhook_signature
from creditflow.ledger.types import AllocationResult, CreditClass
from creditflow.services.correlation import CorrelationQuery, CorrelationResolver, ResolvedIdentity
from creditflow.services.credits import CreditLedger
from creditflow.services.events import (
    PaymentSucceeded,
    ProviderEvent,
    SubscriptionActivated,
    SubscriptionRenewed,
    UnknownEvent,
    parse_event,
)

log = get_logger(__name__)


class WebhookState(str, Enum):
    RECEIVED = "received"
    SIGNATURE_VERIFIED = "signature_verified"
    CLASSIFIED = "classified"
    RESOLVED = "resolved"
    UNRESOLVED = "unresolved"
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


TERMINAL_STATES = frozenset({WebhookState.APPLIED, WebhookState.SKIPPED, WebhookState.FAILED})


class WebhookOutcome(BaseModel):
    state: WebhookState = WebhookState.RECEIVED
    history: list[WebhookState] = Field(default_factory=lambda: [WebhookState.RECEIVED])
    event_id: str | None = None
    event_type: str | None = None
    user_id: str | None = None
    source_transaction_id: str | None = None
    credits: int | None = None
    duplicate: bool = False
    reason: str | None = None

    def advance(self, state: WebhookState, reason: str | None = None) -> "WebhookOutcome":
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"webhook already finished in state {self.state.value}")
        self.state = state
        self.history.append(state)
        if reason:
            self.reason = reason
        return self

    @property
    def acknowledged(self) -> bool:
        return self.state in TERMINAL_STATES


class WebhookProcessor:
    def __init__(
        self,
        ledger: CreditLedger,
        resolver: CorrelationResolver,
        pricing: PricingConfig,
        secret: str,
        secret_prefix: str = "whsec_",
        production: bool = True,
        allow_unsigned: bool = False,
    ):
        self.ledger = ledger
        self.resolver = resolver
        self.pricing = pricing
        self.secret = secret
        self.secret_prefix = secret_prefix
        self.production = production
        # unsigned test deliveries are never accepted in production
        self.allow_unsigned = allow_unsigned and not production

    async def process(self, raw: bytes, signature: str | None, header_event_id: str | None = None) -> WebhookOutcome:
        outcome = WebhookOutcome(event_id=header_event_id)
        self._check_signature(raw, signature, outcome)
        outcome.advance(WebhookState.SIGNATURE_VERIFIED)
        try:
            event_id, event = parse_event(raw, header_event_id)
            outcome.event_id = event_id
            outcome.event_type = event.type
            bind_webhook_context(event_id=event_id, event_type=event.type)
            outcome.advance(WebhookState.CLASSIFIED)
            await self._dispatch(event, outcome)
        except Exception as e:
            message = e.message if isinstance(e, AppError) else str(e)
            log.exception(
                "webhook_failed",
                event_id=outcome.event_id,
                event_type=outcome.event_type,
                user_id=outcome.user_id,
                source_transaction_id=outcome.source_transaction_id,
                state=outcome.state.value,
            )
            if outcome.state not in TERMINAL_STATES:
                outcome.advance(WebhookState.FAILED, reason=message)
        log.info(
            "webhook_processed",
            event_id=outcome.event_id,
            event_type=outcome.event_type,
            state=outcome.state.value,
            user_id=outcome.user_id,
            duplicate=outcome.duplicate,
        )
        return outcome

    def _check_signature(self, raw: bytes, signature: str | None, outcome: WebhookOutcome) -> None:
        if self.secret and verify_webhook_signature(raw, signature, self.secret, self.secret_prefix):
            return
        if self.allow_unsigned:
            log.warning("webhook_signature_bypassed", has_secret=bool(self.secret), has_signature=bool(signature))
            return
        outcome.advance(WebhookState.FAILED, reason="invalid_signature")
        log.warning("webhook_signature_invalid", has_secret=bool(self.secret), has_signature=bool(signature))
        if not self.secret:
            raise InvalidSignatureError("Webhook secret not configured")
        raise InvalidSignatureError()

    async def _dispatch(self, event: ProviderEvent, outcome: WebhookOutcome) -> None:
        if isinstance(event, UnknownEvent):
            log.info("webhook_event_ignored", event_type=event.type)
            outcome.advance(WebhookState.SKIPPED, reason="unhandled_event_type")
            return
        if isinstance(event, PaymentSucceeded):
            await self._on_payment(event, outcome)
            return
        if isinstance(event, (SubscriptionActivated, SubscriptionRenewed)):
            await self._on_subscription(event, outcome)
            return
        raise TypeError(f"no handler for {type(event).__name__}")

    async def _identify(self, query: CorrelationQuery, outcome: WebhookOutcome) -> ResolvedIdentity | None:
        try:
            identity = await self.resolver.resolve(query)
        except UnresolvedIdentityError:
            outcome.advance(WebhookState.UNRESOLVED)
            outcome.advance(WebhookState.SKIPPED, reason="unresolved_identity")
            return None
        outcome.user_id = identity.user_id
        bind_webhook_context(user_id=identity.user_id)
        outcome.advance(WebhookState.RESOLVED)
        return identity

    def _hints(self, product_id: str | None, plan: str | None, period: str | None) -> tuple[str | None, str | None]:
        from_product = self.pricing.product_lookup(product_id)
        if from_product:
            return plan or from_product[0], period or from_product[1]
        return plan, period

    async def _on_payment(self, event: PaymentSucceeded, outcome: WebhookOutcome) -> None:
        data = event.data
        outcome.source_transaction_id = data.payment_id
        if data.subscription_id:
            # credits for subscription payments come with the subscription events
            outcome.advance(WebhookState.SKIPPED, reason="subscription_payment")
            return
        meta = data.merged_metadata()
        plan_hint, period_hint = self._hints(
            data.first_product_id(),
            meta.get("plan"),
            meta.get("billingPeriod") or meta.get("billing_period"),
        )
        query = CorrelationQuery(
            provider_event_id=outcome.event_id or data.payment_id,
            payment_id=data.payment_id,
            metadata=meta,
            customer_email=data.customer_email(),
            user_id=data.explicit_user_id(),
            plan_hint=plan_hint,
            period_hint=period_hint,
        )
        identity = await self._identify(query, outcome)
        if identity is None:
            return
        base_meta = {
            "provider_event_id": outcome.event_id,
            "event_type": event.type,
            "payment_id": data.payment_id,
            **identity.diagnostics(),
        }
        topup = data.topup_credits()
        if topup:
            result = await self.ledger.allocate(
                identity.user_id,
                CreditClass.PERMANENT,
                topup,
                data.payment_id,
                metadata={**base_meta, "purchase": "topup"},
            )
            self._applied(outcome, result, topup)
            return
        result = await self.ledger.allocate_plan(
            identity.user_id,
            identity.plan,
            identity.billing_period,
            data.payment_id,
            metadata={**base_meta, "purchase": "one_time"},
        )
        self._applied(outcome, result, self.pricing.credits_for(identity.plan))

    async def _on_subscription(self, event: SubscriptionActivated | SubscriptionRenewed, outcome: WebhookOutcome) -> None:
        data = event.data
        txn_id = data.period_transaction_id()
        outcome.source_transaction_id = txn_id
        meta = data.merged_metadata()
        plan_hint, period_hint = self._hints(
            data.first_product_id(),
            meta.get("plan") or data.plan,
            meta.get("billingPeriod") or meta.get("billing_period") or data.billing_period,
        )
        query = CorrelationQuery(
            provider_event_id=outcome.event_id or data.subscription_id,
            subscription_id=data.subscription_id,
            payment_id=data.latest_payment_id or data.payment_id,
            metadata=meta,
            customer_email=data.customer_email(),
            user_id=data.explicit_user_id(),
            plan_hint=plan_hint,
            period_hint=period_hint,
        )
        identity = await self._identify(query, outcome)
        if identity is None:
            return
        metadata: dict[str, Any] = {
            "provider_event_id": outcome.event_id,
            "event_type": event.type,
            "subscription_id": data.subscription_id,
            **identity.diagnostics(),
        }
        result = await self.ledger.allocate_plan(
            identity.user_id,
            identity.plan,
            identity.billing_period,
            txn_id,
            metadata=metadata,
        )
        self._applied(outcome, result, self.pricing.credits_for(identity.plan))

    def _applied(self, outcome: WebhookOutcome, result: AllocationResult, credits: int) -> None:
        outcome.duplicate = result.duplicate
        outcome.credits = 0 if result.duplicate else credits
        outcome.advance(WebhookState.APPLIED, reason=result.message)
