from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from creditflow.core.audit import log_event
from creditflow.core.exceptions import InvalidSignatureError
from creditflow.deps import get_current_user, get_engine
from creditflow.ledger.types import CheckoutMapping
from creditflow.models.user import User
from creditflow.services.engine import CreditEngine
from creditflow.services.webhooks import WebhookState

router = APIRouter()


class CheckoutMappingRequest(BaseModel):
    plan: str = Field(..., min_length=1)
    billing_period: str = "monthly"
    subscription_id: str | None = None
    payment_id: str | None = None


@router.post("/checkout-mapping")
async def checkout_mapping(
    body: CheckoutMappingRequest,
    user: User = Depends(get_current_user),
    engine: CreditEngine = Depends(get_engine),
):
    """Record a checkout start so a webhook without user metadata can still be matched."""
    stored = await engine.resolver.record_checkout(
        CheckoutMapping(
            user_id=str(user.id),
            plan=body.plan,
            billing_period=body.billing_period,
            user_email=user.email,
            subscription_id=body.subscription_id,
            payment_id=body.payment_id,
        )
    )
    return {"status": "ok", "plan": stored.plan, "billing_period": stored.billing_period}


@router.post("/webhook")
async def payments_webhook(request: Request, engine: CreditEngine = Depends(get_engine)):
    """Provider webhook. 401 on a bad signature; every other outcome is acknowledged with 200."""
    body = await request.body()
    signature = request.headers.get(engine.settings.webhook_signature_header)
    event_id = request.headers.get("webhook-id")
    try:
        outcome = await engine.webhooks.process(body, signature, event_id)
    except InvalidSignatureError:
        await log_event(None, "webhook_rejected", "webhook", event_id, {"reason": "invalid_signature"})
        raise
    if outcome.state != WebhookState.SKIPPED or outcome.reason != "unhandled_event_type":
        await log_event(
            outcome.user_id,
            f"webhook_{outcome.state.value}",
            "webhook",
            outcome.event_id,
            {
                "event_type": outcome.event_type,
                "source_transaction_id": outcome.source_transaction_id,
                "duplicate": outcome.duplicate,
                "credits": outcome.credits,
                "reason": outcome.reason,
            },
        )
    return {
        "received": True,
        "state": outcome.state.value,
        "event_id": outcome.event_id,
        "duplicate": outcome.duplicate,
    }
