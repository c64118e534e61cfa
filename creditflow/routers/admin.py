from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from creditflow.core.audit import log_event
from creditflow.core.config import get_settings
from creditflow.core.exceptions import BadRequestError
from creditflow.deps import get_engine, reload_pricing, require_admin
from creditflow.ledger.types import CreditClass
from creditflow.models.user import User
from creditflow.services.engine import CreditEngine
from creditflow.services.expiration import sweep_expired

router = APIRouter()


class AdminGrantRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0)
    transaction_id: str = Field(..., min_length=1, max_length=200)
    credit_class: CreditClass = CreditClass.PERMANENT
    plan: str | None = None  # subscription grants: expiry follows the plan's period
    billing_period: str = "monthly"
    reason: str = ""


@router.post("/credits/grant")
async def admin_grant_credits(
    body: AdminGrantRequest,
    admin: User = Depends(require_admin),
    engine: CreditEngine = Depends(get_engine),
):
    """Admin: grant credits. Repeating a transaction_id grants nothing."""
    max_credits = get_settings().admin_grant_max_credits
    if body.amount > max_credits:
        raise BadRequestError(f"Maximum {max_credits} credits per grant")
    metadata = {"granted_by": str(admin.id), "reason": body.reason, "source": "admin"}
    expires_at = None
    if body.credit_class == CreditClass.SUBSCRIPTION:
        period = engine.pricing.normalize_period(body.billing_period)
        expires_at = engine.pricing.period_end(period, engine.ledger.clock())
        metadata["billing_period"] = period
        if body.plan:
            metadata["plan"] = engine.pricing.plan(body.plan).key
    result = await engine.ledger.allocate(
        body.user_id,
        body.credit_class,
        body.amount,
        body.transaction_id,
        expires_at=expires_at,
        metadata=metadata,
    )
    await log_event(
        body.user_id,
        "admin_credit_grant",
        "credit_entry",
        result.entry_id,
        {"amount": body.amount, "transaction_id": body.transaction_id, "duplicate": result.duplicate, "admin_id": str(admin.id)},
    )
    return result.model_dump()


@router.post("/credits/expire")
async def admin_expire_credits(
    admin: User = Depends(require_admin),
    engine: CreditEngine = Depends(get_engine),
):
    """Admin: run the expiration sweep now."""
    count = await sweep_expired(engine.stores.ledger, engine.clock())
    await log_event(str(admin.id), "credits_expired", "credit_entry", None, {"count": count})
    return {"expired": count}


@router.post("/pricing/reload")
async def admin_reload_pricing(admin: User = Depends(require_admin)):
    """Admin: load pricing from PRICING_CONFIG_PATH (or built-in plans) and swap it in."""
    pricing = reload_pricing()
    await log_event(str(admin.id), "pricing_reloaded", "pricing", None, {"plans": [p.key for p in pricing.plans]})
    return {"plans": [{"name": p.name, "credits": p.credits, "billing_periods": list(p.billing_periods)} for p in pricing.plans]}


@router.get("/users/{user_id}/balance")
async def admin_user_balance(
    user_id: str,
    admin: User = Depends(require_admin),
    engine: CreditEngine = Depends(get_engine),
):
    """Admin: any user's balance."""
    balance = await engine.ledger.get_balance(user_id)
    return {"user_id": user_id, **balance.model_dump(mode="json")}
