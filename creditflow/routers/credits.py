from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from creditflow.deps import get_current_user, get_engine
from creditflow.ledger.types import CreditEntry
from creditflow.models.user import User
from creditflow.services.engine import CreditEngine

router = APIRouter()


class DeductRequest(BaseModel):
    amount: int = Field(..., gt=0)
    task_id: str = Field(..., min_length=1, max_length=200)
    description: str = ""


def entry_out(e: CreditEntry) -> dict:
    return {
        "id": e.id,
        "kind": e.kind.value,
        "amount": e.amount,
        "credit_class": e.credit_class.value if e.credit_class else None,
        "source_transaction_id": e.source_transaction_id,
        "task_id": e.task_id,
        "expires_at": None if e.is_permanent else e.expires_at.isoformat(),
        "is_active": e.is_active,
        "metadata": e.metadata,
        "created_at": e.created_at.isoformat(),
    }


@router.get("/balance")
async def credits_balance(
    user: User = Depends(get_current_user),
    engine: CreditEngine = Depends(get_engine),
):
    """Return current credit balance with its subscription/permanent split."""
    balance = await engine.ledger.get_balance(str(user.id))
    return balance.model_dump(mode="json")


@router.get("/ledger")
async def credits_ledger(
    user: User = Depends(get_current_user),
    engine: CreditEngine = Depends(get_engine),
    limit: int = Query(50, ge=1, le=200),
):
    """Return ledger entries for current user (newest first)."""
    entries = await engine.ledger.history(str(user.id), limit=limit)
    return {"entries": [entry_out(e) for e in entries], "limit": limit}


@router.get("/expiring")
async def credits_expiring(
    user: User = Depends(get_current_user),
    engine: CreditEngine = Depends(get_engine),
    days: int = Query(7, ge=1, le=90),
):
    """Subscription credits that run out within the next ``days`` days."""
    items = await engine.ledger.expiring_credits(str(user.id), days_ahead=days)
    return {
        "items": [{**i, "expires_at": i["expires_at"].isoformat()} for i in items],
        "days": days,
    }


@router.post("/deduct")
async def credits_deduct(
    body: DeductRequest,
    user: User = Depends(get_current_user),
    engine: CreditEngine = Depends(get_engine),
):
    """Charge credits for a unit of work. 402 when the balance is short."""
    result = await engine.ledger.deduct(str(user.id), body.amount, body.task_id, body.description)
    return result.model_dump()
