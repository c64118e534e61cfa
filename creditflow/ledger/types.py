"""Domain types shared by the ledger stores and the engine services."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

# Permanent grants expire "never"; a concrete far-future value keeps comparisons uniform.
NEVER_EXPIRES = datetime(9999, 12, 31, 23, 59, 59)


def utcnow() -> datetime:
    """Naive UTC, matching what Mongo hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CreditClass(str, Enum):
    SUBSCRIPTION = "subscription"
    PERMANENT = "permanent"


class EntryKind(str, Enum):
    GRANT = "grant"
    DEDUCTION = "deduction"


class Allocation(BaseModel):
    """The part of a deduction drawn from one grant."""
    entry_id: str
    credit_class: CreditClass
    amount: int
    expires_at: datetime


class CreditEntry(BaseModel):
    id: str
    user_id: str
    kind: EntryKind
    amount: int  # positive = grant, negative = deduction
    sequence: int
    credit_class: CreditClass | None = None  # grants only
    source_transaction_id: str | None = None
    # short-cycle grants: older subscription grants stop counting once this one is written
    supersedes_subscription: bool = False
    task_id: str | None = None  # deductions only
    allocations: list[Allocation] = Field(default_factory=list)
    expires_at: datetime = NEVER_EXPIRES
    is_active: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_grant(self) -> bool:
        return self.kind == EntryKind.GRANT

    @property
    def is_permanent(self) -> bool:
        return self.expires_at >= NEVER_EXPIRES

    def is_live(self, now: datetime) -> bool:
        return self.is_active and (self.is_permanent or self.expires_at > now)


class LedgerSnapshot(BaseModel):
    """Live entries of one user as of ``sequence``; the next write must claim ``sequence + 1``."""
    user_id: str
    sequence: int
    entries: list[CreditEntry]


class EntryFilter(BaseModel):
    kind: EntryKind | None = None
    credit_class: CreditClass | None = None
    active_only: bool = False
    live_at: datetime | None = None  # active and not expired at this instant
    expires_before: datetime | None = None
    max_sequence: int | None = None
    newest_first: bool = False
    limit: int | None = None


class CheckoutMapping(BaseModel):
    user_id: str
    plan: str
    billing_period: str
    user_email: str | None = None
    subscription_id: str | None = None
    payment_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class CreditBalance(BaseModel):
    total: int = 0
    subscription_remaining: int = 0
    permanent_remaining: int = 0
    subscription_expires_at: datetime | None = None


class AllocationResult(BaseModel):
    granted: bool
    duplicate: bool
    message: str
    entry_id: str | None = None


class DeductionResult(BaseModel):
    success: bool
    deducted: int = 0
    from_subscription: int = 0
    from_permanent: int = 0
    duplicate: bool = False
    entry_id: str | None = None
    error: str | None = None
