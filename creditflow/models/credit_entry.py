from datetime import datetime
from typing import Any

from beanie import Document
from pydantic import Field
from pymongo import ASCENDING, DESCENDING, IndexModel

from creditflow.ledger.types import NEVER_EXPIRES, Allocation, CreditClass, CreditEntry, EntryKind, utcnow


class CreditEntryDocument(Document):
    """Immutable ledger row; only is_active ever changes after insert."""
    user_id: str
    kind: EntryKind
    amount: int  # positive = grant, negative = deduction
    sequence: int  # per-user write order; unique, claimed by every balance-affecting write
    credit_class: CreditClass | None = None
    source_transaction_id: str | None = None
    supersedes_subscription: bool = False
    task_id: str | None = None
    allocations: list[Allocation] = Field(default_factory=list)
    expires_at: datetime = NEVER_EXPIRES
    is_active: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "credit_entries"
        indexes = [
            IndexModel([("user_id", ASCENDING), ("sequence", ASCENDING)], unique=True, name="user_sequence_unique"),
            IndexModel(
                [("user_id", ASCENDING), ("source_transaction_id", ASCENDING)],
                unique=True,
                name="grant_source_transaction_unique",
                partialFilterExpression={"kind": "grant", "source_transaction_id": {"$type": "string"}},
            ),
            IndexModel(
                [("user_id", ASCENDING), ("task_id", ASCENDING)],
                unique=True,
                name="deduction_task_unique",
                partialFilterExpression={"kind": "deduction", "task_id": {"$type": "string"}},
            ),
            IndexModel([("is_active", ASCENDING), ("expires_at", ASCENDING)], name="active_expiry"),
            IndexModel([("user_id", ASCENDING), ("created_at", DESCENDING)], name="user_recent"),
        ]

    @classmethod
    def from_entry(cls, entry: CreditEntry) -> "CreditEntryDocument":
        return cls(**entry.model_dump(exclude={"id"}))

    def to_entry(self) -> CreditEntry:
        data = self.model_dump(exclude={"id", "revision_id"})
        return CreditEntry(id=str(self.id), **data)
