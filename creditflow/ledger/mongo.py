"""MongoDB stores (Beanie). Unique indexes on ``credit_entries`` carry the atomicity."""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, TypeVar

from beanie import PydanticObjectId
from pymongo.errors import DuplicateKeyError, PyMongoError

from creditflow.core.exceptions import StorageFailureError
from creditflow.core.logging import get_logger
from creditflow.ledger.base import (
    CorrelationStore,
    DuplicateSourceTransaction,
    DuplicateTask,
    LedgerStore,
    SequenceConflict,
    UserDirectory,
)
from creditflow.ledger.types import NEVER_EXPIRES, CheckoutMapping, CreditClass, CreditEntry, EntryFilter, EntryKind
from creditflow.models.checkout_mapping import CheckoutMappingDocument
from creditflow.models.credit_entry import CreditEntryDocument
from creditflow.models.user import User

log = get_logger(__name__)

T = TypeVar("T")


async def _bounded(coro: Awaitable[T], timeout: float, op: str, **ctx: Any) -> T:
    """Run a storage call with a deadline; timeouts and driver errors become StorageFailureError."""
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError as e:
        log.error("storage_timeout", op=op, timeout=timeout, **ctx)
        raise StorageFailureError(f"Storage timed out during {op}", details={"op": op}) from e
    except DuplicateKeyError:
        raise
    except PyMongoError as e:
        log.error("storage_error", op=op, error=str(e), **ctx)
        raise StorageFailureError(f"Storage error during {op}", details={"op": op}) from e


def _classify_duplicate(exc: DuplicateKeyError) -> Exception:
    details = exc.details or {}
    key_pattern = details.get("keyPattern") or {}
    message = str(details.get("errmsg") or exc)
    if "source_transaction_id" in key_pattern or "grant_source_transaction_unique" in message:
        return DuplicateSourceTransaction(message)
    if "task_id" in key_pattern or "deduction_task_unique" in message:
        return DuplicateTask(message)
    return SequenceConflict(message)


class MongoLedgerStore(LedgerStore):
    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    async def append(self, entry: CreditEntry) -> str:
        doc = CreditEntryDocument.from_entry(entry)
        try:
            await _bounded(doc.insert(), self.timeout, "append", user_id=entry.user_id, sequence=entry.sequence)
        except DuplicateKeyError as e:
            raise _classify_duplicate(e) from e
        return str(doc.id)

    async def query(self, user_id: str, filters: EntryFilter | None = None) -> list[CreditEntry]:
        f = filters or EntryFilter()
        q: dict[str, Any] = {"user_id": user_id}
        if f.kind is not None:
            q["kind"] = f.kind.value
        if f.credit_class is not None:
            q["credit_class"] = f.credit_class.value
        if f.active_only or f.live_at is not None:
            q["is_active"] = True
        expires: dict[str, Any] = {}
        if f.live_at is not None:
            expires["$gt"] = f.live_at
        if f.expires_before is not None:
            expires["$lte"] = f.expires_before
        if expires:
            q["expires_at"] = expires
        if f.max_sequence is not None:
            q["sequence"] = {"$lte": f.max_sequence}
        cursor = CreditEntryDocument.find(q).sort("-sequence" if f.newest_first else "+sequence")
        if f.limit is not None:
            cursor = cursor.limit(f.limit)
        docs = await _bounded(cursor.to_list(), self.timeout, "query", user_id=user_id)
        return [d.to_entry() for d in docs]

    async def head_sequence(self, user_id: str) -> int:
        docs = await _bounded(
            CreditEntryDocument.find({"user_id": user_id}).sort("-sequence").limit(1).to_list(),
            self.timeout,
            "head_sequence",
            user_id=user_id,
        )
        return docs[0].sequence if docs else 0

    async def find_grant(self, user_id: str, source_transaction_id: str) -> CreditEntry | None:
        doc = await _bounded(
            CreditEntryDocument.find_one(
                {"user_id": user_id, "kind": EntryKind.GRANT.value, "source_transaction_id": source_transaction_id}
            ),
            self.timeout,
            "find_grant",
            user_id=user_id,
            source_transaction_id=source_transaction_id,
        )
        return doc.to_entry() if doc else None

    async def find_deduction(self, user_id: str, task_id: str) -> CreditEntry | None:
        doc = await _bounded(
            CreditEntryDocument.find_one({"user_id": user_id, "kind": EntryKind.DEDUCTION.value, "task_id": task_id}),
            self.timeout,
            "find_deduction",
            user_id=user_id,
            task_id=task_id,
        )
        return doc.to_entry() if doc else None

    async def deactivate_expired(self, now: datetime) -> int:
        result = await _bounded(
            CreditEntryDocument.find(
                {"is_active": True, "expires_at": {"$lte": now, "$lt": NEVER_EXPIRES}}
            ).update({"$set": {"is_active": False}}),
            self.timeout,
            "deactivate_expired",
        )
        return getattr(result, "modified_count", 0) or 0

    async def deactivate_class(
        self,
        user_id: str,
        credit_class: CreditClass,
        keep_source_transaction_id: str | None = None,
        before_sequence: int | None = None,
    ) -> int:
        q: dict[str, Any] = {
            "user_id": user_id,
            "kind": EntryKind.GRANT.value,
            "credit_class": credit_class.value,
            "is_active": True,
        }
        if keep_source_transaction_id:
            q["source_transaction_id"] = {"$ne": keep_source_transaction_id}
        if before_sequence is not None:
            q["sequence"] = {"$lt": before_sequence}
        result = await _bounded(
            CreditEntryDocument.find(q).update({"$set": {"is_active": False}}),
            self.timeout,
            "deactivate_class",
            user_id=user_id,
        )
        return getattr(result, "modified_count", 0) or 0

    async def deactivate_entries(self, user_id: str, entry_ids: list[str]) -> int:
        if not entry_ids:
            return 0
        ids = [PydanticObjectId(i) for i in entry_ids]
        result = await _bounded(
            CreditEntryDocument.find({"_id": {"$in": ids}, "user_id": user_id, "is_active": True}).update(
                {"$set": {"is_active": False}}
            ),
            self.timeout,
            "deactivate_entries",
            user_id=user_id,
        )
        return getattr(result, "modified_count", 0) or 0

    async def users_with_active_deductions(self) -> list[str]:
        return await _bounded(
            CreditEntryDocument.distinct("user_id", {"kind": EntryKind.DEDUCTION.value, "is_active": True}),
            self.timeout,
            "users_with_active_deductions",
        )


class MongoCorrelationStore(CorrelationStore):
    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    async def save(self, mapping: CheckoutMapping) -> None:
        await _bounded(
            CheckoutMappingDocument(**mapping.model_dump()).insert(),
            self.timeout,
            "save_mapping",
            user_id=mapping.user_id,
        )

    async def _newest(self, query: dict[str, Any], since: datetime, op: str) -> CheckoutMapping | None:
        query = {**query, "created_at": {"$gte": since}}
        docs = await _bounded(
            CheckoutMappingDocument.find(query).sort("-created_at").limit(1).to_list(),
            self.timeout,
            op,
        )
        return docs[0].to_mapping() if docs else None

    async def by_subscription(self, subscription_id: str, since: datetime) -> CheckoutMapping | None:
        return await self._newest({"subscription_id": subscription_id}, since, "mapping_by_subscription")

    async def by_payment(self, payment_id: str, since: datetime) -> CheckoutMapping | None:
        return await self._newest({"payment_id": payment_id}, since, "mapping_by_payment")

    async def latest_for(self, plan: str, billing_period: str, since: datetime) -> CheckoutMapping | None:
        return await self._newest({"plan": plan, "billing_period": billing_period}, since, "mapping_latest_for")


class MongoUserDirectory(UserDirectory):
    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    async def user_id_for_email(self, email: str) -> str | None:
        email = (email or "").strip().lower()
        if not email:
            return None
        user = await _bounded(User.find_one(User.email == email), self.timeout, "user_by_email")
        return str(user.id) if user else None
