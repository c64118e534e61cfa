"""In-process stores. Used by the test-suite and for local runs without MongoDB.

Every check and write inside ``append`` happens without yielding to the event loop,
so the uniqueness constraints hold under concurrent tasks the same way the Mongo
indexes do. Reads yield once so concurrent tasks actually interleave.
"""

import asyncio
import uuid
from datetime import datetime

from creditflow.ledger.base import (
    CorrelationStore,
    DuplicateSourceTransaction,
    DuplicateTask,
    LedgerStore,
    SequenceConflict,
    UserDirectory,
)
from creditflow.ledger.types import CheckoutMapping, CreditClass, CreditEntry, EntryFilter, EntryKind


class InMemoryLedgerStore(LedgerStore):
    def __init__(self):
        self.entries: dict[str, CreditEntry] = {}
        self._sequences: set[tuple[str, int]] = set()
        self._grants: dict[tuple[str, str], str] = {}
        self._tasks: dict[tuple[str, str], str] = {}

    async def append(self, entry: CreditEntry) -> str:
        seq_key = (entry.user_id, entry.sequence)
        if seq_key in self._sequences:
            raise SequenceConflict(f"sequence {entry.sequence} already taken for {entry.user_id}")
        if entry.kind == EntryKind.GRANT and entry.source_transaction_id:
            if (entry.user_id, entry.source_transaction_id) in self._grants:
                raise DuplicateSourceTransaction(entry.source_transaction_id)
        if entry.kind == EntryKind.DEDUCTION and entry.task_id:
            if (entry.user_id, entry.task_id) in self._tasks:
                raise DuplicateTask(entry.task_id)
        entry_id = entry.id or uuid.uuid4().hex
        stored = entry.model_copy(update={"id": entry_id}, deep=True)
        self.entries[entry_id] = stored
        self._sequences.add(seq_key)
        if stored.kind == EntryKind.GRANT and stored.source_transaction_id:
            self._grants[(stored.user_id, stored.source_transaction_id)] = entry_id
        if stored.kind == EntryKind.DEDUCTION and stored.task_id:
            self._tasks[(stored.user_id, stored.task_id)] = entry_id
        return entry_id

    async def query(self, user_id: str, filters: EntryFilter | None = None) -> list[CreditEntry]:
        await asyncio.sleep(0)
        f = filters or EntryFilter()
        out = []
        for e in self.entries.values():
            if e.user_id != user_id:
                continue
            if f.kind is not None and e.kind != f.kind:
                continue
            if f.credit_class is not None and e.credit_class != f.credit_class:
                continue
            if f.active_only and not e.is_active:
                continue
            if f.live_at is not None and not e.is_live(f.live_at):
                continue
            if f.expires_before is not None and not e.expires_at <= f.expires_before:
                continue
            if f.max_sequence is not None and e.sequence > f.max_sequence:
                continue
            out.append(e.model_copy(deep=True))
        out.sort(key=lambda e: e.sequence, reverse=f.newest_first)
        if f.limit is not None:
            out = out[: f.limit]
        return out

    async def head_sequence(self, user_id: str) -> int:
        await asyncio.sleep(0)
        seqs = [s for uid, s in self._sequences if uid == user_id]
        return max(seqs) if seqs else 0

    async def find_grant(self, user_id: str, source_transaction_id: str) -> CreditEntry | None:
        entry_id = self._grants.get((user_id, source_transaction_id))
        return self.entries[entry_id].model_copy(deep=True) if entry_id else None

    async def find_deduction(self, user_id: str, task_id: str) -> CreditEntry | None:
        entry_id = self._tasks.get((user_id, task_id))
        return self.entries[entry_id].model_copy(deep=True) if entry_id else None

    async def deactivate_expired(self, now: datetime) -> int:
        count = 0
        for entry_id, e in list(self.entries.items()):
            if e.is_active and not e.is_permanent and e.expires_at <= now:
                self.entries[entry_id] = e.model_copy(update={"is_active": False})
                count += 1
        return count

    async def deactivate_class(
        self,
        user_id: str,
        credit_class: CreditClass,
        keep_source_transaction_id: str | None = None,
        before_sequence: int | None = None,
    ) -> int:
        count = 0
        for entry_id, e in list(self.entries.items()):
            if e.user_id != user_id or not e.is_active or e.kind != EntryKind.GRANT:
                continue
            if keep_source_transaction_id and e.source_transaction_id == keep_source_transaction_id:
                continue
            if before_sequence is not None and e.sequence >= before_sequence:
                continue
            if e.credit_class == credit_class:
                self.entries[entry_id] = e.model_copy(update={"is_active": False})
                count += 1
        return count

    async def deactivate_entries(self, user_id: str, entry_ids: list[str]) -> int:
        count = 0
        for entry_id in entry_ids:
            e = self.entries.get(entry_id)
            if e is None or e.user_id != user_id or not e.is_active:
                continue
            self.entries[entry_id] = e.model_copy(update={"is_active": False})
            count += 1
        return count

    async def users_with_active_deductions(self) -> list[str]:
        return sorted({e.user_id for e in self.entries.values() if e.is_active and e.kind == EntryKind.DEDUCTION})


class InMemoryCorrelationStore(CorrelationStore):
    def __init__(self):
        self.mappings: list[CheckoutMapping] = []

    async def save(self, mapping: CheckoutMapping) -> None:
        self.mappings.append(mapping)

    def _newest(self, predicate, since: datetime) -> CheckoutMapping | None:
        found = [m for m in self.mappings if predicate(m) and m.created_at >= since]
        return max(found, key=lambda m: m.created_at) if found else None

    async def by_subscription(self, subscription_id: str, since: datetime) -> CheckoutMapping | None:
        return self._newest(lambda m: m.subscription_id == subscription_id, since)

    async def by_payment(self, payment_id: str, since: datetime) -> CheckoutMapping | None:
        return self._newest(lambda m: m.payment_id == payment_id, since)

    async def latest_for(self, plan: str, billing_period: str, since: datetime) -> CheckoutMapping | None:
        return self._newest(lambda m: m.plan == plan and m.billing_period == billing_period, since)


class InMemoryUserDirectory(UserDirectory):
    def __init__(self, users: dict[str, str] | None = None):
        # email -> user_id
        self.users = {k.strip().lower(): v for k, v in (users or {}).items()}

    async def user_id_for_email(self, email: str) -> str | None:
        return self.users.get((email or "").strip().lower())
