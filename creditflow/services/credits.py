"""Credit ledger: balances, idempotent grants and priority-ordered deductions.

Every balance-affecting write claims the next per-user ``sequence`` number. The store
rejects a second write with the same number, so a write computed from a stale snapshot
fails and is retried against a fresh one. That makes "read balance, then append"
atomic per user without a lock.
"""

from datetime import datetime, timedelta
from typing import Any, Callable

from creditflow.core.exceptions import BadRequestError, InsufficientCreditsError, StorageFailureError
from creditflow.core.logging import get_logger
from creditflow.core.pricing import PricingConfig
from creditflow.ledger.base import DuplicateSourceTransaction, DuplicateTask, LedgerStore, SequenceConflict
from creditflow.ledger.types import (
    NEVER_EXPIRES,
    Allocation,
    AllocationResult,
    CreditBalance,
    CreditClass,
    CreditEntry,
    DeductionResult,
    EntryFilter,
    EntryKind,
    utcnow,
)
from creditflow.services.balances import draw_order, grant_remaining, summarize

log = get_logger(__name__)


class CreditLedger:
    def __init__(
        self,
        store: LedgerStore,
        pricing: PricingConfig,
        write_retries: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.pricing = pricing
        self.write_retries = max(1, write_retries)
        self.clock = clock

    # Reads

    async def get_balance(self, user_id: str) -> CreditBalance:
        """Current balance. An unreadable ledger reads as zero so callers refuse work."""
        now = self.clock()
        try:
            snapshot = await self.store.snapshot(user_id, now)
        except StorageFailureError as e:
            log.error("balance_read_failed", user_id=user_id, error=e.message)
            return CreditBalance()
        return summarize(snapshot.entries, now)

    async def has_enough_credits(self, user_id: str, amount: int) -> bool:
        balance = await self.get_balance(user_id)
        return balance.total >= amount

    async def history(self, user_id: str, limit: int = 50) -> list[CreditEntry]:
        """Ledger entries, newest first."""
        return await self.store.query(user_id, EntryFilter(newest_first=True, limit=limit))

    async def expiring_credits(self, user_id: str, days_ahead: int = 7) -> list[dict[str, Any]]:
        """Subscription grants with credits left that expire within ``days_ahead``."""
        now = self.clock()
        snapshot = await self.store.snapshot(user_id, now)
        remaining = grant_remaining(snapshot.entries, now)
        horizon = now + timedelta(days=days_ahead)
        out = []
        for e in snapshot.entries:
            left = remaining.get(e.id, 0)
            if left > 0 and e.expires_at <= horizon:
                out.append({"id": e.id, "amount": left, "expires_at": e.expires_at})
        out.sort(key=lambda x: x["expires_at"])
        return out

    # Grants

    async def allocate(
        self,
        user_id: str,
        credit_class: CreditClass,
        amount: int,
        source_transaction_id: str | None,
        expires_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AllocationResult:
        """Append a grant once per (user_id, source_transaction_id).

        A repeated transaction id returns ``duplicate=True`` and writes nothing. A grant
        for a short-cycle billing period replaces the user's earlier subscription credits
        as part of its own append; deactivating those rows afterwards is best-effort.
        """
        if amount <= 0:
            raise BadRequestError("Grant amount must be positive")
        metadata = dict(metadata or {})
        if credit_class == CreditClass.PERMANENT:
            expires_at = NEVER_EXPIRES
        elif expires_at is None:
            raise BadRequestError("Subscription credits need an expiry")

        if source_transaction_id:
            existing = await self.store.find_grant(user_id, source_transaction_id)
            if existing:
                return self._duplicate_grant(user_id, source_transaction_id, existing.id)

        billing_period = metadata.get("billing_period")
        short_cycle = bool(
            credit_class == CreditClass.SUBSCRIPTION and billing_period and self.pricing.is_short_cycle(billing_period)
        )

        for attempt in range(self.write_retries):
            head = await self.store.head_sequence(user_id)
            entry = CreditEntry(
                id="",
                user_id=user_id,
                kind=EntryKind.GRANT,
                amount=amount,
                sequence=head + 1,
                credit_class=credit_class,
                source_transaction_id=source_transaction_id,
                supersedes_subscription=short_cycle,
                expires_at=expires_at,
                metadata=metadata,
                created_at=self.clock(),
            )
            try:
                entry_id = await self.store.append(entry)
            except DuplicateSourceTransaction:
                return self._duplicate_grant(user_id, source_transaction_id, None)
            except SequenceConflict:
                log.debug("allocation_sequence_conflict", user_id=user_id, attempt=attempt)
                continue
            log.info(
                "credits_allocated",
                user_id=user_id,
                amount=amount,
                credit_class=credit_class.value,
                source_transaction_id=source_transaction_id,
                expires_at=expires_at.isoformat(),
            )
            if short_cycle:
                await self._retire_subscription_credits(user_id, source_transaction_id, entry.sequence)
            return AllocationResult(
                granted=True,
                duplicate=False,
                message=f"Allocated {amount} {credit_class.value} credits",
                entry_id=entry_id,
            )
        log.error("allocation_retries_exhausted", user_id=user_id, source_transaction_id=source_transaction_id)
        raise StorageFailureError("Could not allocate credits under concurrent writes", details={"user_id": user_id})

    async def allocate_plan(
        self,
        user_id: str,
        plan: str,
        billing_period: str,
        source_transaction_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> AllocationResult:
        """Grant one billing cycle of a plan's credits as subscription credits."""
        plan_config = self.pricing.plan(plan)
        period = self.pricing.normalize_period(billing_period)
        now = self.clock()
        meta = {
            "plan": plan_config.key,
            "billing_period": period,
            "allocated_at": now.isoformat(),
            **(metadata or {}),
        }
        return await self.allocate(
            user_id,
            CreditClass.SUBSCRIPTION,
            plan_config.credits,
            source_transaction_id,
            expires_at=self.pricing.period_end(period, now),
            metadata=meta,
        )

    async def _retire_subscription_credits(
        self, user_id: str, keep_source_transaction_id: str | None, before_sequence: int
    ) -> None:
        # Balances already ignore the superseded rows; this only flips them inactive.
        try:
            count = await self.store.deactivate_class(
                user_id,
                CreditClass.SUBSCRIPTION,
                keep_source_transaction_id=keep_source_transaction_id,
                before_sequence=before_sequence,
            )
            log.info("subscription_credits_retired", user_id=user_id, count=count)
        except Exception as e:
            log.warning("subscription_credits_retire_failed", user_id=user_id, error=str(e))

    def _duplicate_grant(self, user_id: str, source_transaction_id: str | None, entry_id: str | None) -> AllocationResult:
        log.info("allocation_duplicate", user_id=user_id, source_transaction_id=source_transaction_id)
        return AllocationResult(
            granted=False,
            duplicate=True,
            message="Credits already allocated for this transaction",
            entry_id=entry_id,
        )

    # Deductions

    async def deduct(self, user_id: str, amount: int, task_id: str, description: str = "") -> DeductionResult:
        """Consume ``amount`` credits, subscription credits first.

        Raises InsufficientCreditsError (and writes nothing) when the live balance is
        short. A second call with the same ``task_id`` returns the first call's split.
        """
        if amount <= 0:
            raise BadRequestError("Deduction amount must be positive")
        if not task_id:
            raise BadRequestError("task_id is required")

        existing = await self.store.find_deduction(user_id, task_id)
        if existing:
            return self._duplicate_deduction(existing)

        for attempt in range(self.write_retries):
            now = self.clock()
            snapshot = await self.store.snapshot(user_id, now)
            sources = draw_order(snapshot.entries, now)
            available = sum(left for _, left in sources)
            if available < amount:
                log.info("deduction_insufficient", user_id=user_id, task_id=task_id, required=amount, available=available)
                raise InsufficientCreditsError(required=amount, available=available)

            allocations: list[Allocation] = []
            needed = amount
            for grant, left in sources:
                if needed <= 0:
                    break
                take = min(left, needed)
                allocations.append(
                    Allocation(
                        entry_id=grant.id,
                        credit_class=grant.credit_class or CreditClass.PERMANENT,
                        amount=take,
                        expires_at=grant.expires_at,
                    )
                )
                needed -= take
            from_subscription = sum(a.amount for a in allocations if a.credit_class == CreditClass.SUBSCRIPTION)
            from_permanent = amount - from_subscription

            entry = CreditEntry(
                id="",
                user_id=user_id,
                kind=EntryKind.DEDUCTION,
                amount=-amount,
                sequence=snapshot.sequence + 1,
                task_id=task_id,
                allocations=allocations,
                # retired by the sweeper once every grant it drew from has expired
                expires_at=max(a.expires_at for a in allocations),
                metadata={
                    "description": description,
                    "from_subscription": from_subscription,
                    "from_permanent": from_permanent,
                },
                created_at=now,
            )
            try:
                entry_id = await self.store.append(entry)
            except DuplicateTask:
                existing = await self.store.find_deduction(user_id, task_id)
                if existing is None:
                    raise StorageFailureError("Deduction conflict could not be resolved", details={"task_id": task_id})
                return self._duplicate_deduction(existing)
            except SequenceConflict:
                log.debug("deduction_sequence_conflict", user_id=user_id, task_id=task_id, attempt=attempt)
                continue
            log.info(
                "credits_deducted",
                user_id=user_id,
                task_id=task_id,
                amount=amount,
                from_subscription=from_subscription,
                from_permanent=from_permanent,
            )
            return DeductionResult(
                success=True,
                deducted=amount,
                from_subscription=from_subscription,
                from_permanent=from_permanent,
                entry_id=entry_id,
            )
        log.error("deduction_retries_exhausted", user_id=user_id, task_id=task_id)
        raise StorageFailureError("Could not deduct credits under concurrent writes", details={"user_id": user_id})

    def _duplicate_deduction(self, entry: CreditEntry) -> DeductionResult:
        log.info("deduction_duplicate", user_id=entry.user_id, task_id=entry.task_id)
        return DeductionResult(
            success=True,
            deducted=-entry.amount,
            from_subscription=int(entry.metadata.get("from_subscription", 0)),
            from_permanent=int(entry.metadata.get("from_permanent", 0)),
            duplicate=True,
            entry_id=entry.id,
        )
