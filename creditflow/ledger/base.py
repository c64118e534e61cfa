from abc import ABC, abstractmethod
from datetime import datetime

from creditflow.ledger.types import CheckoutMapping, CreditClass, CreditEntry, EntryFilter, LedgerSnapshot


class SequenceConflict(Exception):
    """Another write claimed the same per-user sequence number first."""


class DuplicateSourceTransaction(Exception):
    """A grant with this (user_id, source_transaction_id) already exists."""


class DuplicateTask(Exception):
    """A deduction with this (user_id, task_id) already exists."""


class LedgerStore(ABC):
    """Append-only credit entries.

    ``append`` is the only balance-affecting write. It must be a single atomic insert
    that enforces three uniqueness constraints: ``(user_id, sequence)``,
    ``(user_id, source_transaction_id)`` for grants and ``(user_id, task_id)`` for
    deductions. Infrastructure errors surface as ``StorageFailureError``.
    """

    @abstractmethod
    async def append(self, entry: CreditEntry) -> str:
        """Insert entry; return its id."""
        ...

    @abstractmethod
    async def query(self, user_id: str, filters: EntryFilter | None = None) -> list[CreditEntry]:
        ...

    @abstractmethod
    async def head_sequence(self, user_id: str) -> int:
        """Highest sequence written for the user (0 when none)."""
        ...

    @abstractmethod
    async def find_grant(self, user_id: str, source_transaction_id: str) -> CreditEntry | None:
        ...

    @abstractmethod
    async def find_deduction(self, user_id: str, task_id: str) -> CreditEntry | None:
        ...

    @abstractmethod
    async def deactivate_expired(self, now: datetime) -> int:
        """Flip is_active off for non-permanent entries with expires_at <= now."""
        ...

    @abstractmethod
    async def deactivate_class(
        self,
        user_id: str,
        credit_class: CreditClass,
        keep_source_transaction_id: str | None = None,
        before_sequence: int | None = None,
    ) -> int:
        """Flip is_active off for the user's active grants of a class.

        ``keep_source_transaction_id`` is never touched, and with ``before_sequence`` only
        grants written before that sequence are.
        """
        ...

    @abstractmethod
    async def deactivate_entries(self, user_id: str, entry_ids: list[str]) -> int:
        ...

    @abstractmethod
    async def users_with_active_deductions(self) -> list[str]:
        ...

    async def snapshot(self, user_id: str, now: datetime) -> LedgerSnapshot:
        head = await self.head_sequence(user_id)
        entries = await self.query(user_id, EntryFilter(active_only=True, max_sequence=head))
        # Expired deductions still matter while any grant they drew from is live,
        # so only grants are filtered by time here.
        live = [e for e in entries if not e.is_grant or e.is_live(now)]
        return LedgerSnapshot(user_id=user_id, sequence=head, entries=live)


class CorrelationStore(ABC):
    """Checkout mappings used to attribute payments that arrive without identity."""

    @abstractmethod
    async def save(self, mapping: CheckoutMapping) -> None:
        ...

    @abstractmethod
    async def by_subscription(self, subscription_id: str, since: datetime) -> CheckoutMapping | None:
        ...

    @abstractmethod
    async def by_payment(self, payment_id: str, since: datetime) -> CheckoutMapping | None:
        ...

    @abstractmethod
    async def latest_for(self, plan: str, billing_period: str, since: datetime) -> CheckoutMapping | None:
        """Most recent mapping for this (plan, billing_period) created after ``since``."""
        ...


class UserDirectory(ABC):
    @abstractmethod
    async def user_id_for_email(self, email: str) -> str | None:
        ...
