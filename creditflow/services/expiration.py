"""Expiration sweep: retire ledger rows whose expiry has passed or that no longer affect a balance."""

from datetime import datetime

from creditflow.core.logging import get_logger
from creditflow.ledger.base import LedgerStore
from creditflow.ledger.types import EntryFilter, utcnow
from creditflow.services.balances import grant_remaining

log = get_logger(__name__)


async def retire_settled(store: LedgerStore, user_id: str, now: datetime) -> int:
    """Retire fully consumed grants, then deductions that drew only from retired grants.

    Neither step changes the balance: a consumed grant has nothing left, and a
    deduction only counts against the grants it drew from. Grants go first so a
    grant's remaining credits never rise while its deductions are being retired.
    """
    entries = await store.query(user_id, EntryFilter(active_only=True))
    remaining = grant_remaining(entries, now)
    by_id = {e.id: e for e in entries}
    # short-cycle grants keep older subscription grants replaced until they expire
    consumed = sorted(
        gid for gid, left in remaining.items() if left <= 0 and not by_id[gid].supersedes_subscription
    )
    open_grants = {e.id for e in entries if e.is_grant and e.is_live(now)} - set(consumed)
    settled = [
        e.id
        for e in entries
        if not e.is_grant and not any(a.entry_id in open_grants for a in e.allocations)
    ]
    count = 0
    if consumed:
        count += await store.deactivate_entries(user_id, consumed)
    if settled:
        count += await store.deactivate_entries(user_id, settled)
    if count:
        log.info("credits_settled", user_id=user_id, grants=len(consumed), deductions=len(settled))
    return count


async def sweep_expired(store: LedgerStore, now: datetime | None = None) -> int:
    """Mark expired and settled entries inactive; return how many changed.

    Safe to re-run and to run alongside grants and deductions: balances already
    exclude expired rows, so flipping them changes no balance. Permanent grants are
    only retired once nothing is left on them.
    """
    now = now or utcnow()
    expired = await store.deactivate_expired(now)
    settled = 0
    for user_id in await store.users_with_active_deductions():
        settled += await retire_settled(store, user_id, now)
    log.info("credits_expired", count=expired, settled=settled, now=now.isoformat())
    return expired + settled
