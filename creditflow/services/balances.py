"""Balance aggregation over a ledger snapshot.

Every deduction records which grants it drew from. A grant's remaining credits are
its amount minus the allocations against it, and a grant only counts while it is
active and unexpired, so credits drawn from a grant that later expires leave the
balance together with it.

A short-cycle grant replaces the user's earlier subscription credits. It claims a
sequence number like any other write, so a deduction computed before it conflicts
and is retried against the grant instead of the credits it replaced.
"""

from datetime import datetime

from creditflow.ledger.types import NEVER_EXPIRES, CreditBalance, CreditClass, CreditEntry


def grant_remaining(entries: list[CreditEntry], now: datetime) -> dict[str, int]:
    """Live grant id -> credits still available on it.

    Subscription grants written before the latest live short-cycle grant are left out,
    whether or not the cleanup that deactivates them has run yet.
    """
    cutoff = max(
        (e.sequence for e in entries if e.is_grant and e.supersedes_subscription and e.is_live(now)),
        default=0,
    )
    remaining = {
        e.id: e.amount
        for e in entries
        if e.is_grant
        and e.is_live(now)
        and not (e.credit_class == CreditClass.SUBSCRIPTION and e.sequence < cutoff)
    }
    for e in entries:
        if e.is_grant or not e.is_active:
            continue
        for alloc in e.allocations:
            if alloc.entry_id in remaining:
                remaining[alloc.entry_id] -= alloc.amount
    return remaining


def summarize(entries: list[CreditEntry], now: datetime) -> CreditBalance:
    remaining = grant_remaining(entries, now)
    grants = {e.id: e for e in entries if e.id in remaining}
    subscription = 0
    permanent = 0
    expires_at: datetime | None = None
    for entry_id, left in remaining.items():
        left = max(left, 0)
        grant = grants[entry_id]
        if grant.credit_class == CreditClass.SUBSCRIPTION:
            subscription += left
            if left > 0 and grant.expires_at < NEVER_EXPIRES:
                expires_at = grant.expires_at if expires_at is None else min(expires_at, grant.expires_at)
        else:
            permanent += left
    return CreditBalance(
        total=subscription + permanent,
        subscription_remaining=subscription,
        permanent_remaining=permanent,
        subscription_expires_at=expires_at,
    )


def draw_order(entries: list[CreditEntry], now: datetime) -> list[tuple[CreditEntry, int]]:
    """Live grants with credits left, in the order deductions consume them.

    Subscription credits go first, soonest-expiring first; permanent credits after,
    oldest first.
    """
    remaining = grant_remaining(entries, now)
    grants = [e for e in entries if e.id in remaining and remaining[e.id] > 0]
    subscription = sorted(
        (g for g in grants if g.credit_class == CreditClass.SUBSCRIPTION),
        key=lambda g: (g.expires_at, g.sequence),
    )
    permanent = sorted(
        (g for g in grants if g.credit_class != CreditClass.SUBSCRIPTION),
        key=lambda g: g.sequence,
    )
    return [(g, remaining[g.id]) for g in subscription + permanent]
