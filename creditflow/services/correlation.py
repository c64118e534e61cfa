"""Work out which user a payment event belongs to when the provider does not say.

Strategies run in order and the first hit wins:

1. explicit ``userId`` / ``user_id`` in the event metadata
2. a checkout mapping recorded for the event's subscription id, then its payment id
3. time-window scoring of recent checkouts across every (plan, billing period)
4. the customer's email in the user directory

If none of them hits, ``UnresolvedIdentityError`` is raised and the event is dropped.
"""

from datetime import datetime, timedelta
from typing import Any, Callable

from pydantic import BaseModel, Field

from creditflow.core.exceptions import StorageFailureError, UnresolvedIdentityError
from creditflow.core.logging import get_logger
from creditflow.core.pricing import CorrelationPolicy, PricingConfig
from creditflow.ledger.base import CorrelationStore, UserDirectory
from creditflow.ledger.types import CheckoutMapping, utcnow

log = get_logger(__name__)

EXPLICIT = "explicit_metadata"
SUBSCRIPTION_MAPPING = "subscription_mapping"
PAYMENT_MAPPING = "payment_mapping"
TIME_WINDOW = "time_window"
EMAIL = "customer_email"


class CorrelationQuery(BaseModel):
    provider_event_id: str
    subscription_id: str | None = None
    payment_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    customer_email: str | None = None
    user_id: str | None = None
    plan_hint: str | None = None
    period_hint: str | None = None


class ResolvedIdentity(BaseModel):
    user_id: str
    plan: str
    billing_period: str
    strategy: str
    score: float | None = None

    def diagnostics(self) -> dict[str, Any]:
        out: dict[str, Any] = {"correlation_strategy": self.strategy}
        if self.score is not None:
            out["correlation_score"] = round(self.score, 3)
        return out


def score_candidate(
    mapping: CheckoutMapping,
    plan_hint: str | None,
    period_hint: str | None,
    now: datetime,
    policy: CorrelationPolicy,
) -> float:
    """Score one recent checkout against what the event tells us. Pure."""
    score = policy.base_score
    if plan_hint and mapping.plan == plan_hint:
        score += policy.plan_match_weight
    if period_hint and mapping.billing_period == period_hint:
        score += policy.period_match_weight
    window = float(policy.window_seconds)
    if window > 0:
        age = max(0.0, (now - mapping.created_at).total_seconds())
        score += max(0.0, (window - age) / window) * policy.recency_weight
    return score


def pick_best(
    candidates: list[CheckoutMapping],
    plan_hint: str | None,
    period_hint: str | None,
    now: datetime,
    policy: CorrelationPolicy,
) -> tuple[CheckoutMapping, float] | None:
    """Highest scoring candidate above the threshold, or None.

    A tie at the top between different users is ambiguous and yields None.
    """
    scored = [(m, score_candidate(m, plan_hint, period_hint, now, policy)) for m in candidates]
    scored = [(m, s) for m, s in scored if s >= policy.min_score]
    if not scored:
        return None
    best_score = max(s for _, s in scored)
    top = [m for m, s in scored if s == best_score]
    if len({m.user_id for m in top}) > 1:
        return None
    return top[0], best_score


class CorrelationResolver:
    def __init__(
        self,
        mappings: CorrelationStore,
        users: UserDirectory,
        pricing: PricingConfig,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.mappings = mappings
        self.users = users
        self.pricing = pricing
        self.clock = clock

    async def record_checkout(self, mapping: CheckoutMapping) -> CheckoutMapping:
        """Remember who started a checkout so a later bare webhook can be matched."""
        plan = self.pricing.plan(mapping.plan).key
        period = self.pricing.normalize_period(mapping.billing_period)
        stored = mapping.model_copy(update={"plan": plan, "billing_period": period, "created_at": self.clock()})
        await self.mappings.save(stored)
        log.info(
            "checkout_mapping_saved",
            user_id=stored.user_id,
            plan=plan,
            billing_period=period,
            subscription_id=stored.subscription_id,
            payment_id=stored.payment_id,
        )
        return stored

    async def resolve(self, query: CorrelationQuery) -> ResolvedIdentity:
        now = self.clock()
        plan_hint, period_hint = self._hints(query)

        if query.user_id:
            return self._identity(query.user_id, plan_hint, period_hint, None, EXPLICIT)

        policy = self.pricing.correlation
        direct_since = now - timedelta(seconds=policy.mapping_max_age_seconds)
        if query.subscription_id:
            mapping = await self._lookup(self.mappings.by_subscription, query.subscription_id, direct_since, query)
            if mapping:
                return self._identity(mapping.user_id, plan_hint, period_hint, mapping, SUBSCRIPTION_MAPPING)
        if query.payment_id:
            mapping = await self._lookup(self.mappings.by_payment, query.payment_id, direct_since, query)
            if mapping:
                return self._identity(mapping.user_id, plan_hint, period_hint, mapping, PAYMENT_MAPPING)

        best = await self._time_window(plan_hint, period_hint, now, query)
        if best:
            mapping, score = best
            identity = self._identity(mapping.user_id, plan_hint, period_hint, mapping, TIME_WINDOW)
            return identity.model_copy(update={"score": score})

        if query.customer_email:
            try:
                user_id = await self.users.user_id_for_email(query.customer_email)
            except StorageFailureError as e:
                log.warning("correlation_email_lookup_failed", event_id=query.provider_event_id, error=e.message)
                user_id = None
            if user_id:
                return self._identity(user_id, plan_hint, period_hint, None, EMAIL)

        log.warning(
            "correlation_unresolved",
            event_id=query.provider_event_id,
            subscription_id=query.subscription_id,
            payment_id=query.payment_id,
        )
        raise UnresolvedIdentityError(
            "Could not identify the user for this payment event",
            details={"event_id": query.provider_event_id},
        )

    def _hints(self, query: CorrelationQuery) -> tuple[str | None, str | None]:
        meta = query.metadata
        plan = query.plan_hint or meta.get("plan")
        period = query.period_hint or meta.get("billingPeriod") or meta.get("billing_period")
        # an unknown plan name raises; only a missing one falls back to the default
        plan = self.pricing.plan(plan).key if plan else None
        period = self.pricing.normalize_period(period) if period else None
        return plan, period

    def _identity(
        self,
        user_id: str,
        plan_hint: str | None,
        period_hint: str | None,
        mapping: CheckoutMapping | None,
        strategy: str,
    ) -> ResolvedIdentity:
        plan = plan_hint or (mapping.plan if mapping else None) or self.pricing.default_plan
        period = period_hint or (mapping.billing_period if mapping else None) or self.pricing.default_billing_period
        log.info("correlation_resolved", user_id=user_id, strategy=strategy, plan=plan, billing_period=period)
        return ResolvedIdentity(user_id=user_id, plan=plan, billing_period=period, strategy=strategy)

    async def _lookup(self, finder, key: str, since: datetime, query: CorrelationQuery) -> CheckoutMapping | None:
        try:
            return await finder(key, since)
        except StorageFailureError as e:
            log.warning("correlation_lookup_failed", event_id=query.provider_event_id, key=key, error=e.message)
            return None

    async def _time_window(
        self,
        plan_hint: str | None,
        period_hint: str | None,
        now: datetime,
        query: CorrelationQuery,
    ) -> tuple[CheckoutMapping, float] | None:
        policy = self.pricing.correlation
        since = now - timedelta(seconds=policy.window_seconds)
        # events without hints are scored against the default plan and period
        target_plan = plan_hint or self.pricing.default_plan
        target_period = period_hint or self.pricing.default_billing_period
        candidates = []
        for plan, period in self.pricing.combinations():
            try:
                mapping = await self.mappings.latest_for(plan, period, since)
            except StorageFailureError as e:
                log.warning("correlation_window_lookup_failed", event_id=query.provider_event_id, error=e.message)
                return None
            if mapping:
                candidates.append(mapping)
        best = pick_best(candidates, target_plan, target_period, now, policy)
        log.info(
            "correlation_window_scored",
            event_id=query.provider_event_id,
            candidates=len(candidates),
            matched=best is not None,
        )
        return best
