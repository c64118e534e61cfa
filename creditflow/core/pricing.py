"""Pricing and reconciliation policy, loaded once into an immutable snapshot.

A snapshot is never mutated. Reloading builds a new ``PricingConfig`` and the
caller swaps its reference to it (see ``creditflow.deps.reload_pricing``).
"""

import json
from datetime import datetime, timedelta
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from creditflow.core.exceptions import BadRequestError

MONTHLY = "monthly"
YEARLY = "yearly"
DAILY = "daily"


class PlanConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    credits: int  # per billing cycle
    billing_periods: tuple[str, ...] = (MONTHLY, YEARLY)
    # billing period -> provider product id
    product_ids: dict[str, str] = Field(default_factory=dict)

    @property
    def key(self) -> str:
        return self.name.strip().lower()


class CorrelationPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    window_seconds: int = 15 * 60
    min_score: float = 11.0
    base_score: float = 1.0
    plan_match_weight: float = 10.0
    period_match_weight: float = 10.0
    recency_weight: float = 5.0
    mapping_max_age_seconds: int = 24 * 3600


class PricingConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    plans: tuple[PlanConfig, ...]
    expiry_days: dict[str, int] = Field(default_factory=lambda: {DAILY: 1, MONTHLY: 30, YEARLY: 30})
    # grants for these periods replace (not stack with) existing subscription credits
    short_cycle_periods: tuple[str, ...] = (DAILY,)
    default_plan: str = "creator"
    default_billing_period: str = MONTHLY
    default_expiry_days: int = 30
    correlation: CorrelationPolicy = Field(default_factory=CorrelationPolicy)

    def plan(self, name: str) -> PlanConfig:
        key = (name or "").strip().lower()
        for p in self.plans:
            if p.key == key:
                return p
        raise BadRequestError(f"Plan configuration not found: {name}")

    def has_plan(self, name: str) -> bool:
        key = (name or "").strip().lower()
        return any(p.key == key for p in self.plans)

    def credits_for(self, plan: str) -> int:
        return self.plan(plan).credits

    def combinations(self) -> list[tuple[str, str]]:
        """Every (plan, billing_period) a checkout can be started for."""
        return [(p.key, period) for p in self.plans for period in p.billing_periods]

    def product_lookup(self, product_id: str | None) -> tuple[str, str] | None:
        if not product_id:
            return None
        for p in self.plans:
            for period, pid in p.product_ids.items():
                if pid == product_id:
                    return p.key, period
        return None

    def normalize_period(self, value: str | None) -> str:
        v = (value or "").strip().lower()
        if v in self.expiry_days:
            return v
        if v.startswith("day"):
            return DAILY
        if v.startswith("year") or v.startswith("annual"):
            return YEARLY
        if v.startswith("month"):
            return MONTHLY
        return self.default_billing_period

    def is_short_cycle(self, billing_period: str) -> bool:
        return billing_period in self.short_cycle_periods

    def period_end(self, billing_period: str, start: datetime) -> datetime:
        days = self.expiry_days.get(billing_period, self.default_expiry_days)
        return start + timedelta(days=days)


DEFAULT_PLANS = (
    PlanConfig(name="Basic", credits=16200),
    PlanConfig(name="Creator", credits=44400),
    PlanConfig(name="Professional", credits=73800),
    PlanConfig(name="Enterprise", credits=187800),
    PlanConfig(name="Day Pass", credits=9900, billing_periods=(DAILY,)),
)


def default_pricing() -> PricingConfig:
    return PricingConfig(plans=DEFAULT_PLANS)


def load_pricing(path: str | None = None) -> PricingConfig:
    """Build a snapshot from a JSON file, or the built-in plans when no path is set."""
    if not path:
        return default_pricing()
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    return PricingConfig.model_validate(raw)
