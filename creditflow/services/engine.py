"""Wires stores, pricing and settings into the services the API and worker use."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from creditflow.core.config import Settings
from creditflow.core.pricing import PricingConfig
from creditflow.ledger.base import CorrelationStore, LedgerStore, UserDirectory
from creditflow.ledger.types import utcnow
from creditflow.services.correlation import CorrelationResolver
from creditflow.services.credits import CreditLedger
from creditflow.services.webhooks import WebhookProcessor


@dataclass(frozen=True)
class Stores:
    ledger: LedgerStore
    mappings: CorrelationStore
    users: UserDirectory


@dataclass(frozen=True)
class CreditEngine:
    settings: Settings
    pricing: PricingConfig
    stores: Stores
    ledger: CreditLedger
    resolver: CorrelationResolver
    webhooks: WebhookProcessor
    clock: Callable[[], datetime] = field(default=utcnow, repr=False)

    def with_pricing(self, pricing: PricingConfig) -> "CreditEngine":
        """A fresh engine over the same stores; the current one is left untouched."""
        return build_engine(self.settings, pricing, self.stores, clock=self.clock)


def build_engine(
    settings: Settings,
    pricing: PricingConfig,
    stores: Stores,
    clock: Callable[[], datetime] = utcnow,
) -> CreditEngine:
    ledger = CreditLedger(stores.ledger, pricing, write_retries=settings.ledger_write_retries, clock=clock)
    resolver = CorrelationResolver(stores.mappings, stores.users, pricing, clock=clock)
    webhooks = WebhookProcessor(
        ledger,
        resolver,
        pricing,
        secret=settings.webhook_secret,
        secret_prefix=settings.webhook_secret_prefix,
        production=settings.is_production,
        allow_unsigned=settings.allow_unsigned_webhooks,
    )
    return CreditEngine(
        settings=settings,
        pricing=pricing,
        stores=stores,
        ledger=ledger,
        resolver=resolver,
        webhooks=webhooks,
        clock=clock,
    )


def mongo_stores(settings: Settings) -> Stores:
    from creditflow.ledger.mongo import MongoCorrelationStore, MongoLedgerStore, MongoUserDirectory

    timeout = settings.storage_timeout_seconds
    return Stores(
        ledger=MongoLedgerStore(timeout),
        mappings=MongoCorrelationStore(timeout),
        users=MongoUserDirectory(timeout),
    )


def memory_stores(users: dict[str, str] | None = None) -> Stores:
    from creditflow.ledger.memory import InMemoryCorrelationStore, InMemoryLedgerStore, InMemoryUserDirectory

    return Stores(
        ledger=InMemoryLedgerStore(),
        mappings=InMemoryCorrelationStore(),
        users=InMemoryUserDirectory(users),
    )
