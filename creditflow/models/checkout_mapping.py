from datetime import datetime

from beanie import Document
from pydantic import Field
from pymongo import ASCENDING, DESCENDING, IndexModel

from creditflow.ledger.types import CheckoutMapping, utcnow

# Mongo removes mappings after this long; lookups apply their own shorter windows.
MAPPING_TTL_SECONDS = 24 * 3600


class CheckoutMappingDocument(Document):
    """Checkout start -> user, for attributing webhooks that arrive without identity."""
    user_id: str
    plan: str
    billing_period: str
    user_email: str | None = None
    subscription_id: str | None = None
    payment_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "checkout_mappings"
        indexes = [
            IndexModel([("subscription_id", ASCENDING)], name="subscription_lookup"),
            IndexModel([("payment_id", ASCENDING)], name="payment_lookup"),
            IndexModel(
                [("plan", ASCENDING), ("billing_period", ASCENDING), ("created_at", DESCENDING)],
                name="plan_period_recent",
            ),
            IndexModel([("created_at", ASCENDING)], name="created_ttl", expireAfterSeconds=MAPPING_TTL_SECONDS),
        ]

    def to_mapping(self) -> CheckoutMapping:
        return CheckoutMapping(**self.model_dump(exclude={"id", "revision_id"}))
