import json
import os
from datetime import datetime, timedelta
from types import SimpleNamespace
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("MONGODB_DB_NAME", "creditflow_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")

WEBHOOK_SECRET = "whsec_test-webhook-secret"


class FakeClock:
    """Settable clock; every engine service reads time through it."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 3, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def pricing():
    from creditflow.core.pricing import default_pricing
    return default_pricing()


@pytest.fixture
def stores():
    from creditflow.services.engine import memory_stores
    return memory_stores({"payer@example.com": "user-by-email"})


@pytest.fixture
def ledger(stores, pricing, clock):
    from creditflow.services.credits import CreditLedger
    return CreditLedger(stores.ledger, pricing, clock=clock)


@pytest.fixture
def settings():
    from creditflow.core.config import Settings
    return Settings(env="test", PAYMENTS_WEBHOOK_SECRET=WEBHOOK_SECRET)


@pytest.fixture
def engine(settings, pricing, stores, clock):
    from creditflow.services.engine import build_engine
    return build_engine(settings, pricing, stores, clock=clock)


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    from creditflow.core.security import compute_webhook_signature, normalize_webhook_secret
    return compute_webhook_signature(body, normalize_webhook_secret(secret))


def webhook_body(event_type: str, data: dict, event_id: str | None = None) -> bytes:
    envelope = {"type": event_type, "data": data}
    if event_id:
        envelope["id"] = event_id
    return json.dumps(envelope).encode()


@pytest.fixture
def current_user():
    return SimpleNamespace(id="user-1", email="u1@example.com", role="user")


@pytest.fixture
def admin_user():
    return SimpleNamespace(id="admin-1", email="admin@example.com", role="admin")


@pytest.fixture
def audit_events(monkeypatch) -> list:
    """Capture audit writes instead of hitting Mongo."""
    events = []

    async def fake_log_event(user_id, event_type, entity_type, entity_id=None, metadata=None):
        events.append({"user_id": user_id, "event_type": event_type, "entity_id": entity_id, "metadata": metadata or {}})

    monkeypatch.setattr("creditflow.routers.payments.log_event", fake_log_event)
    monkeypatch.setattr("creditflow.routers.admin.log_event", fake_log_event)
    return events


@pytest_asyncio.fixture
async def client(engine, current_user, admin_user, audit_events) -> AsyncGenerator[AsyncClient, None]:
    from creditflow import deps
    from creditflow.main import app

    deps.set_engine(engine)
    app.dependency_overrides[deps.get_current_user] = lambda: current_user
    app.dependency_overrides[deps.require_admin] = lambda: admin_user
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
    deps.set_engine(None)
