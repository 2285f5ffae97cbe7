"""Shared test fixtures: single test DB for all test modules."""
from __future__ import annotations

import hashlib
import hmac
import json
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from src.db.tables import Base, load_all_tables
from src.db.engine import SQLITE_BUSY_TIMEOUT, enable_sqlite_savepoints, get_session
from src.models import BillingInterval
from src.services.errors import ProviderError
from src.services.plans import CreditGrants, Plan, PlanCatalog
from src.services.webhooks import WebhookProcessor

# Use a shared in-memory DB with check_same_thread=False and StaticPool
# This ensures all connections see the same in-memory database.
from sqlalchemy.pool import NullPool, StaticPool

TEST_DB_URL = "sqlite+aiosqlite:///file:test?mode=memory&cache=shared&uri=true"

test_engine = create_async_engine(
    TEST_DB_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
enable_sqlite_savepoints(test_engine)
TestSession = async_sessionmaker(test_engine, expire_on_commit=False, class_=AsyncSession)

WEBHOOK_SECRET = "whsec_test"
ADMIN_KEY = "test-admin-key"


async def override_get_session():
    async with TestSession() as session:
        yield session


# Import app and override BEFORE any test module imports app
from src.api.main import app  # noqa: E402
from src.api.webhooks import get_webhook_processor  # noqa: E402

app.dependency_overrides[get_session] = override_get_session

# Point the webhook processor and scheduled jobs at the test engine
import src.db.engine as _engine_mod
_engine_mod.async_session = TestSession
_engine_mod.engine = test_engine


@asynccontextmanager
async def get_test_session():
    """Context manager for seeding data in tests."""
    async with TestSession() as session:
        yield session


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create tables before each test, drop after."""
    load_all_tables()
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    app.dependency_overrides.pop(get_webhook_processor, None)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def file_db(tmp_path):
    """File-backed SQLite, one connection per session, for concurrency tests."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'payledger.db'}",
        connect_args={"timeout": SQLITE_BUSY_TIMEOUT},
        poolclass=NullPool,
    )
    enable_sqlite_savepoints(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    await engine.dispose()


@pytest_asyncio.fixture
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ── Plans ────────────────────────────────────────────────────────────────────

def make_catalog() -> PlanCatalog:
    """Small catalog with round numbers: free 0/mo, pro 500/mo, enterprise 2000/mo."""
    return PlanCatalog([
        Plan(
            id="free", name="Free", tier=0,
            price_ids={BillingInterval.MONTH: "price_free_month"},
            credit_grants=CreditGrants(on_signup=50, monthly=0),
        ),
        Plan(
            id="pro", name="Pro", tier=1,
            price_ids={BillingInterval.MONTH: "price_pro_month", BillingInterval.YEAR: "price_pro_year"},
            credit_grants=CreditGrants(on_subscribe=100, monthly=500, yearly=6000),
        ),
        Plan(
            id="enterprise", name="Enterprise", tier=2,
            price_ids={BillingInterval.MONTH: "price_ent_month"},
            credit_grants=CreditGrants(monthly=2000),
        ),
    ])


@pytest.fixture
def catalog() -> PlanCatalog:
    return make_catalog()


# ── Stripe ───────────────────────────────────────────────────────────────────

class FakeStripeClient:
    """In-memory stand-in for StripeClient resource fetches."""

    def __init__(self):
        self.subscriptions: dict[str, dict] = {}
        self.sessions: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail = False

    async def retrieve_subscription(self, subscription_id: str) -> dict:
        self.calls.append(("subscription", subscription_id))
        if self.fail or subscription_id not in self.subscriptions:
            raise ProviderError(f"No such subscription: {subscription_id}")
        return self.subscriptions[subscription_id]

    async def retrieve_checkout_session(self, session_id: str) -> dict:
        self.calls.append(("checkout_session", session_id))
        if self.fail or session_id not in self.sessions:
            raise ProviderError(f"No such checkout session: {session_id}")
        return self.sessions[session_id]


def stripe_subscription(
    sub_id: str = "sub_1",
    price_id: str = "price_pro_month",
    status: str = "active",
    interval: str = "month",
    cancel_at_period_end: bool = False,
    **extra: Any,
) -> dict:
    now = int(time.time())
    return {
        "id": sub_id,
        "object": "subscription",
        "status": status,
        "customer": "cus_1",
        "current_period_start": now,
        "current_period_end": now + 30 * 86400,
        "trial_start": None,
        "trial_end": None,
        "cancel_at_period_end": cancel_at_period_end,
        "items": {"data": [{"price": {"id": price_id, "recurring": {"interval": interval}}}]},
        **extra,
    }


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Generate a valid Stripe webhook signature header."""
    ts = str(timestamp if timestamp is not None else int(time.time()))
    sig = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def stripe_event(event_type: str, obj: dict, event_id: Optional[str] = None, created: Optional[int] = None) -> bytes:
    return json.dumps({
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "created": created if created is not None else int(time.time()),
        "data": {"object": obj},
    }).encode()


@pytest.fixture
def stripe_fake() -> FakeStripeClient:
    return FakeStripeClient()


@pytest.fixture
def processor(catalog, stripe_fake) -> WebhookProcessor:
    return WebhookProcessor(TestSession, catalog, stripe_fake, webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def deliver(processor):
    """Sign and hand one event to the processor."""

    async def _deliver(event_type: str, obj: dict, event_id: Optional[str] = None, created: Optional[int] = None):
        payload = stripe_event(event_type, obj, event_id=event_id, created=created)
        return await processor.handle(payload, sign(payload))

    return _deliver
