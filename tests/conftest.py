"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fixtures for testing:
- A file-backed SQLite database (aiosqlite) with the full schema
- A controllable clock shared by every service under test
- Seeded catalog resources and subscription plans
- Ledger, registry, verifier and access service wired together
- Fake payment processor and signed URL issuer
- Signature helpers for both confirmation channels
"""

import json
import os
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from itertools import count
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

# Set required environment variables BEFORE importing app modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-jwt-signing-min-32-chars")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "rzp_test_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("SWEEPER_ENABLED", "false")

from paygate.db.models import Base, Resource, SubscriptionPlan
from paygate.exceptions import UpstreamError
from paygate.models.domain import ResourceInfo
from paygate.services.access import AccessService
from paygate.services.ledger import PurchaseLedger
from paygate.services.payment_processor import OrderRequest, OrderResult, PaymentDetails
from paygate.services.subscriptions import SubscriptionRegistry
from paygate.services.verifier import PaymentVerifier, compute_signature

KEY_SECRET = "rzp_test_secret"
WEBHOOK_SECRET = "whsec_test_secret"

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)

PAID_RESOURCE = ResourceInfo(
    resource_id="res-paid",
    storage_key="images/res-paid.jpg",
    title="Paid image",
    price_minor=1000,
    currency="INR",
    is_active=True,
)
FREE_RESOURCE = ResourceInfo(
    resource_id="res-free",
    storage_key="images/res-free.jpg",
    title="Free image",
    price_minor=0,
    currency="INR",
    is_active=True,
)
RETIRED_RESOURCE = ResourceInfo(
    resource_id="res-retired",
    storage_key="images/res-retired.jpg",
    title="Retired image",
    price_minor=1000,
    currency="INR",
    is_active=False,
)

UNLIMITED_PLAN = "plan-unlimited"
LIMITED_PLAN = "plan-limited"


# ============================================================================
# Clock
# ============================================================================


class MutableClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> MutableClock:
    """Clock fixed at T0 until advanced."""
    return MutableClock()


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def db_engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine so separate sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'paygate.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory matching the application's (expire_on_commit=False)."""
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def seeded(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Catalog resources and subscription plans."""
    async with session_factory() as session:
        for info in (PAID_RESOURCE, FREE_RESOURCE, RETIRED_RESOURCE):
            session.add(
                Resource(
                    id=info.resource_id,
                    storage_key=info.storage_key,
                    title=info.title,
                    price_minor=info.price_minor,
                    currency=info.currency,
                    is_active=info.is_active,
                )
            )
        session.add(
            SubscriptionPlan(id=UNLIMITED_PLAN, name="Unlimited", unlimited_access=True)
        )
        session.add(SubscriptionPlan(id=LIMITED_PLAN, name="Limited", unlimited_access=False))
        await session.commit()


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession], seeded: None
) -> AsyncGenerator[AsyncSession, None]:
    """Session over the seeded database."""
    async with session_factory() as session:
        yield session


# ============================================================================
# Service Fixtures
# ============================================================================


@pytest.fixture
def ledger(db_session: AsyncSession, clock: MutableClock) -> PurchaseLedger:
    return PurchaseLedger(db_session, clock=clock)


@pytest.fixture
def registry(db_session: AsyncSession, clock: MutableClock) -> SubscriptionRegistry:
    return SubscriptionRegistry(db_session, clock=clock)


@pytest.fixture
def verifier() -> PaymentVerifier:
    return PaymentVerifier(key_secret=KEY_SECRET, webhook_secret=WEBHOOK_SECRET)


class FakeProcessor:
    """In-memory PaymentProcessor that records every call."""

    key_id = "rzp_test_key"

    def __init__(self) -> None:
        self.orders: list[OrderRequest] = []
        self.fetched: list[str] = []
        self.fail_with: UpstreamError | None = None
        self._ids = count(1)

    async def create_order(self, request: OrderRequest) -> OrderResult:
        if self.fail_with is not None:
            raise self.fail_with
        self.orders.append(request)
        return OrderResult(
            order_id=f"order_{next(self._ids)}",
            amount_minor=request.amount_minor,
            currency=request.currency,
            receipt=request.receipt,
            status="created",
        )

    async def fetch_payment(self, payment_id: str) -> PaymentDetails:
        if self.fail_with is not None:
            raise self.fail_with
        self.fetched.append(payment_id)
        return PaymentDetails(
            payment_id=payment_id,
            order_id=None,
            status="captured",
            amount_minor=PAID_RESOURCE.price_minor,
            currency="INR",
            method="upi",
        )

    async def close(self) -> None:
        pass


class FakeUrlIssuer:
    """SignedUrlIssuer returning predictable URLs."""

    def __init__(self) -> None:
        self.issued: list[tuple[str, int]] = []

    def issue_signed_url(self, resource_key: str, ttl_seconds: int) -> str:
        self.issued.append((resource_key, ttl_seconds))
        return f"https://storage.test/{resource_key}?ttl={ttl_seconds}"


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture
def url_issuer() -> FakeUrlIssuer:
    return FakeUrlIssuer()


@pytest.fixture
def access_service(
    db_session: AsyncSession,
    verifier: PaymentVerifier,
    processor: FakeProcessor,
    url_issuer: FakeUrlIssuer,
    clock: MutableClock,
) -> AccessService:
    """Access service with fakes for every outbound dependency."""
    return AccessService(
        db_session,
        verifier=verifier,
        processor=processor,
        url_issuer=url_issuer,
        clock=clock,
    )


# ============================================================================
# Signature Helpers
# ============================================================================


def sign_direct(order_id: str, payment_id: str, secret: str = KEY_SECRET) -> str:
    """Signature a checkout client would relay for (order_id, payment_id)."""
    return compute_signature(secret, f"{order_id}|{payment_id}".encode())


def webhook_body(event: str, **payload: dict[str, Any]) -> bytes:
    """Serialized webhook body with entities wrapped the way the processor sends them."""
    wrapped = {name: {"entity": entity} for name, entity in payload.items()}
    return json.dumps({"event": event, "payload": wrapped}).encode()


def sign_webhook(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return compute_signature(secret, body)
