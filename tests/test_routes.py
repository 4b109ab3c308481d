"""
Tests for API Routes.

Drives the FastAPI app over ASGITransport with the database, processor,
URL issuer and rate limiter overridden.
"""

from collections.abc import AsyncGenerator
from datetime import timedelta

import jwt
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from conftest import (
    KEY_SECRET,
    PAID_RESOURCE,
    UNLIMITED_PLAN,
    WEBHOOK_SECRET,
    FakeProcessor,
    FakeUrlIssuer,
    sign_direct,
    sign_webhook,
    webhook_body,
)
from paygate.api.dependencies import (
    get_payment_processor,
    get_rate_limiter,
    get_url_issuer,
    get_verifier,
)
from paygate.config import settings
from paygate.db.models import utc_now
from paygate.db.session import get_db
from paygate.exceptions import UpstreamError
from paygate.main import app
from paygate.models.domain import ProcessorPayment
from paygate.services.ledger import PurchaseLedger
from paygate.services.rate_limiter import InMemorySlidingWindowStore, RateLimiter
from paygate.services.subscriptions import SubscriptionRegistry
from paygate.services.verifier import PaymentVerifier

REVEAL_LIMIT = 3


def _token(subject: str = "user-1", **claims: object) -> str:
    return jwt.encode({"sub": subject, **claims}, settings.jwt_secret, algorithm="HS256")


def _auth(subject: str = "user-1") -> dict[str, str]:
    return {"Authorization": f"Bearer {_token(subject)}"}


@pytest.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    seeded: None,
    processor: FakeProcessor,
    url_issuer: FakeUrlIssuer,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with outbound dependencies faked."""

    async def override_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    limiter = RateLimiter(InMemorySlidingWindowStore(), max_requests=REVEAL_LIMIT, window_ms=60_000)

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_payment_processor] = lambda: processor
    app.dependency_overrides[get_url_issuer] = lambda: url_issuer
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    app.dependency_overrides[get_verifier] = lambda: PaymentVerifier(KEY_SECRET, WEBHOOK_SECRET)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http

    app.dependency_overrides.clear()


async def _buy(client: AsyncClient, subject: str = "user-1") -> dict:
    created = await client.post(
        "/access/create-order", json={"resourceId": PAID_RESOURCE.resource_id}, headers=_auth(subject)
    )
    assert created.status_code == 200
    body = created.json()
    order_id = body["order"]["id"]
    verified = await client.post(
        "/access/verify",
        json={
            "orderId": order_id,
            "paymentId": "pay_1",
            "signature": sign_direct(order_id, "pay_1"),
            "purchaseId": body["purchase"]["id"],
        },
        headers=_auth(subject),
    )
    assert verified.status_code == 200
    return verified.json()


# ============================================================================
# Authentication
# ============================================================================


class TestAuthentication:
    """Bearer JWT handling on access routes."""

    async def test_missing_token(self, client: AsyncClient):
        response = await client.get(f"/access/status/{PAID_RESOURCE.resource_id}")
        assert response.status_code == 401

    async def test_bad_token(self, client: AsyncClient):
        response = await client.get(
            f"/access/status/{PAID_RESOURCE.resource_id}",
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert response.status_code == 401

    async def test_wrong_secret(self, client: AsyncClient):
        token = jwt.encode({"sub": "user-1"}, "another-secret-another-secret-123", algorithm="HS256")
        response = await client.get(
            f"/access/status/{PAID_RESOURCE.resource_id}",
            headers={"Authorization": f"Bearer {token}"},
        )
        assert response.status_code == 401


# ============================================================================
# Orders and confirmation
# ============================================================================


class TestOrderRoutes:
    """POST /access/create-order and /access/verify."""

    async def test_create_order(self, client: AsyncClient):
        response = await client.post(
            "/access/create-order",
            json={"resourceId": PAID_RESOURCE.resource_id},
            headers=_auth(),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["order"]["id"] == "order_1"
        assert body["order"]["amount"] == PAID_RESOURCE.price_minor
        assert body["order"]["keyId"] == FakeProcessor.key_id
        assert body["purchase"]["status"] == "pending"
        assert body["purchase"]["accessGranted"] is False

    async def test_create_order_unknown_resource(self, client: AsyncClient):
        response = await client.post(
            "/access/create-order", json={"resourceId": "res-missing"}, headers=_auth()
        )
        assert response.status_code == 404

    async def test_create_order_retired_resource(self, client: AsyncClient):
        response = await client.post(
            "/access/create-order", json={"resourceId": "res-retired"}, headers=_auth()
        )
        assert response.status_code == 400

    async def test_create_order_missing_field(self, client: AsyncClient):
        response = await client.post("/access/create-order", json={}, headers=_auth())
        assert response.status_code == 422

    async def test_processor_outage_is_503(self, client: AsyncClient, processor: FakeProcessor):
        processor.fail_with = UpstreamError("timed out", retryable=True)

        response = await client.post(
            "/access/create-order",
            json={"resourceId": PAID_RESOURCE.resource_id},
            headers=_auth(),
        )

        assert response.status_code == 503

    async def test_processor_rejection_is_502(self, client: AsyncClient, processor: FakeProcessor):
        processor.fail_with = UpstreamError("bad request", retryable=False)

        response = await client.post(
            "/access/create-order",
            json={"resourceId": PAID_RESOURCE.resource_id},
            headers=_auth(),
        )

        assert response.status_code == 502

    async def test_verify_completes_purchase(self, client: AsyncClient):
        body = await _buy(client)

        purchase = body["purchase"]
        assert purchase["status"] == "completed"
        assert purchase["accessGranted"] is True
        assert body["payment"]["method"] == "upi"

    async def test_verify_bad_signature_is_409(self, client: AsyncClient):
        created = (
            await client.post(
                "/access/create-order",
                json={"resourceId": PAID_RESOURCE.resource_id},
                headers=_auth(),
            )
        ).json()

        response = await client.post(
            "/access/verify",
            json={
                "orderId": created["order"]["id"],
                "paymentId": "pay_1",
                "signature": "forged",
                "purchaseId": created["purchase"]["id"],
            },
            headers=_auth(),
        )

        assert response.status_code == 409


# ============================================================================
# Webhook
# ============================================================================


class TestWebhookRoute:
    """POST /access/webhook."""

    async def test_signed_capture_processed(self, client: AsyncClient):
        created = (
            await client.post(
                "/access/create-order",
                json={"resourceId": PAID_RESOURCE.resource_id},
                headers=_auth(),
            )
        ).json()
        body = webhook_body(
            "payment.captured",
            payment={"id": "pay_1", "order_id": created["order"]["id"], "status": "captured"},
        )

        response = await client.post(
            "/access/webhook",
            content=body,
            headers={
                settings.webhook_signature_header: sign_webhook(body),
                settings.webhook_event_id_header: "evt_1",
                "Content-Type": "application/json",
            },
        )

        assert response.status_code == 200
        assert response.json() == {"status": "processed", "event": "payment.captured"}

    async def test_unsigned_rejected(self, client: AsyncClient):
        body = webhook_body("payment.captured", payment={"id": "pay_1", "order_id": "order_1"})

        response = await client.post("/access/webhook", content=body)

        assert response.status_code == 401

    async def test_unknown_event_acknowledged(self, client: AsyncClient):
        body = webhook_body("order.paid", order={"id": "order_1"})

        response = await client.post(
            "/access/webhook",
            content=body,
            headers={settings.webhook_signature_header: sign_webhook(body)},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"

    async def test_live_subscription_clash_is_conflict(
        self, client: AsyncClient, session_factory: async_sessionmaker[AsyncSession]
    ):
        """The processor gets a non-2xx and redelivers later."""
        now = utc_now()
        async with session_factory() as session:
            await SubscriptionRegistry(session).activate(
                "user-1", UNLIMITED_PLAN, now, now + timedelta(days=30), "sub_old"
            )
        body = webhook_body(
            "subscription.activated",
            subscription={
                "id": "sub_new",
                "current_end": int((now + timedelta(days=30)).timestamp()),
                "notes": {"principal_id": "user-1", "plan_id": UNLIMITED_PLAN},
            },
        )

        response = await client.post(
            "/access/webhook",
            content=body,
            headers={settings.webhook_signature_header: sign_webhook(body)},
        )

        assert response.status_code == 409


# ============================================================================
# Access
# ============================================================================


class TestAccessRoutes:
    """GET /access/status, /access/reveal, /access/purchases, /access/summary."""

    async def test_status_without_purchase(self, client: AsyncClient):
        response = await client.get(
            f"/access/status/{PAID_RESOURCE.resource_id}", headers=_auth()
        )

        assert response.status_code == 200
        assert response.json() == {
            "hasAccess": False,
            "isExpired": False,
            "expiryDate": None,
            "accessType": "none",
            "purchaseId": None,
        }

    async def test_status_after_purchase(self, client: AsyncClient):
        bought = await _buy(client)

        response = await client.get(
            f"/access/status/{PAID_RESOURCE.resource_id}", headers=_auth()
        )

        body = response.json()
        assert body["hasAccess"] is True
        assert body["accessType"] == "one_time"
        assert body["purchaseId"] == bought["purchase"]["id"]

    async def test_status_of_lapsed_grant_expires_it(
        self, client: AsyncClient, session_factory: async_sessionmaker[AsyncSession]
    ):
        """A grant whose window closed reports expired and is flagged by the same call."""
        past = utc_now() - timedelta(minutes=10)
        async with session_factory() as session:
            ledger = PurchaseLedger(session, clock=lambda: past)
            pending = await ledger.create_pending_purchase(
                "user-1", PAID_RESOURCE, PAID_RESOURCE.price_minor, ProcessorPayment("order_old")
            )
            await ledger.mark_completed(pending.purchase_id, "pay_old")

        response = await client.get(
            f"/access/status/{PAID_RESOURCE.resource_id}", headers=_auth()
        )

        assert response.json()["hasAccess"] is False
        assert response.json()["isExpired"] is True
        async with session_factory() as session:
            stored = await PurchaseLedger(session).get_purchase(pending.purchase_id)
        assert stored.access_expired is True

    async def test_status_unknown_resource(self, client: AsyncClient):
        response = await client.get("/access/status/res-missing", headers=_auth())
        assert response.status_code == 404

    async def test_reveal(self, client: AsyncClient, url_issuer: FakeUrlIssuer):
        await _buy(client)

        response = await client.get(
            f"/access/reveal/{PAID_RESOURCE.resource_id}", headers=_auth()
        )

        assert response.status_code == 200
        body = response.json()
        assert body["accessType"] == "one_time"
        assert 1 <= body["urlTtlSeconds"] <= 300
        assert body["url"].startswith("https://storage.test/")

    async def test_reveal_without_access_is_403(self, client: AsyncClient):
        response = await client.get(
            f"/access/reveal/{PAID_RESOURCE.resource_id}", headers=_auth()
        )
        assert response.status_code == 403

    async def test_reveal_rate_limited(self, client: AsyncClient):
        """The request after the limit gets 429 with a retry hint."""
        await _buy(client)
        for _ in range(REVEAL_LIMIT):
            ok = await client.get(f"/access/reveal/{PAID_RESOURCE.resource_id}", headers=_auth())
            assert ok.status_code == 200

        response = await client.get(
            f"/access/reveal/{PAID_RESOURCE.resource_id}", headers=_auth()
        )

        assert response.status_code == 429
        retry_after = response.json()["retryAfter"]
        assert 1 <= retry_after <= 60
        assert response.headers["Retry-After"] == str(retry_after)

    async def test_purchase_history(self, client: AsyncClient):
        await _buy(client)

        response = await client.get("/access/purchases", headers=_auth())
        filtered = await client.get("/access/purchases?status=failed", headers=_auth())

        assert response.status_code == 200
        assert len(response.json()["purchases"]) == 1
        assert filtered.json()["purchases"] == []

    async def test_purchase_history_limit_validated(self, client: AsyncClient):
        response = await client.get("/access/purchases?limit=0", headers=_auth())
        assert response.status_code == 422

    async def test_summary(self, client: AsyncClient):
        await _buy(client)

        response = await client.get("/access/summary", headers=_auth())

        body = response.json()
        assert body["hasActiveSubscription"] is False
        assert body["subscription"] is None
        assert [p["resourceId"] for p in body["activePurchases"]] == [PAID_RESOURCE.resource_id]


# ============================================================================
# Operational endpoints
# ============================================================================


class TestOperationalRoutes:
    """Health, root and metrics."""

    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["database"] == "connected"

    async def test_root(self, client: AsyncClient):
        response = await client.get("/")
        assert response.json()["status"] == "running"

    async def test_metrics(self, client: AsyncClient):
        await client.get("/health")

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "paygate_http_requests_total" in response.text

    async def test_request_id_echoed(self, client: AsyncClient):
        response = await client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
