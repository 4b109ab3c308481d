"""
Hypothesis Property-Based Tests.

Invariants of the rate limiter, signature checks and API models that hold
for any input, checked without a database.
"""

import asyncio
from datetime import UTC, datetime, timedelta

from hypothesis import given, settings
from hypothesis import strategies as st

from paygate.exceptions import RateLimitExceededError
from paygate.models.api import CreateOrderRequest, SubscriptionSummary, VerifyPaymentRequest
from paygate.services.rate_limiter import InMemorySlidingWindowStore, RateLimiter
from paygate.services.verifier import PaymentVerifier, compute_signature

# ============================================================================
# Hypothesis Strategies
# ============================================================================

ids = st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789_", min_size=1, max_size=40)
secrets = st.text(min_size=1, max_size=64)
gaps_ms = st.lists(st.integers(min_value=0, max_value=30_000), min_size=1, max_size=60)


# ============================================================================
# Rate limiter
# ============================================================================


class TestRateLimiterProperties:
    """Properties of the sliding window."""

    @given(
        gaps=gaps_ms,
        max_requests=st.integers(min_value=1, max_value=10),
        window_ms=st.integers(min_value=1_000, max_value=60_000),
    )
    @settings(max_examples=100)
    def test_never_more_than_limit_in_any_window(
        self, gaps: list[int], max_requests: int, window_ms: int
    ):
        """Accepted requests inside any half-open window never exceed the limit."""
        now = [0]
        limiter = RateLimiter(
            InMemorySlidingWindowStore(clock_ms=lambda: now[0]),
            max_requests=max_requests,
            window_ms=window_ms,
        )

        async def drive() -> tuple[list[int], list[int]]:
            accepted: list[int] = []
            retry_hints: list[int] = []
            for gap in gaps:
                now[0] += gap
                try:
                    await limiter.check("user-1")
                    accepted.append(now[0])
                except RateLimitExceededError as exc:
                    retry_hints.append(exc.retry_after_seconds)
            return accepted, retry_hints

        accepted, retry_hints = asyncio.run(drive())

        for start in accepted:
            in_window = [t for t in accepted if start <= t < start + window_ms]
            assert len(in_window) <= max_requests
        for hint in retry_hints:
            assert 1 <= hint <= -(-window_ms // 1000)


# ============================================================================
# Signatures
# ============================================================================


class TestSignatureProperties:
    """Properties of the direct confirmation signature."""

    @given(order_id=ids, payment_id=ids, secret=secrets)
    def test_own_signature_verifies(self, order_id: str, payment_id: str, secret: str):
        verifier = PaymentVerifier(key_secret=secret, webhook_secret=secret)
        signature = compute_signature(secret, f"{order_id}|{payment_id}".encode())

        assert verifier.verify_direct(order_id, payment_id, signature) is True

    @given(order_id=ids, payment_id=ids, other=ids, secret=secrets)
    def test_signature_does_not_transfer(
        self, order_id: str, payment_id: str, other: str, secret: str
    ):
        verifier = PaymentVerifier(key_secret=secret, webhook_secret=secret)
        signature = compute_signature(secret, f"{order_id}|{payment_id}".encode())

        if other != payment_id:
            assert verifier.verify_direct(order_id, other, signature) is False

    @given(body=st.binary(max_size=512), flip=st.integers(min_value=0, max_value=511))
    def test_tampered_body_rejected(self, body: bytes, flip: int):
        verifier = PaymentVerifier(key_secret="k", webhook_secret="whsec")
        signature = compute_signature("whsec", body)

        if body:
            index = flip % len(body)
            tampered = body[:index] + bytes([body[index] ^ 0x01]) + body[index + 1 :]
            assert verifier.verify_webhook(tampered, signature) is False
        assert verifier.verify_webhook(body, signature) is True


# ============================================================================
# API models
# ============================================================================


class TestApiModelProperties:
    """Properties of request parsing."""

    @given(resource_id=st.text(min_size=1, max_size=255))
    def test_camel_and_snake_accepted(self, resource_id: str):
        assert CreateOrderRequest.model_validate({"resourceId": resource_id}).resource_id == resource_id
        assert CreateOrderRequest.model_validate({"resource_id": resource_id}).resource_id == resource_id

    @given(order_id=ids, payment_id=ids, signature=ids)
    def test_verify_request_round_trips_by_alias(
        self, order_id: str, payment_id: str, signature: str
    ):
        request = VerifyPaymentRequest(
            order_id=order_id,
            payment_id=payment_id,
            signature=signature,
            purchase_id="00000000-0000-0000-0000-000000000001",
        )
        dumped = request.model_dump(by_alias=True, mode="json")

        assert set(dumped) == {"orderId", "paymentId", "signature", "purchaseId"}
        assert VerifyPaymentRequest.model_validate(dumped) == request

    @given(seconds=st.integers(min_value=0, max_value=10_000))
    def test_utc_datetimes_serialise_with_offset(self, seconds: int):
        start = datetime(2026, 1, 1, tzinfo=UTC)
        summary = SubscriptionSummary(
            id="00000000-0000-0000-0000-000000000002",
            plan_id="plan-unlimited",
            start_date=start,
            end_date=start + timedelta(seconds=seconds + 1),
        )

        dumped = summary.model_dump(by_alias=True, mode="json")
        assert dumped["endDate"].endswith("Z")
