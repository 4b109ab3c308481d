"""
Tests for ExpirySweeper.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from conftest import PAID_RESOURCE, UNLIMITED_PLAN, MutableClock
from paygate.models.api import PurchaseStatus
from paygate.models.domain import ProcessorPayment, SweepResult
from paygate.services.ledger import PurchaseLedger
from paygate.services.resolver import AccessResolver
from paygate.services.subscriptions import SubscriptionRegistry
from paygate.services.sweeper import ExpirySweeper, main


async def _completed(session: AsyncSession, clock: MutableClock, principal_id: str, order_id: str):
    ledger = PurchaseLedger(session, clock=clock)
    pending = await ledger.create_pending_purchase(
        principal_id, PAID_RESOURCE, PAID_RESOURCE.price_minor, ProcessorPayment(order_id)
    )
    return await ledger.mark_completed(pending.purchase_id, f"pay_{order_id}")


class TestRunOnce:
    """Tests for a single sweeper pass."""

    async def test_nothing_to_do(
        self, session_factory: async_sessionmaker[AsyncSession], seeded: None, clock: MutableClock
    ):
        sweeper = ExpirySweeper(session_factory, clock=clock)

        assert await sweeper.run_once() == SweepResult(expired_grants=0, expired_subscriptions=0)

    async def test_expires_stale_grants_only(
        self, session_factory: async_sessionmaker[AsyncSession], seeded: None, clock: MutableClock
    ):
        async with session_factory() as session:
            old = await _completed(session, clock, "user-1", "order_1")
            clock.advance(seconds=200)
            fresh = await _completed(session, clock, "user-2", "order_2")
        clock.advance(seconds=150)

        result = await ExpirySweeper(session_factory, clock=clock).run_once()

        assert result.expired_grants == 1
        async with session_factory() as session:
            ledger = PurchaseLedger(session, clock=clock)
            assert (await ledger.get_purchase(old.purchase_id)).status == PurchaseStatus.EXPIRED
            assert (await ledger.get_purchase(fresh.purchase_id)).status == PurchaseStatus.COMPLETED

    async def test_sweep_and_read_converge(
        self, session_factory: async_sessionmaker[AsyncSession], seeded: None, clock: MutableClock
    ):
        """A grant expired on read is not expired again by the sweeper."""
        async with session_factory() as session:
            await _completed(session, clock, "user-1", "order_1")
            clock.advance(seconds=301)
            ledger = PurchaseLedger(session, clock=clock)
            resolver = AccessResolver(ledger, SubscriptionRegistry(session, clock=clock), clock=clock)
            await resolver.resolve("user-1", PAID_RESOURCE)

        result = await ExpirySweeper(session_factory, clock=clock).run_once()

        assert result.expired_grants == 0

    async def test_batch_size_bounds_pass(
        self, session_factory: async_sessionmaker[AsyncSession], seeded: None, clock: MutableClock
    ):
        async with session_factory() as session:
            for n in range(3):
                await _completed(session, clock, f"user-{n}", f"order_{n}")
        clock.advance(seconds=301)
        sweeper = ExpirySweeper(session_factory, batch_size=2, clock=clock)

        assert (await sweeper.run_once()).expired_grants == 2
        assert (await sweeper.run_once()).expired_grants == 1

    async def test_lapsed_subscription_and_its_grants(
        self, session_factory: async_sessionmaker[AsyncSession], seeded: None, clock: MutableClock
    ):
        async with session_factory() as session:
            registry = SubscriptionRegistry(session, clock=clock)
            ledger = PurchaseLedger(session, clock=clock)
            await registry.activate(
                "user-1", UNLIMITED_PLAN, clock.now, clock.now + timedelta(hours=1)
            )
            decision = await AccessResolver(ledger, registry, clock=clock).resolve(
                "user-1", PAID_RESOURCE
            )
        clock.advance(hours=1)

        result = await ExpirySweeper(session_factory, clock=clock).run_once()

        assert result.expired_subscriptions == 1
        async with session_factory() as session:
            registry = SubscriptionRegistry(session, clock=clock)
            ledger = PurchaseLedger(session, clock=clock)
            assert await registry.get_active_subscription("user-1") is None
            grant = await ledger.get_purchase(decision.purchase.purchase_id)
            assert grant.access_expired is True

    def test_rejects_non_positive_settings(
        self, session_factory: async_sessionmaker[AsyncSession]
    ):
        with pytest.raises(ValueError):
            ExpirySweeper(session_factory, interval_seconds=0)
        with pytest.raises(ValueError):
            ExpirySweeper(session_factory, batch_size=0)


class TestRunForever:
    """Tests for the sweeper loop."""

    async def test_stops_when_event_set(
        self, session_factory: async_sessionmaker[AsyncSession], seeded: None, clock: MutableClock
    ):
        sweeper = ExpirySweeper(session_factory, interval_seconds=0.01, clock=clock)
        stop = asyncio.Event()

        task = asyncio.create_task(sweeper.run_forever(stop))
        await asyncio.sleep(0.05)
        stop.set()

        await asyncio.wait_for(task, timeout=1)

    async def test_failed_pass_does_not_stop_loop(
        self, session_factory: async_sessionmaker[AsyncSession], clock: MutableClock
    ):
        sweeper = ExpirySweeper(session_factory, interval_seconds=0.01, clock=clock)
        stop = asyncio.Event()
        calls = 0

        async def failing_pass() -> SweepResult:
            nonlocal calls
            calls += 1
            if calls >= 2:
                stop.set()
            raise RuntimeError("database unavailable")

        with patch.object(sweeper, "run_once", side_effect=failing_pass):
            await asyncio.wait_for(sweeper.run_forever(stop), timeout=1)

        assert calls == 2


class TestMain:
    """Tests for the console entry point."""

    def test_once_flag(self):
        with patch("paygate.services.sweeper._run", new_callable=AsyncMock) as run:
            main(["--once"])

        run.assert_awaited_once_with(True)
