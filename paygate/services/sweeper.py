"""
Expiry Sweeper - Periodic pass that expires stale grants and lapsed subscriptions.

Each pass works from a fresh session and keeps nothing in memory between
passes, so a crashed or skipped pass is simply picked up by the next one.

Usage:
    paygate-sweep           # run until interrupted
    paygate-sweep --once    # one pass, then exit
"""

import argparse
import asyncio
import sys
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.db.models import utc_now
from paygate.models.domain import SweepResult
from paygate.observability.logging import get_logger
from paygate.observability.metrics import metrics
from paygate.services.ledger import DEFAULT_GRANT_WINDOW_SECONDS, PurchaseLedger
from paygate.services.subscriptions import SubscriptionRegistry

logger = get_logger(__name__)


class ExpirySweeper:
    """Runs expiry passes on an interval."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        interval_seconds: float = 60.0,
        batch_size: int = 500,
        clock: Callable[[], datetime] = utc_now,
        grant_window_seconds: int = DEFAULT_GRANT_WINDOW_SECONDS,
    ) -> None:
        if interval_seconds <= 0 or batch_size <= 0:
            raise ValueError("interval_seconds and batch_size must be positive")
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.clock = clock
        self.grant_window_seconds = grant_window_seconds

    async def run_once(self) -> SweepResult:
        """One pass over at most batch_size stale grants and lapsed subscriptions."""
        async with self.session_factory() as session:
            ledger = PurchaseLedger(
                session, clock=self.clock, grant_window_seconds=self.grant_window_seconds
            )
            registry = SubscriptionRegistry(session, clock=self.clock)

            expired_grants = 0
            failed_grants = 0
            for grant in await ledger.find_stale_grants(self.batch_size):
                try:
                    if await ledger.expire(grant.purchase_id):
                        expired_grants += 1
                except SQLAlchemyError as e:
                    await session.rollback()
                    failed_grants += 1
                    logger.error(
                        "sweep_grant_failed", purchase_id=str(grant.purchase_id), error=str(e)
                    )

            lapsed = await registry.expire_lapsed(self.batch_size)
            for subscription in lapsed:
                await ledger.expire_subscription_grants(subscription.principal_id)

        result = SweepResult(
            expired_grants=expired_grants,
            expired_subscriptions=len(lapsed),
            failed_grants=failed_grants,
        )
        metrics.record_sweep(
            success=True,
            expired_grants=result.expired_grants,
            expired_subscriptions=result.expired_subscriptions,
        )
        if result.expired_grants or result.expired_subscriptions or result.failed_grants:
            logger.info(
                "sweep_completed",
                expired_grants=result.expired_grants,
                expired_subscriptions=result.expired_subscriptions,
                failed_grants=result.failed_grants,
            )
        return result

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Run passes until stop_event is set. A failed pass is retried next interval."""
        logger.info("sweeper_started", interval_seconds=self.interval_seconds)
        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                metrics.record_sweep(success=False)
                logger.error("sweep_failed", error=str(e), exc_info=True)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except TimeoutError:
                pass
        logger.info("sweeper_stopped")


async def _run(once: bool) -> None:
    from paygate.config import settings
    from paygate.db.session import close_engines, get_session_factory

    sweeper = ExpirySweeper(
        get_session_factory(),
        interval_seconds=settings.sweeper_interval_seconds,
        batch_size=settings.sweeper_batch_size,
        grant_window_seconds=settings.grant_window_seconds,
    )
    try:
        if once:
            await sweeper.run_once()
        else:
            await sweeper.run_forever(asyncio.Event())
    finally:
        await close_engines()


def main(argv: list[str] | None = None) -> None:
    """Console entry point."""
    from paygate.observability.logging import setup_logging

    parser = argparse.ArgumentParser(description="Expire stale access grants and subscriptions")
    parser.add_argument("--once", action="store_true", help="run a single pass and exit")
    args = parser.parse_args(argv)

    setup_logging()
    try:
        asyncio.run(_run(args.once))
    except KeyboardInterrupt:
        logger.info("sweeper_interrupted")
        sys.exit(0)


if __name__ == "__main__":
    main()
