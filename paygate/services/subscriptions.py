"""
Subscription Registry - Which principals hold an active subscription.

Status changes are guarded UPDATEs like the purchase ledger; a principal has at
most one active subscription (enforced by a partial unique index).
"""

from collections.abc import Callable
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.db.models import Subscription, SubscriptionPlan, utc_now
from paygate.exceptions import ConflictError, NotFoundError, ValidationError
from paygate.models.api import SubscriptionStatus
from paygate.models.domain import SubscriptionData
from paygate.observability.logging import get_logger

logger = get_logger(__name__)


class SubscriptionRegistry:
    """Reads and transitions subscriptions."""

    def __init__(self, session: AsyncSession, clock: Callable[[], datetime] = utc_now) -> None:
        self.session = session
        self.clock = clock

    async def get_active_subscription(self, principal_id: str) -> SubscriptionData | None:
        """Active subscription whose window has not ended, with its plan's entitlement."""
        now = self.clock()
        stmt = (
            select(Subscription, SubscriptionPlan.unlimited_access)
            .join(SubscriptionPlan, SubscriptionPlan.id == Subscription.plan_id)
            .where(
                Subscription.principal_id == principal_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.end_date > now,
            )
            .execution_options(populate_existing=True)
        )
        row = (await self.session.execute(stmt)).first()
        if row is None:
            return None
        subscription, unlimited_access = row
        return self._to_domain(subscription, unlimited_access)

    async def find_by_external_id(self, external_subscription_id: str) -> SubscriptionData | None:
        """Subscription created for a processor subscription id."""
        stmt = (
            select(Subscription, SubscriptionPlan.unlimited_access)
            .join(SubscriptionPlan, SubscriptionPlan.id == Subscription.plan_id)
            .where(Subscription.external_subscription_id == external_subscription_id)
            .order_by(Subscription.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        row = (await self.session.execute(stmt)).first()
        if row is None:
            return None
        subscription, unlimited_access = row
        return self._to_domain(subscription, unlimited_access)

    async def activate(
        self,
        principal_id: str,
        plan_id: str,
        start_date: datetime,
        end_date: datetime,
        external_subscription_id: str | None = None,
    ) -> SubscriptionData:
        """
        Record a newly active subscription.

        Re-activating the same processor subscription is a no-op that returns
        the stored record.

        Raises:
            ValidationError: end_date is not after start_date
            NotFoundError: Unknown or retired plan
            ConflictError: Principal already holds a different active subscription
        """
        if end_date <= start_date:
            raise ValidationError("subscription end_date must be after start_date")

        if external_subscription_id:
            existing = await self.find_by_external_id(external_subscription_id)
            if existing is not None:
                logger.info(
                    "subscription_already_recorded",
                    subscription_id=str(existing.subscription_id),
                    external_subscription_id=external_subscription_id,
                )
                return existing

        plan = await self.session.get(SubscriptionPlan, plan_id)
        if plan is None or not plan.is_active:
            raise NotFoundError("SubscriptionPlan", plan_id)

        await self.expire_lapsed_for(principal_id)

        now = self.clock()
        subscription = Subscription(
            principal_id=principal_id,
            plan_id=plan_id,
            status=SubscriptionStatus.ACTIVE.value,
            start_date=start_date,
            end_date=end_date,
            external_subscription_id=external_subscription_id,
            created_at=now,
            updated_at=now,
        )
        self.session.add(subscription)
        try:
            await self.session.flush()
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            logger.warning("subscription_conflict", principal_id=principal_id, error=str(e))
            raise ConflictError(f"principal {principal_id} already has an active subscription") from e

        logger.info(
            "subscription_activated",
            subscription_id=str(subscription.id),
            principal_id=principal_id,
            plan_id=plan_id,
            end_date=end_date.isoformat(),
        )
        return self._to_domain(subscription, plan.unlimited_access)

    async def renew(self, subscription_id: UUID, new_end_date: datetime) -> bool:
        """
        Extend an active subscription's end date.

        Only moves the end date forward, so a late duplicate charge event is a no-op.
        """
        stmt = (
            update(Subscription)
            .where(
                Subscription.id == subscription_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.end_date < new_end_date,
            )
            .values(end_date=new_end_date, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        applied = result.rowcount == 1  # type: ignore[attr-defined]
        await self.session.commit()
        if applied:
            logger.info(
                "subscription_renewed",
                subscription_id=str(subscription_id),
                end_date=new_end_date.isoformat(),
            )
        return applied

    async def cancel(self, subscription_id: UUID) -> bool:
        """Cancel an active subscription. Returns whether this call made the transition."""
        now = self.clock()
        return await self._transition(
            subscription_id,
            SubscriptionStatus.CANCELLED,
            cancelled_at=now,
            updated_at=now,
        )

    async def expire(self, subscription_id: UUID) -> bool:
        """Expire an active subscription. Returns whether this call made the transition."""
        return await self._transition(
            subscription_id, SubscriptionStatus.EXPIRED, updated_at=self.clock()
        )

    async def expire_lapsed_for(self, principal_id: str) -> list[SubscriptionData]:
        """Expire the principal's active subscriptions whose end date has passed."""
        return await self._expire_where(
            Subscription.principal_id == principal_id, Subscription.end_date <= self.clock()
        )

    async def expire_lapsed(self, limit: int) -> list[SubscriptionData]:
        """Expire active subscriptions whose end date has passed; returns those expired."""
        return await self._expire_where(Subscription.end_date <= self.clock(), limit=limit)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _expire_where(self, *conditions: Any, limit: int | None = None) -> list[SubscriptionData]:
        stmt = (
            select(Subscription, SubscriptionPlan.unlimited_access)
            .join(SubscriptionPlan, SubscriptionPlan.id == Subscription.plan_id)
            .where(Subscription.status == SubscriptionStatus.ACTIVE.value, *conditions)
            .order_by(Subscription.end_date)
            .limit(limit)
        )
        lapsed = [self._to_domain(s, u) for s, u in (await self.session.execute(stmt)).all()]

        expired: list[SubscriptionData] = []
        for subscription in lapsed:
            if await self.expire(subscription.subscription_id):
                expired.append(subscription)
        return expired

    async def _transition(
        self, subscription_id: UUID, target: SubscriptionStatus, **values: object
    ) -> bool:
        stmt = (
            update(Subscription)
            .where(
                Subscription.id == subscription_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
            )
            .values(status=target.value, **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        applied = result.rowcount == 1  # type: ignore[attr-defined]
        await self.session.commit()
        if applied:
            logger.info(
                "subscription_transitioned", subscription_id=str(subscription_id), status=target.value
            )
        return applied

    @staticmethod
    def _to_domain(subscription: Subscription, unlimited_access: bool) -> SubscriptionData:
        """Convert ORM subscription to domain model."""
        return SubscriptionData(
            subscription_id=subscription.id,
            principal_id=subscription.principal_id,
            plan_id=subscription.plan_id,
            status=SubscriptionStatus(subscription.status),
            start_date=subscription.start_date,
            end_date=subscription.end_date,
            external_subscription_id=subscription.external_subscription_id,
            unlimited_access=unlimited_access,
        )
