"""
Purchase Ledger - Persistent record of access grants.

Every status change is a compare-and-swap UPDATE guarded on the current
status, so concurrent confirmations (client relay vs. webhook) and concurrent
expiries cannot both win. Rows are never deleted.
"""

from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import assert_never
from uuid import UUID

from sqlalchemy import Select, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.db.models import Purchase, utc_now
from paygate.exceptions import (
    ActiveGrantExistsError,
    ConflictError,
    NotFoundError,
    NotPurchasableError,
    PaymentIdConflictError,
    ValidationError,
)
from paygate.models.api import PaymentMethod, PurchaseStatus
from paygate.models.domain import (
    FreeGrant,
    GrantSource,
    ProcessorPayment,
    PurchaseData,
    ResourceInfo,
    SubscriptionGrant,
)
from paygate.observability.logging import get_logger
from paygate.observability.metrics import metrics

logger = get_logger(__name__)

Clock = Callable[[], datetime]

DEFAULT_GRANT_WINDOW_SECONDS = 300


class PurchaseLedger:
    """
    Ledger of purchases with guarded state transitions.

    Transitions:
    - pending -> completed  (mark_completed)
    - pending -> failed     (mark_failed)
    - completed -> expired  (expire)

    Completed grants that need no processor round trip are inserted directly
    through grant().
    """

    def __init__(
        self,
        session: AsyncSession,
        clock: Clock = utc_now,
        grant_window_seconds: int = DEFAULT_GRANT_WINDOW_SECONDS,
    ) -> None:
        if grant_window_seconds <= 0:
            raise ValueError(f"grant_window_seconds must be positive: {grant_window_seconds}")
        self.session = session
        self.clock = clock
        self.grant_window = timedelta(seconds=grant_window_seconds)

    # ========================================================================
    # Inserts
    # ========================================================================

    async def create_pending_purchase(
        self,
        principal_id: str,
        resource: ResourceInfo,
        amount_minor: int,
        payment: ProcessorPayment,
    ) -> PurchaseData:
        """
        Record a pending purchase against a processor order.

        Raises:
            NotPurchasableError: Resource is inactive
            ActiveGrantExistsError: Principal already holds an active grant
            ConflictError: Another pending purchase exists for this resource
        """
        if not resource.is_active:
            raise NotPurchasableError(resource.resource_id)
        if amount_minor <= 0:
            raise ValidationError(f"pending purchase amount must be positive: {amount_minor}")

        existing = await self.has_active_grant(principal_id, resource.resource_id)
        if existing is not None:
            raise ActiveGrantExistsError(existing.purchase_id)

        now = self.clock()
        purchase = Purchase(
            principal_id=principal_id,
            resource_id=resource.resource_id,
            amount_minor=amount_minor,
            currency=resource.currency,
            payment_method=payment.method.value,
            external_order_id=payment.order_id,
            status=PurchaseStatus.PENDING.value,
            access_granted=False,
            access_expired=False,
            created_at=now,
            expiry_at=now + self.grant_window,
            updated_at=now,
        )
        self.session.add(purchase)

        try:
            await self.session.flush()
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            logger.warning(
                "pending_purchase_conflict",
                principal_id=principal_id,
                resource_id=resource.resource_id,
                error=str(e),
            )
            raise ConflictError(
                f"a pending purchase already exists for resource {resource.resource_id}"
            ) from e

        logger.info(
            "purchase_created",
            purchase_id=str(purchase.id),
            principal_id=principal_id,
            resource_id=resource.resource_id,
            order_id=payment.order_id,
            amount_minor=amount_minor,
        )
        return self._to_domain(purchase)

    async def grant(
        self, principal_id: str, resource: ResourceInfo, grant: GrantSource
    ) -> PurchaseData:
        """
        Issue a completed grant that needs no processor confirmation.

        Raises:
            NotPurchasableError: Resource is inactive
            ValidationError: Processor payments must go through mark_completed
        """
        if not resource.is_active:
            raise NotPurchasableError(resource.resource_id)

        now = self.clock()
        match grant:
            case FreeGrant():
                if resource.price_minor != 0:
                    raise ValidationError(f"resource {resource.resource_id} is not free")
                expiry_at = now + self.grant_window
            case SubscriptionGrant(end_date=end_date):
                existing = await self.find_subscription_grant(
                    principal_id, resource.resource_id, end_date
                )
                if existing is not None:
                    return existing
                expiry_at = end_date
            case ProcessorPayment():
                raise ValidationError("processor payments are completed by confirmation only")
            case _:
                assert_never(grant)

        purchase = Purchase(
            principal_id=principal_id,
            resource_id=resource.resource_id,
            amount_minor=0,
            currency=resource.currency,
            payment_method=grant.method.value,
            status=PurchaseStatus.COMPLETED.value,
            access_granted=True,
            access_expired=False,
            created_at=now,
            expiry_at=expiry_at,
            completed_at=now,
            updated_at=now,
        )
        self.session.add(purchase)
        await self.session.flush()
        await self.session.commit()

        metrics.record_transition("grant", applied=True)
        logger.info(
            "grant_issued",
            purchase_id=str(purchase.id),
            principal_id=principal_id,
            resource_id=resource.resource_id,
            method=grant.method.value,
            expiry_at=expiry_at.isoformat(),
        )
        return self._to_domain(purchase)

    # ========================================================================
    # Transitions
    # ========================================================================

    async def mark_completed(
        self, purchase_id: UUID, external_payment_id: str, signature: str | None = None
    ) -> PurchaseData:
        """
        Complete a pending purchase and grant access.

        Exactly one caller wins the transition. A repeat with the recorded
        payment id returns the stored record unchanged.

        Raises:
            NotFoundError: Unknown purchase
            PaymentIdConflictError: Purchase already confirmed with another payment id
            ConflictError: Purchase is failed or otherwise no longer payable
        """
        if not external_payment_id:
            raise ValidationError("external_payment_id is required")

        now = self.clock()
        stmt = (
            update(Purchase)
            .where(Purchase.id == purchase_id, Purchase.status == PurchaseStatus.PENDING.value)
            .values(
                status=PurchaseStatus.COMPLETED.value,
                access_granted=True,
                external_payment_id=external_payment_id,
                external_signature=signature,
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.execute(stmt)
            applied = result.rowcount == 1  # type: ignore[attr-defined]
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            logger.error(
                "payment_id_reused",
                purchase_id=str(purchase_id),
                payment_id=external_payment_id,
            )
            raise ConflictError(
                f"payment {external_payment_id} is already recorded on another purchase"
            ) from e

        purchase = await self._load(purchase_id)
        if purchase is None:
            raise NotFoundError("Purchase", str(purchase_id))

        if applied:
            metrics.record_transition("complete", applied=True)
            metrics.record_completed_amount(purchase.amount_minor)
            logger.info(
                "purchase_completed",
                purchase_id=str(purchase_id),
                principal_id=purchase.principal_id,
                resource_id=purchase.resource_id,
                payment_id=external_payment_id,
                expiry_at=purchase.expiry_at.isoformat(),
            )
            return self._to_domain(purchase)

        metrics.record_transition("complete", applied=False)
        recorded = purchase.external_payment_id
        if recorded is None:
            logger.warning(
                "purchase_not_completable",
                purchase_id=str(purchase_id),
                status=purchase.status,
            )
            raise ConflictError(f"purchase {purchase_id} is {purchase.status}")

        if recorded != external_payment_id:
            logger.error(
                "payment_id_conflict",
                purchase_id=str(purchase_id),
                recorded_payment_id=recorded,
                offered_payment_id=external_payment_id,
            )
            raise PaymentIdConflictError(purchase_id, recorded, external_payment_id)

        logger.info(
            "purchase_already_completed",
            purchase_id=str(purchase_id),
            payment_id=external_payment_id,
            status=purchase.status,
        )
        return self._to_domain(purchase)

    async def mark_failed(self, purchase_id: UUID, reason: str) -> bool:
        """Fail a pending purchase. Returns whether this call made the transition."""
        now = self.clock()
        stmt = (
            update(Purchase)
            .where(Purchase.id == purchase_id, Purchase.status == PurchaseStatus.PENDING.value)
            .values(status=PurchaseStatus.FAILED.value, failure_reason=reason, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        applied = result.rowcount == 1  # type: ignore[attr-defined]
        await self.session.commit()

        metrics.record_transition("fail", applied=applied)
        if applied:
            logger.info("purchase_failed", purchase_id=str(purchase_id), reason=reason)
        return applied

    async def expire(self, purchase_id: UUID) -> bool:
        """
        Expire a completed grant.

        Idempotent; returns whether this call made the transition.
        """
        now = self.clock()
        stmt = (
            update(Purchase)
            .where(
                Purchase.id == purchase_id,
                Purchase.status == PurchaseStatus.COMPLETED.value,
                Purchase.access_expired.is_(False),
            )
            .values(
                status=PurchaseStatus.EXPIRED.value,
                access_expired=True,
                access_granted=False,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        applied = result.rowcount == 1  # type: ignore[attr-defined]
        await self.session.commit()

        metrics.record_transition("expire", applied=applied)
        if applied:
            logger.info("purchase_expired", purchase_id=str(purchase_id))
        return applied

    async def expire_subscription_grants(self, principal_id: str) -> int:
        """Expire every outstanding subscription-derived grant of a principal."""
        grants = await self._select(
            select(Purchase).where(
                Purchase.principal_id == principal_id,
                Purchase.payment_method == PaymentMethod.SUBSCRIPTION.value,
                Purchase.status == PurchaseStatus.COMPLETED.value,
                Purchase.access_expired.is_(False),
            )
        )
        expired = 0
        for grant in grants:
            if await self.expire(grant.purchase_id):
                expired += 1
        return expired

    # ========================================================================
    # Queries
    # ========================================================================

    async def has_active_grant(self, principal_id: str, resource_id: str) -> PurchaseData | None:
        """Most recent completed, granted, unexpired purchase with expiry in the future."""
        now = self.clock()
        rows = await self._select(
            self._granted(principal_id, resource_id)
            .where(Purchase.expiry_at > now)
            .order_by(Purchase.created_at.desc())
            .limit(1)
        )
        return rows[0] if rows else None

    async def find_latest_grant(
        self,
        principal_id: str,
        resource_id: str,
        methods: Sequence[PaymentMethod] = (PaymentMethod.PROCESSOR, PaymentMethod.FREE),
    ) -> PurchaseData | None:
        """Most recent granted, not yet flagged purchase, whatever its expiry."""
        rows = await self._select(
            self._granted(principal_id, resource_id)
            .where(Purchase.payment_method.in_([m.value for m in methods]))
            .order_by(Purchase.created_at.desc())
            .limit(1)
        )
        return rows[0] if rows else None

    async def find_subscription_grant(
        self, principal_id: str, resource_id: str, expiry_at: datetime
    ) -> PurchaseData | None:
        """Outstanding subscription grant for this resource ending at expiry_at."""
        rows = await self._select(
            self._granted(principal_id, resource_id)
            .where(
                Purchase.payment_method == PaymentMethod.SUBSCRIPTION.value,
                Purchase.expiry_at == expiry_at,
            )
            .limit(1)
        )
        return rows[0] if rows else None

    async def find_pending(self, principal_id: str, resource_id: str) -> PurchaseData | None:
        """The pending purchase for (principal, resource), if any."""
        rows = await self._select(
            select(Purchase).where(
                Purchase.principal_id == principal_id,
                Purchase.resource_id == resource_id,
                Purchase.status == PurchaseStatus.PENDING.value,
            )
        )
        return rows[0] if rows else None

    async def find_by_order_id(self, order_id: str) -> PurchaseData | None:
        """Purchase recorded against a processor order."""
        rows = await self._select(
            select(Purchase)
            .where(Purchase.external_order_id == order_id)
            .order_by(Purchase.created_at.desc())
            .limit(1)
        )
        return rows[0] if rows else None

    async def get_purchase(self, purchase_id: UUID) -> PurchaseData:
        """
        Get a purchase by id.

        Raises:
            NotFoundError: Unknown purchase
        """
        purchase = await self._load(purchase_id)
        if purchase is None:
            raise NotFoundError("Purchase", str(purchase_id))
        return self._to_domain(purchase)

    async def find_stale_grants(self, limit: int) -> list[PurchaseData]:
        """Granted purchases whose expiry has passed but are not yet flagged."""
        now = self.clock()
        return await self._select(
            select(Purchase)
            .where(
                Purchase.status == PurchaseStatus.COMPLETED.value,
                Purchase.access_granted.is_(True),
                Purchase.access_expired.is_(False),
                Purchase.expiry_at < now,
            )
            .order_by(Purchase.expiry_at)
            .limit(limit)
        )

    async def list_purchases(
        self,
        principal_id: str,
        status: PurchaseStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[PurchaseData]:
        """Purchase history of a principal, newest first."""
        stmt = select(Purchase).where(Purchase.principal_id == principal_id)
        if status is not None:
            stmt = stmt.where(Purchase.status == status.value)
        return await self._select(
            stmt.order_by(Purchase.created_at.desc()).limit(limit).offset(offset)
        )

    async def list_active_grants(self, principal_id: str) -> list[PurchaseData]:
        """Unexpired one-time grants of a principal across all resources."""
        now = self.clock()
        return await self._select(
            select(Purchase)
            .where(
                Purchase.principal_id == principal_id,
                Purchase.status == PurchaseStatus.COMPLETED.value,
                Purchase.access_granted.is_(True),
                Purchase.access_expired.is_(False),
                Purchase.payment_method != PaymentMethod.SUBSCRIPTION.value,
                Purchase.expiry_at > now,
            )
            .order_by(Purchase.expiry_at)
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    @staticmethod
    def _granted(principal_id: str, resource_id: str) -> Select[tuple[Purchase]]:
        return select(Purchase).where(
            Purchase.principal_id == principal_id,
            Purchase.resource_id == resource_id,
            Purchase.status == PurchaseStatus.COMPLETED.value,
            Purchase.access_granted.is_(True),
            Purchase.access_expired.is_(False),
        )

    async def _select(self, stmt: Select[tuple[Purchase]]) -> list[PurchaseData]:
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return [self._to_domain(p) for p in result.scalars().all()]

    async def _load(self, purchase_id: UUID) -> Purchase | None:
        stmt = (
            select(Purchase)
            .where(Purchase.id == purchase_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _to_domain(purchase: Purchase) -> PurchaseData:
        """Convert ORM purchase to domain model."""
        return PurchaseData(
            purchase_id=purchase.id,
            principal_id=purchase.principal_id,
            resource_id=purchase.resource_id,
            amount_minor=purchase.amount_minor,
            currency=purchase.currency,
            payment_method=PaymentMethod(purchase.payment_method),
            status=PurchaseStatus(purchase.status),
            access_granted=purchase.access_granted,
            access_expired=purchase.access_expired,
            external_order_id=purchase.external_order_id,
            external_payment_id=purchase.external_payment_id,
            external_signature=purchase.external_signature,
            failure_reason=purchase.failure_reason,
            created_at=purchase.created_at,
            expiry_at=purchase.expiry_at,
            completed_at=purchase.completed_at,
        )
