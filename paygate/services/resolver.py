"""
Access Resolver - Decides whether a principal may access a resource right now.

Subscriptions are consulted first, then one-time grants. A grant found past
its expiry is expired on the spot, so expired access is never reported active
even if the sweeper has not run yet.
"""

from collections.abc import Callable
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from paygate.db.models import utc_now
from paygate.exceptions import AccessError
from paygate.models.domain import (
    AccessDecision,
    NoAccess,
    OneTimeAccess,
    ResourceInfo,
    SubscriptionAccess,
    SubscriptionGrant,
)
from paygate.observability.logging import get_logger
from paygate.observability.metrics import metrics
from paygate.services.ledger import PurchaseLedger
from paygate.services.subscriptions import SubscriptionRegistry

logger = get_logger(__name__)


class AccessResolver:
    """Read path for access checks. Never raises; failures read as no access."""

    def __init__(
        self,
        ledger: PurchaseLedger,
        registry: SubscriptionRegistry,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.ledger = ledger
        self.registry = registry
        self.clock = clock

    async def resolve(self, principal_id: str, resource: ResourceInfo) -> AccessDecision:
        """Resolve access of principal_id to resource."""
        try:
            decision = await self._resolve(principal_id, resource)
        except (AccessError, SQLAlchemyError) as e:
            logger.error(
                "access_resolution_failed",
                principal_id=principal_id,
                resource_id=resource.resource_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            metrics.record_error(type(e).__name__, "resolve_access")
            decision = NoAccess()

        metrics.record_access_decision(
            decision.access_type.value, expired=isinstance(decision, NoAccess) and decision.expired
        )
        return decision

    async def _resolve(self, principal_id: str, resource: ResourceInfo) -> AccessDecision:
        subscription = await self.registry.get_active_subscription(principal_id)
        if subscription is not None and subscription.unlimited_access:
            purchase = await self.ledger.grant(
                principal_id,
                resource,
                SubscriptionGrant(
                    subscription_id=subscription.subscription_id,
                    end_date=subscription.end_date,
                ),
            )
            return SubscriptionAccess(subscription=subscription, purchase=purchase)

        grant = await self.ledger.find_latest_grant(principal_id, resource.resource_id)
        if grant is None:
            return NoAccess()

        if grant.is_past_expiry(self.clock()):
            await self.ledger.expire(grant.purchase_id)
            logger.info(
                "grant_expired_on_read",
                purchase_id=str(grant.purchase_id),
                principal_id=principal_id,
                resource_id=resource.resource_id,
            )
            return NoAccess(expired=True)

        return OneTimeAccess(purchase=grant)
