"""
Access Service - Order, confirmation, webhook and reveal flows.

Composes the catalog, ledger, subscription registry, verifier and resolver
over one database session. Routes construct one per request.
"""

import math
from collections.abc import Callable
from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from paygate.db.models import utc_now
from paygate.exceptions import (
    AccessDeniedError,
    ConflictError,
    NotFoundError,
    NotPurchasableError,
    SignatureMismatchError,
    UpstreamError,
    ValidationError,
    WebhookVerificationError,
)
from paygate.models.api import PurchaseStatus
from paygate.models.domain import (
    AccessDecision,
    AccessSummary,
    FreeGrant,
    NoAccess,
    OneTimeAccess,
    OrderOutcome,
    PaymentConfirmation,
    ProcessorPayment,
    PurchaseData,
    RevealOutcome,
    SubscriptionAccess,
    WebhookOutcome,
)
from paygate.observability.logging import get_logger
from paygate.observability.metrics import metrics
from paygate.observability.tracing import trace_operation
from paygate.services.catalog import ResourceCatalog
from paygate.services.ledger import DEFAULT_GRANT_WINDOW_SECONDS, PurchaseLedger
from paygate.services.payment_processor import OrderRequest, PaymentProcessor, WebhookEvent
from paygate.services.rate_limiter import RateLimiter
from paygate.services.resolver import AccessResolver
from paygate.services.storage import SignedUrlIssuer
from paygate.services.subscriptions import SubscriptionRegistry
from paygate.services.verifier import PaymentVerifier

logger = get_logger(__name__)

SUPERSEDED_REASON = "superseded"


class AccessService:
    """
    Access flows for one request.

    Flow for a paid resource:
    1. create_order  -> processor order, then pending purchase
    2. verify_payment or handle_webhook -> purchase completed
    3. access_status / reveal -> resolver decision, signed URL
    """

    def __init__(
        self,
        session: AsyncSession,
        verifier: PaymentVerifier,
        processor: PaymentProcessor | None = None,
        url_issuer: SignedUrlIssuer | None = None,
        rate_limiter: RateLimiter | None = None,
        clock: Callable[[], datetime] = utc_now,
        grant_window_seconds: int = DEFAULT_GRANT_WINDOW_SECONDS,
        one_time_url_ttl_seconds: int = 300,
        subscription_url_ttl_seconds: int = 3600,
    ) -> None:
        self.session = session
        self.verifier = verifier
        self.processor = processor
        self.url_issuer = url_issuer
        self.rate_limiter = rate_limiter
        self.clock = clock
        self.one_time_url_ttl_seconds = one_time_url_ttl_seconds
        self.subscription_url_ttl_seconds = subscription_url_ttl_seconds

        self.catalog = ResourceCatalog(session)
        self.ledger = PurchaseLedger(session, clock=clock, grant_window_seconds=grant_window_seconds)
        self.registry = SubscriptionRegistry(session, clock=clock)
        self.resolver = AccessResolver(self.ledger, self.registry, clock=clock)

    # ========================================================================
    # Orders
    # ========================================================================

    async def create_order(self, principal_id: str, resource_id: str) -> OrderOutcome:
        """
        Open (or reuse) an order for a resource.

        Principals who already hold access get their existing grant back and
        no order is opened.

        Raises:
            NotFoundError: Unknown resource
            NotPurchasableError: Inactive resource
            UpstreamError: Processor unavailable; nothing is recorded
        """
        with trace_operation("create_order", principal_id=principal_id, resource_id=resource_id):
            resource = await self.catalog.get(resource_id)
            if not resource.is_active:
                raise NotPurchasableError(resource_id)

            decision = await self.resolver.resolve(principal_id, resource)
            match decision:
                case SubscriptionAccess(purchase=purchase) | OneTimeAccess(purchase=purchase):
                    logger.info(
                        "order_short_circuited",
                        principal_id=principal_id,
                        resource_id=resource_id,
                        access_type=decision.access_type.value,
                        purchase_id=str(purchase.purchase_id),
                    )
                    return OrderOutcome(purchase=purchase, order_id=None)
                case NoAccess():
                    pass

            if resource.price_minor == 0:
                purchase = await self.ledger.grant(principal_id, resource, FreeGrant())
                return OrderOutcome(purchase=purchase, order_id=None)

            pending = await self.ledger.find_pending(principal_id, resource_id)
            if pending is not None:
                if self._reusable(pending, resource.price_minor, resource.currency):
                    logger.info(
                        "pending_purchase_reused",
                        purchase_id=str(pending.purchase_id),
                        order_id=pending.external_order_id,
                    )
                    return OrderOutcome(purchase=pending, order_id=pending.external_order_id)
                await self.ledger.mark_failed(pending.purchase_id, SUPERSEDED_REASON)

            if self.processor is None:
                raise UpstreamError("payment processor is not configured", retryable=False)

            receipt = f"rcpt_{uuid4().hex[:24]}"
            order = await self.processor.create_order(
                OrderRequest(
                    amount_minor=resource.price_minor,
                    currency=resource.currency,
                    receipt=receipt,
                    principal_id=principal_id,
                    resource_id=resource_id,
                )
            )
            purchase = await self.ledger.create_pending_purchase(
                principal_id, resource, resource.price_minor, ProcessorPayment(order.order_id)
            )
            return OrderOutcome(purchase=purchase, order_id=order.order_id, receipt=receipt)

    def _reusable(self, pending: PurchaseData, price_minor: int, currency: str) -> bool:
        return (
            pending.external_order_id is not None
            and pending.amount_minor == price_minor
            and pending.currency == currency
            and not pending.is_past_expiry(self.clock())
        )

    # ========================================================================
    # Confirmations
    # ========================================================================

    async def verify_payment(
        self,
        principal_id: str,
        purchase_id: UUID,
        order_id: str,
        payment_id: str,
        signature: str,
    ) -> PaymentConfirmation:
        """
        Confirm a payment relayed by the client.

        A bad signature never touches the ledger.

        Raises:
            NotFoundError: Unknown purchase, or one owned by someone else
            ValidationError: order_id does not belong to the purchase
            SignatureMismatchError: Signature check failed
            ConflictError: Purchase already confirmed differently, or no longer payable
        """
        purchase = await self.ledger.get_purchase(purchase_id)
        if purchase.principal_id != principal_id:
            raise NotFoundError("Purchase", str(purchase_id))
        if purchase.external_order_id != order_id:
            raise ValidationError("order id does not match purchase")

        if not self.verifier.verify_direct(order_id, payment_id, signature):
            logger.error(
                "payment_signature_mismatch",
                purchase_id=str(purchase_id),
                principal_id=principal_id,
                order_id=order_id,
            )
            raise SignatureMismatchError(order_id)

        completed = await self.ledger.mark_completed(purchase_id, payment_id, signature)

        payment = None
        if self.processor is not None:
            try:
                payment = await self.processor.fetch_payment(payment_id)
            except UpstreamError as e:
                logger.warning("payment_details_unavailable", payment_id=payment_id, error=str(e))

        return PaymentConfirmation(purchase=completed, payment=payment)

    async def handle_webhook(self, raw_body: bytes, signature: str | None) -> WebhookOutcome:
        """
        Verify and apply a processor webhook.

        Redelivered and out-of-order events are no-ops. Unknown events and
        unknown orders are acknowledged without effect.

        Raises:
            WebhookVerificationError: Bad signature or malformed body
            ConflictError: Activation collides with another live subscription
        """
        try:
            event = self.verifier.parse_webhook(raw_body, signature)
        except WebhookVerificationError:
            metrics.record_webhook("unverified", "rejected")
            raise

        match event.event_type:
            case "payment.captured":
                processed = await self._on_payment_captured(event)
            case "payment.failed":
                processed = await self._on_payment_failed(event)
            case "subscription.activated" | "subscription.charged":
                processed = await self._on_subscription_active(event)
            case "subscription.cancelled":
                processed = await self._on_subscription_ended(event, cancelled=True)
            case "subscription.completed":
                processed = await self._on_subscription_ended(event, cancelled=False)
            case _:
                logger.info("webhook_event_ignored", event_type=event.event_type)
                processed = False

        metrics.record_webhook(event.event_type, "processed" if processed else "ignored")
        return WebhookOutcome(event_type=event.event_type, processed=processed)

    async def _on_payment_captured(self, event: WebhookEvent) -> bool:
        if not event.order_id or not event.payment_id:
            logger.warning("webhook_payment_incomplete", event_type=event.event_type)
            return False

        purchase = await self.ledger.find_by_order_id(event.order_id)
        if purchase is None:
            logger.info("webhook_order_unknown", order_id=event.order_id)
            return False

        try:
            await self.ledger.mark_completed(purchase.purchase_id, event.payment_id)
        except ConflictError as e:
            # Already logged by the ledger; left for operator reconciliation.
            metrics.record_error(type(e).__name__, "webhook_payment_captured")
            return False
        return True

    async def _on_payment_failed(self, event: WebhookEvent) -> bool:
        if not event.order_id:
            return False
        purchase = await self.ledger.find_by_order_id(event.order_id)
        if purchase is None or purchase.status != PurchaseStatus.PENDING:
            return False
        reason = event.error_description or "payment failed"
        return await self.ledger.mark_failed(purchase.purchase_id, reason)

    async def _on_subscription_active(self, event: WebhookEvent) -> bool:
        if not event.subscription_id or event.current_end is None:
            logger.warning("webhook_subscription_incomplete", event_type=event.event_type)
            return False

        end_date = datetime.fromtimestamp(event.current_end, UTC)
        existing = await self.registry.find_by_external_id(event.subscription_id)
        if existing is not None:
            return await self.registry.renew(existing.subscription_id, end_date)

        if not event.principal_id or not event.plan_id:
            logger.warning(
                "webhook_subscription_unattributed", subscription_id=event.subscription_id
            )
            return False

        if await self.registry.expire_lapsed_for(event.principal_id):
            await self.ledger.expire_subscription_grants(event.principal_id)

        start_date = (
            datetime.fromtimestamp(event.current_start, UTC)
            if event.current_start is not None
            else self.clock()
        )
        try:
            await self.registry.activate(
                event.principal_id,
                event.plan_id,
                start_date,
                end_date,
                external_subscription_id=event.subscription_id,
            )
        except ConflictError:
            # Another subscription is still live; the processor redelivers on non-2xx.
            logger.warning(
                "webhook_subscription_deferred",
                subscription_id=event.subscription_id,
                principal_id=event.principal_id,
            )
            metrics.record_webhook(event.event_type, "deferred")
            raise
        except (NotFoundError, ValidationError) as e:
            logger.error(
                "webhook_subscription_rejected",
                subscription_id=event.subscription_id,
                principal_id=event.principal_id,
                error=str(e),
            )
            return False
        return True

    async def _on_subscription_ended(self, event: WebhookEvent, cancelled: bool) -> bool:
        if not event.subscription_id:
            return False
        subscription = await self.registry.find_by_external_id(event.subscription_id)
        if subscription is None:
            logger.info("webhook_subscription_unknown", subscription_id=event.subscription_id)
            return False

        if cancelled:
            ended = await self.registry.cancel(subscription.subscription_id)
        else:
            ended = await self.registry.expire(subscription.subscription_id)
        if ended:
            await self.ledger.expire_subscription_grants(subscription.principal_id)
        return ended

    # ========================================================================
    # Access
    # ========================================================================

    async def access_status(self, principal_id: str, resource_id: str) -> AccessDecision:
        """
        Current access decision for a resource.

        Raises:
            NotFoundError: Unknown resource
        """
        resource = await self.catalog.get(resource_id)
        return await self.resolver.resolve(principal_id, resource)

    async def reveal(self, principal_id: str, resource_id: str) -> RevealOutcome:
        """
        Rate-limit, resolve, then sign a URL for the resource.

        The URL lives no longer than the grant and never longer than the
        channel cap (one-time or subscription).

        Raises:
            RateLimitExceededError: Too many reveals in the window
            NotFoundError: Unknown resource
            AccessDeniedError: No current access
        """
        if self.rate_limiter is not None:
            await self.rate_limiter.check(principal_id)

        resource = await self.catalog.get(resource_id)
        decision = await self.resolver.resolve(principal_id, resource)

        match decision:
            case NoAccess(expired=expired):
                raise AccessDeniedError(resource_id, expired=expired)
            case OneTimeAccess():
                cap = self.one_time_url_ttl_seconds
            case SubscriptionAccess():
                cap = self.subscription_url_ttl_seconds

        remaining = decision.purchase.remaining_seconds(self.clock())
        ttl_seconds = max(1, min(cap, math.floor(remaining)))

        if self.url_issuer is None:
            raise UpstreamError("object storage is not configured", retryable=False)
        url = self.url_issuer.issue_signed_url(resource.storage_key, ttl_seconds)

        logger.info(
            "resource_revealed",
            principal_id=principal_id,
            resource_id=resource_id,
            access_type=decision.access_type.value,
            ttl_seconds=ttl_seconds,
        )
        return RevealOutcome(
            url=url,
            access_type=decision.access_type,
            expiry_at=decision.expiry_at,
            ttl_seconds=ttl_seconds,
        )

    async def access_summary(self, principal_id: str) -> AccessSummary:
        """Active subscription and active one-time grants of a principal."""
        subscription = await self.registry.get_active_subscription(principal_id)
        purchases = await self.ledger.list_active_grants(principal_id)
        return AccessSummary(subscription=subscription, active_purchases=purchases)

    async def list_purchases(
        self,
        principal_id: str,
        status: PurchaseStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[PurchaseData]:
        """Purchase history of a principal."""
        return await self.ledger.list_purchases(principal_id, status=status, limit=limit, offset=offset)
