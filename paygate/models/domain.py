"""
Domain Models - Internal business logic models using dataclasses.

All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from paygate.models.api import AccessType, PaymentMethod, PurchaseStatus, SubscriptionStatus
from paygate.services.payment_processor import PaymentDetails


@dataclass(frozen=True)
class ResourceInfo:
    """Protected resource as published by the content catalog."""

    resource_id: str
    storage_key: str
    title: str
    price_minor: int
    currency: str
    is_active: bool

    def __post_init__(self) -> None:
        """Validate resource constraints."""
        if self.price_minor < 0:
            raise ValueError(f"Price cannot be negative: {self.price_minor}")
        if len(self.currency) != 3:
            raise ValueError(f"Invalid currency code: {self.currency}")


# ============================================================================
# Grant sources - closed union of the ways a purchase can be paid for
# ============================================================================


@dataclass(frozen=True)
class ProcessorPayment:
    """Grant paid through the external payment processor."""

    order_id: str

    def __post_init__(self) -> None:
        if not self.order_id:
            raise ValueError("order_id cannot be empty")

    @property
    def method(self) -> PaymentMethod:
        return PaymentMethod.PROCESSOR


@dataclass(frozen=True)
class SubscriptionGrant:
    """Grant derived from an active unlimited subscription."""

    subscription_id: UUID
    end_date: datetime

    @property
    def method(self) -> PaymentMethod:
        return PaymentMethod.SUBSCRIPTION


@dataclass(frozen=True)
class FreeGrant:
    """Grant for a resource priced at zero."""

    @property
    def method(self) -> PaymentMethod:
        return PaymentMethod.FREE


GrantSource = ProcessorPayment | SubscriptionGrant | FreeGrant


# ============================================================================
# Ledger snapshots
# ============================================================================


@dataclass(frozen=True)
class PurchaseData:
    """Immutable purchase snapshot read back from the ledger."""

    purchase_id: UUID
    principal_id: str
    resource_id: str
    amount_minor: int
    currency: str
    payment_method: PaymentMethod
    status: PurchaseStatus
    access_granted: bool
    access_expired: bool
    external_order_id: str | None
    external_payment_id: str | None
    external_signature: str | None
    failure_reason: str | None
    created_at: datetime
    expiry_at: datetime
    completed_at: datetime | None

    def is_past_expiry(self, now: datetime) -> bool:
        """True once the grant window has elapsed."""
        return now > self.expiry_at

    def remaining_seconds(self, now: datetime) -> float:
        """Seconds left before expiry (never negative)."""
        return max(0.0, (self.expiry_at - now).total_seconds())


@dataclass(frozen=True)
class SubscriptionData:
    """Immutable subscription snapshot."""

    subscription_id: UUID
    principal_id: str
    plan_id: str
    status: SubscriptionStatus
    start_date: datetime
    end_date: datetime
    external_subscription_id: str | None
    unlimited_access: bool


# ============================================================================
# Access decisions
# ============================================================================


@dataclass(frozen=True)
class NoAccess:
    """Principal may not access the resource."""

    expired: bool = False

    @property
    def access_type(self) -> AccessType:
        return AccessType.NONE


@dataclass(frozen=True)
class OneTimeAccess:
    """Access through a paid or free one-time grant."""

    purchase: PurchaseData

    @property
    def access_type(self) -> AccessType:
        return AccessType.ONE_TIME

    @property
    def expiry_at(self) -> datetime:
        return self.purchase.expiry_at


@dataclass(frozen=True)
class SubscriptionAccess:
    """Access through an unlimited subscription."""

    subscription: SubscriptionData
    purchase: PurchaseData

    @property
    def access_type(self) -> AccessType:
        return AccessType.SUBSCRIPTION

    @property
    def expiry_at(self) -> datetime:
        return self.subscription.end_date


AccessDecision = NoAccess | OneTimeAccess | SubscriptionAccess


@dataclass(frozen=True)
class OrderOutcome:
    """Result of a create-order request."""

    purchase: PurchaseData
    order_id: str | None
    receipt: str | None = None


@dataclass(frozen=True)
class SweepResult:
    """Counts from one expiry sweeper pass."""

    expired_grants: int
    expired_subscriptions: int
    failed_grants: int = 0


@dataclass(frozen=True)
class PaymentConfirmation:
    """Result of a client-relayed payment verification."""

    purchase: PurchaseData
    payment: PaymentDetails | None


@dataclass(frozen=True)
class RevealOutcome:
    """Signed URL handed out for a resource."""

    url: str
    access_type: AccessType
    expiry_at: datetime
    ttl_seconds: int


@dataclass(frozen=True)
class AccessSummary:
    """Everything a principal can currently access."""

    subscription: SubscriptionData | None
    active_purchases: list[PurchaseData]


@dataclass(frozen=True)
class WebhookOutcome:
    """How a verified webhook was handled."""

    event_type: str
    processed: bool
