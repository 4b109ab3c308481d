"""
API Models - Pydantic models for request/response validation.

JSON bodies use camelCase on the wire; Python attributes stay snake_case.
"""

from datetime import datetime
from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class PurchaseStatus(str, Enum):
    """Purchase status enumeration."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    EXPIRED = "expired"


class PaymentMethod(str, Enum):
    """How a purchase was paid for."""

    PROCESSOR = "processor"
    SUBSCRIPTION = "subscription"
    FREE = "free"


class SubscriptionStatus(str, Enum):
    """Subscription status enumeration."""

    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class AccessType(str, Enum):
    """Kind of access an access decision grants."""

    NONE = "none"
    ONE_TIME = "one_time"
    SUBSCRIPTION = "subscription"


class CamelModel(BaseModel):
    """Base model serialising to camelCase while accepting either form."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Order / Verify Models
# ============================================================================


class CreateOrderRequest(CamelModel):
    """POST /access/create-order request body."""

    resource_id: str = Field(..., min_length=1, max_length=255)


class OrderResponse(CamelModel):
    """Processor order the client pays against."""

    id: str
    amount: int = Field(..., description="Amount in minor units")
    currency: str
    receipt: str | None = None
    key_id: str | None = Field(None, description="Public processor key for client checkout")


class PurchaseResponse(CamelModel):
    """Purchase record as exposed to the owning principal."""

    id: UUID
    resource_id: str
    amount: int
    currency: str
    payment_method: PaymentMethod
    status: PurchaseStatus
    access_granted: bool
    access_expired: bool
    created_at: datetime
    expiry_date: datetime
    completed_at: datetime | None = None


class CreateOrderResponse(CamelModel):
    """POST /access/create-order response body."""

    order: OrderResponse | None
    purchase: PurchaseResponse


class VerifyPaymentRequest(CamelModel):
    """POST /access/verify request body."""

    order_id: str = Field(..., min_length=1, max_length=255)
    payment_id: str = Field(..., min_length=1, max_length=255)
    signature: str = Field(..., min_length=1, max_length=512)
    purchase_id: UUID


class PaymentDetailsResponse(CamelModel):
    """Processor view of a payment, returned for display only."""

    id: str
    order_id: str | None
    status: str
    amount: int
    currency: str
    method: str | None = None


class VerifyPaymentResponse(CamelModel):
    """POST /access/verify response body."""

    purchase: PurchaseResponse
    payment: PaymentDetailsResponse | None = None


# ============================================================================
# Access Models
# ============================================================================


class AccessStatusResponse(CamelModel):
    """GET /access/status/{resource_id} response body."""

    has_access: bool
    is_expired: bool
    expiry_date: datetime | None
    access_type: AccessType
    purchase_id: UUID | None = None


class RevealResponse(CamelModel):
    """GET /access/reveal/{resource_id} response body."""

    url: str
    expiry_date: datetime | None
    access_type: AccessType
    url_ttl_seconds: int


class PurchaseListResponse(CamelModel):
    """GET /access/purchases response body."""

    purchases: list[PurchaseResponse]
    limit: int
    offset: int


class SubscriptionSummary(CamelModel):
    """Active subscription as seen in the access summary."""

    id: UUID
    plan_id: str
    start_date: datetime
    end_date: datetime


class AccessSummaryResponse(CamelModel):
    """GET /access/summary response body."""

    has_active_subscription: bool
    subscription: SubscriptionSummary | None
    active_purchases: list[PurchaseResponse]


class WebhookAckResponse(CamelModel):
    """POST /access/webhook response body."""

    status: Literal["processed", "ignored"]
    event: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str
