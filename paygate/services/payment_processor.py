"""
Payment Processor Protocol - Processor-agnostic interface.

NO DICTIONARIES - All data crossing the processor boundary uses typed models.
"""

from dataclasses import dataclass, field
from typing import Protocol


@dataclass(frozen=True)
class OrderRequest:
    """
    Request to open a processor order.

    Represents the amount a principal must pay for one resource.
    """

    amount_minor: int
    currency: str
    receipt: str
    principal_id: str
    resource_id: str

    def __post_init__(self) -> None:
        """Validate order constraints."""
        if self.amount_minor <= 0:
            raise ValueError(f"Order amount must be positive: {self.amount_minor}")
        if not self.receipt:
            raise ValueError("receipt cannot be empty")


@dataclass(frozen=True)
class OrderResult:
    """Order as created by the processor."""

    order_id: str
    amount_minor: int
    currency: str
    receipt: str | None
    status: str


@dataclass(frozen=True)
class PaymentDetails:
    """Processor view of one payment attempt."""

    payment_id: str
    order_id: str | None
    status: str
    amount_minor: int
    currency: str
    method: str | None


@dataclass(frozen=True)
class WebhookEvent:
    """
    Verified webhook notification.

    Only the fields the access flows consume are lifted out of the payload;
    the rest of the body is not retained.
    """

    event_type: str
    payment_id: str | None = None
    order_id: str | None = None
    payment_status: str | None = None
    error_description: str | None = None
    subscription_id: str | None = None
    subscription_status: str | None = None
    plan_id: str | None = None
    principal_id: str | None = None
    current_start: int | None = None
    current_end: int | None = None
    notes: dict[str, str] = field(default_factory=dict)


class PaymentProcessor(Protocol):
    """
    Payment processor protocol.

    The access flows only ever talk to this interface, so the concrete
    processor can be swapped or faked in tests.
    """

    @property
    def key_id(self) -> str:
        """Public key id handed to clients for checkout."""
        ...

    async def create_order(self, request: OrderRequest) -> OrderResult:
        """
        Create an order with the processor.

        Raises:
            UpstreamError: On timeout, transport failure or a processor error
        """
        ...

    async def fetch_payment(self, payment_id: str) -> PaymentDetails:
        """
        Fetch the processor's record of a payment.

        Raises:
            UpstreamError: On timeout, transport failure or a processor error
        """
        ...

    async def close(self) -> None:
        """Release pooled connections."""
        ...
