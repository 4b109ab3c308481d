"""
Exception Classes - Strongly typed exception hierarchy.

All exceptions carry typed attributes; HTTP mapping lives in the API layer.
"""

from uuid import UUID


class AccessError(Exception):
    """Base exception for all access-control errors."""

    pass


class ValidationError(AccessError):
    """Raised for malformed or missing fields. Never retried."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Validation error: {message}")


class NotFoundError(AccessError):
    """Raised when a resource or purchase doesn't exist."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class NotPurchasableError(AccessError):
    """Raised when a resource exists but cannot be bought (inactive)."""

    def __init__(self, resource_id: str) -> None:
        self.resource_id = resource_id
        super().__init__(f"Resource {resource_id} is not purchasable")


class ConflictError(AccessError):
    """Raised when a request conflicts with recorded ledger state."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Conflict: {message}")


class ActiveGrantExistsError(ConflictError):
    """Raised when a payable purchase is requested while access is already held."""

    def __init__(self, purchase_id: UUID) -> None:
        self.purchase_id = purchase_id
        super().__init__(f"active grant already exists: {purchase_id}")


class PaymentIdConflictError(ConflictError):
    """Raised when a purchase is confirmed with a payment id other than the recorded one."""

    def __init__(self, purchase_id: UUID, recorded_payment_id: str, offered_payment_id: str) -> None:
        self.purchase_id = purchase_id
        self.recorded_payment_id = recorded_payment_id
        self.offered_payment_id = offered_payment_id
        super().__init__(
            f"purchase {purchase_id} already confirmed with payment {recorded_payment_id}, "
            f"got {offered_payment_id}"
        )


class SignatureMismatchError(ConflictError):
    """Raised when a client-relayed payment signature doesn't match."""

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"payment signature mismatch for order {order_id}")


class UpstreamError(AccessError):
    """Raised when the payment processor is unreachable or fails."""

    def __init__(self, message: str, retryable: bool = True) -> None:
        self.message = message
        self.retryable = retryable
        super().__init__(f"Upstream error: {message}")


class RateLimitExceededError(AccessError):
    """Raised when a principal exceeds the reveal rate limit."""

    def __init__(self, retry_after_seconds: int) -> None:
        self.retry_after_seconds = retry_after_seconds
        super().__init__(f"Rate limit exceeded, retry after {retry_after_seconds}s")


class WebhookVerificationError(AccessError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


class AuthenticationError(AccessError):
    """Raised when the bearer token is missing or invalid."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class AccessDeniedError(AccessError):
    """Raised when a principal holds no access to a resource it asked to reveal."""

    def __init__(self, resource_id: str, expired: bool = False) -> None:
        self.resource_id = resource_id
        self.expired = expired
        reason = "access expired" if expired else "no access"
        super().__init__(f"{reason} for resource {resource_id}")
