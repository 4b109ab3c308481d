"""
API Routes - FastAPI endpoints for paid resource access.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.api.dependencies import Principal, get_access_service, get_principal
from paygate.config import settings
from paygate.db.session import get_db
from paygate.exceptions import (
    AccessDeniedError,
    AccessError,
    ConflictError,
    NotFoundError,
    NotPurchasableError,
    RateLimitExceededError,
    UpstreamError,
    ValidationError,
    WebhookVerificationError,
)
from paygate.models.api import (
    AccessStatusResponse,
    AccessSummaryResponse,
    CreateOrderRequest,
    CreateOrderResponse,
    HealthResponse,
    OrderResponse,
    PaymentDetailsResponse,
    PurchaseListResponse,
    PurchaseResponse,
    PurchaseStatus,
    RevealResponse,
    SubscriptionSummary,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    WebhookAckResponse,
)
from paygate.models.domain import NoAccess, PurchaseData
from paygate.observability.logging import get_logger
from paygate.services.access import AccessService

logger = get_logger(__name__)

router = APIRouter()


def _purchase_response(purchase: PurchaseData) -> PurchaseResponse:
    return PurchaseResponse(
        id=purchase.purchase_id,
        resource_id=purchase.resource_id,
        amount=purchase.amount_minor,
        currency=purchase.currency,
        payment_method=purchase.payment_method,
        status=purchase.status,
        access_granted=purchase.access_granted,
        access_expired=purchase.access_expired,
        created_at=purchase.created_at,
        expiry_date=purchase.expiry_at,
        completed_at=purchase.completed_at,
    )


def _http_error(exc: AccessError) -> HTTPException:
    """Map a domain error to its HTTP response."""
    match exc:
        case ValidationError() | NotPurchasableError():
            return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
        case NotFoundError():
            return HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail=f"{exc.kind} not found"
            )
        case ConflictError():
            return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.message)
        case AccessDeniedError():
            return HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Access expired" if exc.expired else "No access to this resource",
            )
        case UpstreamError(retryable=True):
            return HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Payment provider temporarily unavailable",
            )
        case UpstreamError():
            return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.message)
        case WebhookVerificationError():
            return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=exc.message)
        case _:
            return HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal error"
            )


# =============================================================================
# Orders and confirmations
# =============================================================================


@router.post("/access/create-order", response_model=CreateOrderResponse)
async def create_order(
    request: CreateOrderRequest,
    principal: Principal = Depends(get_principal),
    service: AccessService = Depends(get_access_service),
) -> CreateOrderResponse:
    """
    Open a processor order for a resource.

    Principals who already hold access (subscription or unexpired grant) get
    that grant back with no order. Free resources are granted immediately.
    """
    try:
        outcome = await service.create_order(principal.principal_id, request.resource_id)
    except AccessError as exc:
        raise _http_error(exc) from exc

    order = None
    if outcome.order_id is not None:
        order = OrderResponse(
            id=outcome.order_id,
            amount=outcome.purchase.amount_minor,
            currency=outcome.purchase.currency,
            receipt=outcome.receipt,
            key_id=service.processor.key_id if service.processor else None,
        )
    return CreateOrderResponse(order=order, purchase=_purchase_response(outcome.purchase))


@router.post("/access/verify", response_model=VerifyPaymentResponse)
async def verify_payment(
    request: VerifyPaymentRequest,
    principal: Principal = Depends(get_principal),
    service: AccessService = Depends(get_access_service),
) -> VerifyPaymentResponse:
    """
    Confirm a payment relayed by the client after checkout.

    Signature mismatch and double confirmation with another payment id are 409.
    """
    try:
        confirmation = await service.verify_payment(
            principal.principal_id,
            request.purchase_id,
            request.order_id,
            request.payment_id,
            request.signature,
        )
    except AccessError as exc:
        raise _http_error(exc) from exc

    payment = None
    if confirmation.payment is not None:
        payment = PaymentDetailsResponse(
            id=confirmation.payment.payment_id,
            order_id=confirmation.payment.order_id,
            status=confirmation.payment.status,
            amount=confirmation.payment.amount_minor,
            currency=confirmation.payment.currency,
            method=confirmation.payment.method,
        )
    return VerifyPaymentResponse(purchase=_purchase_response(confirmation.purchase), payment=payment)


@router.post("/access/webhook", response_model=WebhookAckResponse)
async def processor_webhook(
    request: Request,
    service: AccessService = Depends(get_access_service),
) -> WebhookAckResponse:
    """
    Handle payment processor webhooks.

    The signature is checked over the raw body before anything is parsed.
    """
    payload = await request.body()
    signature = request.headers.get(settings.webhook_signature_header)
    delivery_id = request.headers.get(settings.webhook_event_id_header)

    try:
        outcome = await service.handle_webhook(payload, signature)
    except (WebhookVerificationError, ConflictError) as exc:
        raise _http_error(exc) from exc

    logger.info(
        "webhook_handled",
        event_type=outcome.event_type,
        processed=outcome.processed,
        delivery_id=delivery_id,
    )
    return WebhookAckResponse(
        status="processed" if outcome.processed else "ignored", event=outcome.event_type
    )


# =============================================================================
# Access checks
# =============================================================================


@router.get(
    "/access/status/{resource_id}",
    response_model=AccessStatusResponse,
)
async def access_status(
    resource_id: str,
    principal: Principal = Depends(get_principal),
    service: AccessService = Depends(get_access_service),
) -> AccessStatusResponse:
    """Whether the principal can access the resource right now."""
    try:
        decision = await service.access_status(principal.principal_id, resource_id)
    except AccessError as exc:
        raise _http_error(exc) from exc

    if isinstance(decision, NoAccess):
        return AccessStatusResponse(
            has_access=False,
            is_expired=decision.expired,
            expiry_date=None,
            access_type=decision.access_type,
        )
    return AccessStatusResponse(
        has_access=True,
        is_expired=False,
        expiry_date=decision.expiry_at,
        access_type=decision.access_type,
        purchase_id=decision.purchase.purchase_id,
    )


@router.get(
    "/access/reveal/{resource_id}",
    response_model=RevealResponse,
)
async def reveal_resource(
    resource_id: str,
    principal: Principal = Depends(get_principal),
    service: AccessService = Depends(get_access_service),
) -> RevealResponse | JSONResponse:
    """
    Issue a short-lived signed URL for a resource.

    Rate limited per principal; 403 without current access.
    """
    try:
        outcome = await service.reveal(principal.principal_id, resource_id)
    except RateLimitExceededError as exc:
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={"detail": "Rate limit exceeded", "retryAfter": exc.retry_after_seconds},
            headers={"Retry-After": str(exc.retry_after_seconds)},
        )
    except AccessError as exc:
        raise _http_error(exc) from exc

    return RevealResponse(
        url=outcome.url,
        expiry_date=outcome.expiry_at,
        access_type=outcome.access_type,
        url_ttl_seconds=outcome.ttl_seconds,
    )


@router.get("/access/purchases", response_model=PurchaseListResponse)
async def list_purchases(
    status_filter: PurchaseStatus | None = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(get_principal),
    service: AccessService = Depends(get_access_service),
) -> PurchaseListResponse:
    """Purchase history of the calling principal, newest first."""
    purchases = await service.list_purchases(
        principal.principal_id, status=status_filter, limit=limit, offset=offset
    )
    return PurchaseListResponse(
        purchases=[_purchase_response(p) for p in purchases], limit=limit, offset=offset
    )


@router.get("/access/summary", response_model=AccessSummaryResponse)
async def access_summary(
    principal: Principal = Depends(get_principal),
    service: AccessService = Depends(get_access_service),
) -> AccessSummaryResponse:
    """Active subscription and active one-time grants of the calling principal."""
    summary = await service.access_summary(principal.principal_id)

    subscription = None
    if summary.subscription is not None:
        subscription = SubscriptionSummary(
            id=summary.subscription.subscription_id,
            plan_id=summary.subscription.plan_id,
            start_date=summary.subscription.start_date,
            end_date=summary.subscription.end_date,
        )
    return AccessSummaryResponse(
        has_active_subscription=subscription is not None,
        subscription=subscription,
        active_purchases=[_purchase_response(p) for p in summary.active_purchases],
    )


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
