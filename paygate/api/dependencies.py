"""
FastAPI Dependencies - Principal authentication and service wiring.

NO DICTIONARIES - All dependencies return typed objects.
"""

from dataclasses import dataclass
from typing import Any

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.config import settings
from paygate.db.session import get_db
from paygate.exceptions import AuthenticationError
from paygate.observability.logging import get_logger
from paygate.services.access import AccessService
from paygate.services.payment_processor import PaymentProcessor
from paygate.services.rate_limiter import (
    InMemorySlidingWindowStore,
    RateLimiter,
    RateLimitStore,
    RedisSlidingWindowStore,
)
from paygate.services.razorpay_client import RazorpayClient
from paygate.services.storage import S3SignedUrlIssuer, SignedUrlIssuer
from paygate.services.verifier import PaymentVerifier

logger = get_logger(__name__)

# ============================================================================
# Principal JWT Authentication
# ============================================================================


@dataclass(frozen=True)
class Principal:
    """Authenticated principal from a bearer JWT."""

    principal_id: str
    email: str | None = None


# Bearer token scheme for JWT auth
bearer_scheme = HTTPBearer(auto_error=False)


def decode_principal(token: str) -> Principal:
    """
    Validate a bearer JWT and extract the principal.

    Raises:
        AuthenticationError: Bad signature, expired, or no subject
    """
    options: dict[str, Any] = {"require": ["sub"]}
    if settings.jwt_audience is None:
        options["verify_aud"] = False

    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            options=options,
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError(str(exc)) from exc

    subject = str(claims.get("sub") or "").strip()
    if not subject:
        raise AuthenticationError("token has no subject")
    return Principal(principal_id=subject, email=claims.get("email"))


async def get_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Principal:
    """
    FastAPI dependency resolving the calling principal.

    Accepts: Authorization: Bearer {jwt}

    Raises:
        HTTPException 401 if no token or invalid token
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return decode_principal(credentials.credentials)
    except AuthenticationError as exc:
        logger.warning("principal_token_rejected", reason=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


# ============================================================================
# Shared clients (process-wide)
# ============================================================================

_processor: RazorpayClient | None = None
_url_issuer: S3SignedUrlIssuer | None = None
_rate_limit_store: RateLimitStore | None = None
_verifier: PaymentVerifier | None = None


def get_payment_processor() -> PaymentProcessor | None:
    """Razorpay client, or None when credentials are not configured."""
    global _processor
    if _processor is None and settings.processor_configured:
        _processor = RazorpayClient(
            key_id=settings.razorpay_key_id,
            key_secret=settings.razorpay_key_secret,
            base_url=settings.razorpay_base_url,
            timeout_seconds=settings.processor_timeout_seconds,
        )
    return _processor


def get_verifier() -> PaymentVerifier:
    global _verifier
    if _verifier is None:
        _verifier = PaymentVerifier(
            key_secret=settings.razorpay_key_secret,
            webhook_secret=settings.razorpay_webhook_secret,
        )
    return _verifier


def get_url_issuer() -> SignedUrlIssuer | None:
    """Signed URL issuer, or None when no bucket is configured."""
    global _url_issuer
    if _url_issuer is None and settings.storage_bucket:
        _url_issuer = S3SignedUrlIssuer.from_credentials(
            bucket=settings.storage_bucket,
            access_key_id=settings.storage_access_key_id,
            secret_access_key=settings.storage_secret_access_key,
            endpoint_url=settings.storage_endpoint_url,
            region=settings.storage_region,
        )
    return _url_issuer


def get_rate_limiter() -> RateLimiter:
    global _rate_limit_store
    if _rate_limit_store is None:
        if settings.rate_limit_backend == "redis":
            _rate_limit_store = RedisSlidingWindowStore.from_url(settings.redis_url)
        else:
            _rate_limit_store = InMemorySlidingWindowStore()
    return RateLimiter(
        _rate_limit_store,
        max_requests=settings.rate_limit_max_requests,
        window_ms=settings.rate_limit_window_ms,
    )


def get_access_service(
    db: AsyncSession = Depends(get_db),
    verifier: PaymentVerifier = Depends(get_verifier),
    processor: PaymentProcessor | None = Depends(get_payment_processor),
    url_issuer: SignedUrlIssuer | None = Depends(get_url_issuer),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> AccessService:
    """Per-request access service over the request's session."""
    return AccessService(
        db,
        verifier=verifier,
        processor=processor,
        url_issuer=url_issuer,
        rate_limiter=rate_limiter,
        grant_window_seconds=settings.grant_window_seconds,
        one_time_url_ttl_seconds=settings.one_time_url_ttl_seconds,
        subscription_url_ttl_seconds=settings.subscription_url_ttl_seconds,
    )


async def close_clients() -> None:
    """Close pooled outbound connections (for graceful shutdown)."""
    global _processor, _rate_limit_store
    if _processor is not None:
        await _processor.close()
        _processor = None
    if isinstance(_rate_limit_store, RedisSlidingWindowStore):
        await _rate_limit_store.close()
    _rate_limit_store = None
