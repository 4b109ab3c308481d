"""
Tests for API Dependencies.

Tests principal authentication and shared client construction.
"""

import time
from unittest.mock import patch

import jwt
import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from paygate.api import dependencies
from paygate.api.dependencies import (
    Principal,
    close_clients,
    decode_principal,
    get_payment_processor,
    get_principal,
    get_rate_limiter,
    get_url_issuer,
)
from paygate.config import settings
from paygate.exceptions import AuthenticationError
from paygate.services.rate_limiter import InMemorySlidingWindowStore
from paygate.services.razorpay_client import RazorpayClient


def _encode(claims: dict, secret: str | None = None) -> str:
    return jwt.encode(claims, secret or settings.jwt_secret, algorithm="HS256")


class TestDecodePrincipal:
    """Tests for decode_principal."""

    def test_subject_and_email(self):
        principal = decode_principal(_encode({"sub": "user-1", "email": "a@example.com"}))
        assert principal == Principal(principal_id="user-1", email="a@example.com")

    def test_expired_token(self):
        with pytest.raises(AuthenticationError) as exc_info:
            decode_principal(_encode({"sub": "user-1", "exp": int(time.time()) - 60}))
        assert exc_info.value.message == "token expired"

    def test_missing_subject(self):
        with pytest.raises(AuthenticationError):
            decode_principal(_encode({"email": "a@example.com"}))

    def test_blank_subject(self):
        with pytest.raises(AuthenticationError):
            decode_principal(_encode({"sub": "   "}))

    def test_wrong_secret(self):
        with pytest.raises(AuthenticationError):
            decode_principal(_encode({"sub": "user-1"}, secret="x" * 40))

    def test_audience_enforced_when_configured(self):
        token = _encode({"sub": "user-1", "aud": "other-service"})
        with patch.object(settings, "jwt_audience", "paygate"):
            with pytest.raises(AuthenticationError):
                decode_principal(token)


class TestGetPrincipal:
    """Tests for the get_principal dependency."""

    async def test_no_credentials(self):
        with pytest.raises(HTTPException) as exc_info:
            await get_principal(None)
        assert exc_info.value.status_code == 401

    async def test_invalid_credentials(self):
        credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials="garbage")
        with pytest.raises(HTTPException) as exc_info:
            await get_principal(credentials)
        assert exc_info.value.status_code == 401
        assert exc_info.value.headers == {"WWW-Authenticate": "Bearer"}

    async def test_valid_credentials(self):
        credentials = HTTPAuthorizationCredentials(
            scheme="Bearer", credentials=_encode({"sub": "user-1"})
        )
        principal = await get_principal(credentials)
        assert principal.principal_id == "user-1"


class TestSharedClients:
    """Tests for process-wide client construction."""

    async def test_processor_built_from_settings(self):
        processor = get_payment_processor()

        assert isinstance(processor, RazorpayClient)
        assert processor.key_id == settings.razorpay_key_id
        assert get_payment_processor() is processor

        await close_clients()
        assert dependencies._processor is None

    def test_processor_absent_without_credentials(self):
        with patch.object(dependencies, "_processor", None), patch.object(
            settings, "razorpay_key_id", ""
        ):
            assert get_payment_processor() is None

    def test_url_issuer_absent_without_bucket(self):
        with patch.object(settings, "storage_bucket", ""):
            assert get_url_issuer() is None

    async def test_rate_limiter_shares_memory_store(self):
        first = get_rate_limiter()
        second = get_rate_limiter()

        assert isinstance(first.store, InMemorySlidingWindowStore)
        assert first.store is second.store
        assert first.max_requests == settings.rate_limit_max_requests

        await close_clients()
        assert dependencies._rate_limit_store is None
