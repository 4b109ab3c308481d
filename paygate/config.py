"""
Application Configuration - Pydantic Settings for type-safe config.

FAIL FAST - Critical config is validated at startup.
"""

import sys
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Paygate Access API"
    api_version: str = "0.1.0"
    api_description: str = "Time-bound paid access to protected resources"

    # Principal authentication (bearer JWT issued by the identity service)
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    jwt_audience: str | None = None

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability
    metrics_enabled: bool = True
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "paygate-api"

    # Payment Processor - Razorpay
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""  # also the HMAC key for direct confirmations
    razorpay_webhook_secret: str = ""  # separate HMAC key for webhook bodies
    razorpay_base_url: str = "https://api.razorpay.com"
    processor_timeout_seconds: float = 10.0
    webhook_signature_header: str = "X-Razorpay-Signature"
    webhook_event_id_header: str = "X-Razorpay-Event-Id"
    default_currency: str = "INR"

    # Grants
    grant_window_seconds: int = 300
    one_time_url_ttl_seconds: int = 300
    subscription_url_ttl_seconds: int = 3600

    # Rate limiting (reveal path only)
    rate_limit_max_requests: int = 20
    rate_limit_window_ms: int = 60_000
    rate_limit_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"

    # Schema
    run_migrations_on_startup: bool = False

    # Expiry sweeper
    sweeper_enabled: bool = True
    sweeper_interval_seconds: float = 60.0
    sweeper_batch_size: int = 500

    # Object storage (S3 compatible, e.g. Cloudflare R2)
    storage_endpoint_url: str | None = None
    storage_access_key_id: str = ""
    storage_secret_access_key: str = ""
    storage_bucket: str = ""
    storage_region: str = "auto"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres", "sqlite")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL or SQLite URL, got: {self.database_url[:20]}..."
            )

        if not self.jwt_secret:
            errors.append("JWT_SECRET is required but empty or missing")

        if self.grant_window_seconds <= 0:
            errors.append("GRANT_WINDOW_SECONDS must be positive")

        if self.rate_limit_max_requests <= 0 or self.rate_limit_window_ms <= 0:
            errors.append("RATE_LIMIT_MAX_REQUESTS and RATE_LIMIT_WINDOW_MS must be positive")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def processor_configured(self) -> bool:
        """Whether payment processor credentials are present."""
        return bool(self.razorpay_key_id and self.razorpay_key_secret)


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
