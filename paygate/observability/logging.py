"""
Structured Logging with Structlog.

JSON logs carrying the request ID, with payment signatures and credentials
masked before rendering.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from paygate.config import settings

# Event keys whose values must never reach a log sink
REDACTED_KEYS = frozenset(
    {
        "signature",
        "authorization",
        "jwt",
        "token",
        "key_secret",
        "webhook_secret",
        "razorpay_signature",
    }
)

# Client libraries that log every request at INFO/DEBUG
_QUIET_LOGGERS = ("httpx", "httpcore", "botocore", "boto3", "urllib3", "aiosqlite")


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application-level context to all log entries."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask signature and credential values, keeping a short prefix for correlation."""
    for key in REDACTED_KEYS.intersection(event_dict):
        value = event_dict[key]
        if value is None:
            continue
        text = str(value)
        event_dict[key] = f"{text[:4]}***" if len(text) > 8 else "***"
    return event_dict


def setup_logging() -> None:
    """
    Configure structured logging with structlog.

    A rendered JSON entry looks like:
    {
        "event": "purchase_completed",
        "level": "info",
        "timestamp": "2026-03-01T12:00:00.123456Z",
        "logger": "paygate.services.ledger",
        "service": "paygate-api",
        "version": "0.1.0",
        "request_id": "req-123",
        "purchase_id": "..."
    }
    """
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if level == logging.DEBUG:
        processors.append(structlog.processors.ExceptionRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("purchase_completed", purchase_id=str(purchase_id))
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Bind key/value pairs to every log entry emitted inside the block.

    Usage:
        with log_context(request_id="req-123", principal_id="user-456"):
            logger.info("order_created")
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs

    def __enter__(self) -> None:
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context.keys())
