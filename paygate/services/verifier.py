"""
Payment Verifier - HMAC checks for both confirmation channels.

Client-relayed confirmations are signed over "order_id|payment_id" with the
key secret; webhooks are signed over the raw request body with the webhook
secret. Webhook bodies are parsed only after the signature checks out.
"""

import hashlib
import hmac
import json
from typing import Any

from paygate.exceptions import WebhookVerificationError
from paygate.observability.logging import get_logger
from paygate.services.payment_processor import WebhookEvent

logger = get_logger(__name__)


def compute_signature(secret: str, message: bytes) -> str:
    """HMAC-SHA256 hex digest of message under secret."""
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _matches(secret: str, message: bytes, signature: str | None) -> bool:
    if not secret:
        return False
    provided = (signature or "").strip()
    if not provided:
        return False
    return hmac.compare_digest(compute_signature(secret, message), provided)


class PaymentVerifier:
    """Authenticates payment confirmations before they reach the ledger."""

    def __init__(self, key_secret: str, webhook_secret: str) -> None:
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret

    def verify_direct(self, order_id: str, payment_id: str, signature: str) -> bool:
        """Check a client-relayed confirmation signature."""
        message = f"{order_id}|{payment_id}".encode("utf-8")
        valid = _matches(self._key_secret, message, signature)
        if not valid:
            logger.warning("payment_signature_invalid", order_id=order_id, payment_id=payment_id)
        return valid

    def verify_webhook(self, raw_body: bytes, signature_header: str | None) -> bool:
        """Check a webhook signature over the exact bytes received."""
        return _matches(self._webhook_secret, raw_body, signature_header)

    def parse_webhook(self, raw_body: bytes, signature_header: str | None) -> WebhookEvent:
        """
        Verify then parse a webhook body.

        Raises:
            WebhookVerificationError: Bad signature or malformed body
        """
        if not self.verify_webhook(raw_body, signature_header):
            logger.error(
                "webhook_signature_invalid",
                signature_present=bool(signature_header),
                body_bytes=len(raw_body),
            )
            raise WebhookVerificationError("Invalid webhook signature")

        try:
            body = json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.error("webhook_body_malformed", error=str(exc))
            raise WebhookVerificationError("Webhook body is not valid JSON") from exc

        if not isinstance(body, dict) or not isinstance(body.get("event"), str):
            raise WebhookVerificationError("Webhook body has no event type")

        return _to_event(body)


def _entity(payload: dict[str, Any], name: str) -> dict[str, Any]:
    wrapper = payload.get(name)
    if not isinstance(wrapper, dict):
        return {}
    entity = wrapper.get("entity")
    return entity if isinstance(entity, dict) else {}


def _notes(entity: dict[str, Any]) -> dict[str, str]:
    # The processor sends an empty list when no notes were attached.
    notes = entity.get("notes")
    if not isinstance(notes, dict):
        return {}
    return {str(k): str(v) for k, v in notes.items()}


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _to_event(body: dict[str, Any]) -> WebhookEvent:
    payload = body.get("payload")
    if not isinstance(payload, dict):
        payload = {}

    payment = _entity(payload, "payment")
    subscription = _entity(payload, "subscription")
    notes = _notes(subscription) or _notes(payment)

    return WebhookEvent(
        event_type=body["event"],
        payment_id=payment.get("id"),
        order_id=payment.get("order_id"),
        payment_status=payment.get("status"),
        error_description=payment.get("error_description"),
        subscription_id=subscription.get("id"),
        subscription_status=subscription.get("status"),
        plan_id=notes.get("plan_id") or subscription.get("plan_id"),
        principal_id=notes.get("principal_id"),
        current_start=_optional_int(subscription.get("current_start")),
        current_end=_optional_int(subscription.get("current_end")),
        notes=notes,
    )
