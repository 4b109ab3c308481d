"""
Razorpay Client - PaymentProcessor implementation over the Razorpay REST API.

Every call carries an explicit timeout. Timeouts, transport failures and 5xx
responses surface as retryable UpstreamError; 4xx responses are not retryable.
"""

import time
from typing import Any

import httpx

from paygate.exceptions import UpstreamError
from paygate.observability.logging import get_logger
from paygate.observability.metrics import metrics
from paygate.services.payment_processor import OrderRequest, OrderResult, PaymentDetails

logger = get_logger(__name__)


class RazorpayClient:
    """Razorpay orders/payments client (implements PaymentProcessor)."""

    ORDERS_PATH = "/v1/orders"
    PAYMENTS_PATH = "/v1/payments"

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str = "https://api.razorpay.com",
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize Razorpay client.

        Args:
            key_id: Razorpay key id (public, also sent to checkout clients)
            key_secret: Razorpay key secret (basic auth password)
            base_url: API base URL
            timeout_seconds: Per-request timeout
            http_client: Optional preconfigured client (tests inject a MockTransport)
        """
        if not key_id or not key_secret:
            raise ValueError("Razorpay key id and key secret are required")

        self._key_id = key_id
        self._key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    @property
    def key_id(self) -> str:
        return self._key_id

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                auth=(self._key_id, self._key_secret),
                timeout=httpx.Timeout(self.timeout_seconds),
            )
        return self._http_client

    async def create_order(self, request: OrderRequest) -> OrderResult:
        """Create an order the client will pay against."""
        body = {
            "amount": request.amount_minor,
            "currency": request.currency,
            "receipt": request.receipt,
            "payment_capture": 1,
            "notes": {
                "principal_id": request.principal_id,
                "resource_id": request.resource_id,
            },
        }
        data = await self._request("create_order", "POST", self.ORDERS_PATH, json=body)

        try:
            result = OrderResult(
                order_id=str(data["id"]),
                amount_minor=int(data["amount"]),
                currency=str(data["currency"]),
                receipt=data.get("receipt"),
                status=str(data.get("status", "created")),
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.error("processor_order_malformed", error=str(e))
            raise UpstreamError("malformed order response", retryable=False) from e

        logger.info(
            "processor_order_created",
            order_id=result.order_id,
            amount_minor=result.amount_minor,
            currency=result.currency,
            resource_id=request.resource_id,
        )
        return result

    async def fetch_payment(self, payment_id: str) -> PaymentDetails:
        """Fetch payment status and method from the processor."""
        data = await self._request("fetch_payment", "GET", f"{self.PAYMENTS_PATH}/{payment_id}")

        try:
            return PaymentDetails(
                payment_id=str(data["id"]),
                order_id=data.get("order_id"),
                status=str(data["status"]),
                amount_minor=int(data["amount"]),
                currency=str(data["currency"]),
                method=data.get("method"),
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.error("processor_payment_malformed", payment_id=payment_id, error=str(e))
            raise UpstreamError("malformed payment response", retryable=False) from e

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _request(
        self, operation: str, method: str, path: str, json: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Perform one processor call, translating failures to UpstreamError."""
        start = time.perf_counter()
        outcome = "success"
        try:
            response = await self.http_client.request(method, path, json=json)
            response.raise_for_status()
            payload = response.json()
            if not isinstance(payload, dict):
                outcome = "malformed"
                raise UpstreamError(f"{operation}: unexpected response body", retryable=False)
            return payload
        except httpx.TimeoutException as e:
            outcome = "timeout"
            logger.warning("processor_timeout", operation=operation, error=str(e))
            raise UpstreamError(f"{operation}: processor timed out") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            outcome = f"http_{status}"
            retryable = status >= 500 or status == 429
            logger.error(
                "processor_http_error",
                operation=operation,
                status=status,
                text=e.response.text[:500],
                retryable=retryable,
            )
            raise UpstreamError(f"{operation}: processor returned {status}", retryable=retryable) from e
        except httpx.TransportError as e:
            outcome = "transport_error"
            logger.warning("processor_transport_error", operation=operation, error=str(e))
            raise UpstreamError(f"{operation}: processor unreachable") from e
        except ValueError as e:
            outcome = "malformed"
            logger.error("processor_invalid_json", operation=operation, error=str(e))
            raise UpstreamError(f"{operation}: invalid JSON from processor", retryable=False) from e
        finally:
            metrics.record_processor_call(operation, outcome, time.perf_counter() - start)
