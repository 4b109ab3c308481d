"""
Metrics Collection with Prometheus.

Exposes access-control and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from paygate.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    TRANSITION = "transition"
    ACCESS_TYPE = "access_type"
    EVENT = "event"
    ERROR_TYPE = "error_type"


class AccessMetrics:
    """
    Centralized metrics for the Paygate access API.

    Covers:
    - HTTP requests (rate, duration, in flight)
    - Ledger transitions (which transition, whether this call won it)
    - Access decisions by kind
    - Webhooks by event and outcome
    - Rate-limit rejections
    - Sweeper passes
    - Payment processor calls
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "paygate_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "paygate_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "paygate_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "paygate_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.METHOD],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.purchase_transitions_total = Counter(
            "paygate_purchase_transitions_total",
            "Purchase ledger transitions attempted",
            [MetricLabels.TRANSITION, MetricLabels.OUTCOME],
        )

        self.purchase_amount_minor = Histogram(
            "paygate_purchase_amount_minor",
            "Completed purchase amounts in minor units",
            buckets=(0, 100, 500, 1000, 2500, 5000, 10000, 25000, 50000, 100000),
        )

        # ====================================================================
        # Access Metrics
        # ====================================================================
        self.access_decisions_total = Counter(
            "paygate_access_decisions_total",
            "Access decisions by resulting access type",
            [MetricLabels.ACCESS_TYPE, "expired"],
        )

        self.rate_limit_rejections_total = Counter(
            "paygate_rate_limit_rejections_total",
            "Requests rejected by the reveal rate limiter",
        )

        # ====================================================================
        # Webhook Metrics
        # ====================================================================
        self.webhooks_total = Counter(
            "paygate_webhooks_total",
            "Processor webhooks received",
            [MetricLabels.EVENT, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Sweeper Metrics
        # ====================================================================
        self.sweeper_runs_total = Counter(
            "paygate_sweeper_runs_total",
            "Expiry sweeper passes",
            ["success"],
        )

        self.sweeper_expired_total = Counter(
            "paygate_sweeper_expired_total",
            "Records expired by the sweeper",
            ["kind"],
        )

        # ====================================================================
        # Payment Processor Metrics
        # ====================================================================
        self.processor_request_duration_seconds = Histogram(
            "paygate_processor_request_duration_seconds",
            "Payment processor call duration in seconds",
            [MetricLabels.OPERATION, MetricLabels.OUTCOME],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "paygate_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_transition(self, transition: str, applied: bool) -> None:
        """Record a ledger transition attempt; applied=False means another caller won."""
        self.purchase_transitions_total.labels(
            transition=transition, outcome="applied" if applied else "noop"
        ).inc()

    def record_completed_amount(self, amount_minor: int) -> None:
        """Record the amount of a freshly completed purchase."""
        self.purchase_amount_minor.observe(amount_minor)

    def record_access_decision(self, access_type: str, expired: bool = False) -> None:
        """Record access decision metrics."""
        self.access_decisions_total.labels(access_type=access_type, expired=str(expired)).inc()

    def record_rate_limited(self) -> None:
        """Record a rate-limit rejection."""
        self.rate_limit_rejections_total.inc()

    def record_webhook(self, event: str, outcome: str) -> None:
        """Record webhook handling outcome."""
        self.webhooks_total.labels(event=event, outcome=outcome).inc()

    def record_sweep(self, success: bool, expired_grants: int = 0, expired_subscriptions: int = 0) -> None:
        """Record one sweeper pass."""
        self.sweeper_runs_total.labels(success=str(success)).inc()
        if expired_grants:
            self.sweeper_expired_total.labels(kind="grant").inc(expired_grants)
        if expired_subscriptions:
            self.sweeper_expired_total.labels(kind="subscription").inc(expired_subscriptions)

    def record_processor_call(self, operation: str, outcome: str, duration: float) -> None:
        """Record payment processor call metrics."""
        self.processor_request_duration_seconds.labels(
            operation=operation, outcome=outcome
        ).observe(duration)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = AccessMetrics()


