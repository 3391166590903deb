"""
Metrics Collection with Prometheus.

Exposes reconciliation and system metrics for monitoring.
"""

import time
from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    PLATFORM = "platform"
    ENVIRONMENT = "environment"
    OUTCOME = "outcome"
    EVENT_KIND = "event_kind"
    ERROR_TYPE = "error_type"


class ReconciliationMetrics:
    """
    Centralized metrics for the subscription reconciler.

    Covers:
    - HTTP requests (rate, duration, in flight)
    - Webhook deliveries by platform and outcome
    - State transitions by event kind and outcome
    - Ledger writes and refunds
    - App Store history paging
    - Plan catalog drift (alerting)
    """

    def __init__(self) -> None:
        self.service_info = Info(
            "reconciler_service",
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
            "reconciler_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "reconciler_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "reconciler_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Webhook Metrics
        # ====================================================================
        self.webhooks_total = Counter(
            "reconciler_webhooks_total",
            "Webhook deliveries by platform and outcome",
            [MetricLabels.PLATFORM, MetricLabels.ENVIRONMENT, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Reconciliation Metrics
        # ====================================================================
        self.transitions_total = Counter(
            "reconciler_transitions_total",
            "Subscription state transitions by event kind and outcome",
            [MetricLabels.PLATFORM, MetricLabels.EVENT_KIND, MetricLabels.OUTCOME],
        )

        self.plan_not_found_total = Counter(
            "reconciler_plan_not_found_total",
            "Events rejected because the product has no plan (catalog drift)",
            [MetricLabels.PLATFORM],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.ledger_writes_total = Counter(
            "reconciler_ledger_writes_total",
            "Ledger write attempts",
            [MetricLabels.PLATFORM, MetricLabels.OUTCOME],
        )

        self.ledger_amount_minor = Histogram(
            "reconciler_ledger_amount_minor",
            "Ledger entry amounts in minor units",
            buckets=(100, 500, 1000, 2500, 5000, 10000, 25000, 50000, 100000),
        )

        self.ledger_refunds_total = Counter(
            "reconciler_ledger_refunds_total",
            "Ledger entries flipped to refunded",
            ["matched"],
        )

        # ====================================================================
        # External Call Metrics
        # ====================================================================
        self.history_pages_fetched_total = Counter(
            "reconciler_history_pages_fetched_total",
            "App Store transaction history pages fetched",
        )

        self.external_call_duration_seconds = Histogram(
            "reconciler_external_call_duration_seconds",
            "Store API call duration in seconds",
            [MetricLabels.OPERATION],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "reconciler_errors_total",
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

    def record_webhook(self, platform: str, environment: str, outcome: str) -> None:
        """Record one webhook delivery."""
        self.webhooks_total.labels(
            platform=platform, environment=environment, outcome=outcome
        ).inc()

    def record_transition(self, platform: str, event_kind: str, outcome: str) -> None:
        """Record a reconciliation attempt."""
        self.transitions_total.labels(
            platform=platform, event_kind=event_kind, outcome=outcome
        ).inc()

    def record_plan_not_found(self, platform: str) -> None:
        self.plan_not_found_total.labels(platform=platform).inc()

    def record_ledger_write(self, platform: str, inserted: bool, amount_minor: int) -> None:
        """Record a ledger insert attempt; duplicates are counted, not observed."""
        outcome = "inserted" if inserted else "duplicate"
        self.ledger_writes_total.labels(platform=platform, outcome=outcome).inc()
        if inserted:
            self.ledger_amount_minor.observe(amount_minor)

    def record_ledger_refund(self, matched: bool) -> None:
        self.ledger_refunds_total.labels(matched=str(matched)).inc()

    def record_external_call(self, operation: str, duration: float) -> None:
        self.external_call_duration_seconds.labels(operation=operation).observe(duration)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = ReconciliationMetrics()


class track_external_call:
    """
    Context manager timing one outbound store API call.

    Usage:
        with track_external_call("apple_history_page"):
            response = await client.get(...)
    """

    def __init__(self, operation: str) -> None:
        self.operation = operation
        self.start_time: float = 0.0

    def __enter__(self) -> "track_external_call":
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        metrics.record_external_call(self.operation, time.time() - self.start_time)
