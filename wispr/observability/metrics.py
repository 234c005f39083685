"""
Metrics Collection with Prometheus.

Exposes business and system metrics for the hints API.
"""

import time
from enum import StrEnum

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, Info, generate_latest

from wispr.config import settings


class MetricLabels(StrEnum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    SOURCE = "source"
    ERROR_TYPE = "error_type"


class HintsMetrics:
    """
    Centralized metrics for the hints API.

    Covers:
    - HTTP requests (rate, duration, in-flight)
    - Hint redemptions (by pool and outcome, AI latency)
    - Invoices (issuance outcome, gateway latency)
    - Webhook deliveries (by outcome)
    - Ledger transaction conflicts
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info("hints_service", "Service information")
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
            "hints_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "hints_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.http_requests_in_progress = Gauge(
            "hints_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Hint Redemption Metrics
        # ====================================================================
        self.hint_redemptions_total = Counter(
            "hints_redemptions_total",
            "Hint redemption attempts",
            [MetricLabels.SOURCE, MetricLabels.OUTCOME],
        )

        self.hint_generation_duration_seconds = Histogram(
            "hints_generation_duration_seconds",
            "AI hint generation duration in seconds",
            buckets=(0.25, 0.5, 1.0, 2.0, 4.0, 8.0, 15.0, 30.0),
        )

        # ====================================================================
        # Invoice Metrics
        # ====================================================================
        self.invoices_total = Counter(
            "hints_invoices_total",
            "Invoice issuance attempts",
            [MetricLabels.OUTCOME],
        )

        self.gateway_request_duration_seconds = Histogram(
            "hints_gateway_request_duration_seconds",
            "Payment gateway call duration in seconds",
            [MetricLabels.OPERATION],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0),
        )

        self.bonus_hints_credited_total = Counter(
            "hints_bonus_credited_total",
            "Bonus hints credited from paid invoices",
        )

        # ====================================================================
        # Webhook Metrics
        # ====================================================================
        self.webhook_deliveries_total = Counter(
            "hints_webhook_deliveries_total",
            "Payment webhook deliveries",
            [MetricLabels.METHOD, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.ledger_conflicts_total = Counter(
            "hints_ledger_conflicts_total",
            "Ledger transactions retried after a concurrent write",
            [MetricLabels.OPERATION],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "hints_errors_total",
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

    def record_hint_redemption(self, outcome: str, source: str | None = None) -> None:
        """Record a redemption outcome (success, insufficient, generation_failed, ...)."""
        self.hint_redemptions_total.labels(source=source or "none", outcome=outcome).inc()

    def record_hint_generation(self, duration: float) -> None:
        self.hint_generation_duration_seconds.observe(duration)

    def record_invoice(self, outcome: str) -> None:
        """Record invoice issuance outcome (issued, rejected, orphaned, ...)."""
        self.invoices_total.labels(outcome=outcome).inc()

    def record_gateway_request(self, operation: str, duration: float) -> None:
        self.gateway_request_duration_seconds.labels(operation=operation).observe(duration)

    def record_bonus_credit(self, num_hints: int) -> None:
        self.bonus_hints_credited_total.inc(num_hints)

    def record_webhook(self, method: str, outcome: str) -> None:
        """Record a webhook delivery outcome (paid, ignored, not_found, ...)."""
        self.webhook_deliveries_total.labels(method=method, outcome=outcome).inc()

    def record_ledger_conflict(self, operation: str) -> None:
        self.ledger_conflicts_total.labels(operation=operation).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = HintsMetrics()


class track_http_request:
    """
    Context manager for tracking HTTP requests.

    Usage:
        with track_http_request("/v1/hints/redeem", "POST") as tracker:
            # ... process request
            tracker.set_status_code(200)
    """

    def __init__(self, endpoint: str, method: str) -> None:
        self.endpoint = endpoint
        self.method = method
        self.status_code = 200
        self.start_time: float = 0.0

    def set_status_code(self, status_code: int) -> None:
        """Set the response status code."""
        self.status_code = status_code

    def __enter__(self) -> "track_http_request":
        self.start_time = time.perf_counter()
        metrics.http_requests_in_progress.labels(
            endpoint=self.endpoint, method=self.method
        ).inc()
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        duration = time.perf_counter() - self.start_time
        if exc_type is not None:
            self.status_code = 500
        metrics.record_http_request(self.endpoint, self.method, self.status_code, duration)
        metrics.http_requests_in_progress.labels(
            endpoint=self.endpoint, method=self.method
        ).dec()


def render_metrics() -> bytes:
    """Prometheus exposition of the default registry."""
    return generate_latest(REGISTRY)
