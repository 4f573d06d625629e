"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from keymarket.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class MarketMetrics:
    """
    Centralized metrics for the order engine.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Order lifecycle transitions
    - Reconciliation outcomes, including the paid-but-unfulfillable alarm
    - Inventory assignment and stale-key deactivation
    - Sweeper passes
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "keymarket_service",
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
            "keymarket_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "keymarket_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "keymarket_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.METHOD],
        )

        # ====================================================================
        # Order Lifecycle Metrics
        # ====================================================================
        self.orders_created_total = Counter(
            "keymarket_orders_created_total",
            "Total orders created",
        )

        self.orders_completed_total = Counter(
            "keymarket_orders_completed_total",
            "Total orders completed (key delivered)",
        )

        self.orders_expired_total = Counter(
            "keymarket_orders_expired_total",
            "Total pending orders expired",
        )

        self.order_refunds_total = Counter(
            "keymarket_order_refunds_total",
            "Total orders refunded",
        )

        self.disputes_opened_total = Counter(
            "keymarket_disputes_opened_total",
            "Total disputes opened",
        )

        self.disputes_resolved_total = Counter(
            "keymarket_disputes_resolved_total",
            "Total disputes resolved by verdict",
            ["verdict"],
        )

        self.order_total_amount = Histogram(
            "keymarket_order_total_amount",
            "Completed order totals in settlement currency",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 25.0),
        )

        # ====================================================================
        # Reconciliation Metrics
        # ====================================================================
        self.reconciliation_events_total = Counter(
            "keymarket_reconciliation_events_total",
            "Payment notifications by outcome",
            [MetricLabels.OUTCOME],
        )

        self.fulfillment_failures_total = Counter(
            "keymarket_fulfillment_failures_total",
            "Payments received for orders with no assignable key",
        )

        self.amount_mismatches_total = Counter(
            "keymarket_amount_mismatches_total",
            "Payment notifications whose amount did not match the order",
        )

        self.reconciliation_duration_seconds = Histogram(
            "keymarket_reconciliation_duration_seconds",
            "Payment notification handling duration in seconds",
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
        )

        # ====================================================================
        # Inventory Metrics
        # ====================================================================
        self.keys_assigned_total = Counter(
            "keymarket_keys_assigned_total",
            "Total license keys assigned to orders",
        )

        self.out_of_stock_total = Counter(
            "keymarket_out_of_stock_total",
            "Assignment attempts that found no available key",
        )

        self.keys_released_total = Counter(
            "keymarket_keys_released_total",
            "Total license keys released by refunds",
        )

        self.keys_deactivated_total = Counter(
            "keymarket_keys_deactivated_total",
            "Total license keys deactivated after expiry",
        )

        self.keys_imported_total = Counter(
            "keymarket_keys_imported_total",
            "Bulk key import results",
            ["result"],
        )

        # ====================================================================
        # Sweeper Metrics
        # ====================================================================
        self.sweep_duration_seconds = Histogram(
            "keymarket_sweep_duration_seconds",
            "Sweeper pass duration in seconds",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.orders_settled_total = Counter(
            "keymarket_orders_settled_total",
            "Completed orders whose dispute window closed without a dispute",
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "keymarket_errors_total",
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

    def record_reconciliation(self, outcome: str, duration: float) -> None:
        """Record a handled payment notification."""
        self.reconciliation_events_total.labels(outcome=outcome).inc()
        self.reconciliation_duration_seconds.observe(duration)

    def record_key_import(self, added: int, duplicates: int, invalid: int) -> None:
        """Record bulk key import results."""
        self.keys_imported_total.labels(result="added").inc(added)
        self.keys_imported_total.labels(result="duplicate").inc(duplicates)
        self.keys_imported_total.labels(result="invalid").inc(invalid)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = MarketMetrics()
