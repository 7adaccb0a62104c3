"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

import time
from enum import Enum

from prometheus_client import Counter, Histogram, Info

from commerce.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    OPERATION = "operation"
    RESOURCE = "resource"
    STEP = "step"
    RESULT = "result"
    ERROR_TYPE = "error_type"


class CommerceMetrics:
    """
    Centralized metrics for the commerce core.

    Minimum viable metrics covering:
    - Balance operations (charges, deductions, refunds)
    - Stock mutations and optimistic retries
    - Coupon issuance outcomes and expiry sweeps
    - Orders, payments and saga compensations
    - Write verification and errors
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "commerce_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.service_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # Operation Timing
        # ====================================================================
        self.operation_duration_seconds = Histogram(
            "commerce_operation_duration_seconds",
            "Service operation duration in seconds",
            [MetricLabels.OPERATION],
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
        )

        # ====================================================================
        # Balance Metrics
        # ====================================================================
        self.balance_operations_total = Counter(
            "commerce_balance_operations_total",
            "Total balance mutations attempted",
            [MetricLabels.OPERATION, "success", MetricLabels.ERROR_TYPE],
        )

        self.balance_amount = Histogram(
            "commerce_balance_amount",
            "Amounts moved by successful balance mutations",
            [MetricLabels.OPERATION],
            buckets=(1000, 5000, 10000, 50000, 100000, 500000, 1000000, 5000000),
        )

        # ====================================================================
        # Inventory Metrics
        # ====================================================================
        self.stock_operations_total = Counter(
            "commerce_stock_operations_total",
            "Total stock mutations attempted",
            [MetricLabels.OPERATION, "success"],
        )

        self.optimistic_retries_total = Counter(
            "commerce_optimistic_retries_total",
            "Version conflicts that triggered a retry",
            [MetricLabels.RESOURCE],
        )

        # ====================================================================
        # Coupon Metrics
        # ====================================================================
        self.coupon_issuance_total = Counter(
            "commerce_coupon_issuance_total",
            "Coupon issuance attempts by outcome",
            [MetricLabels.RESULT],
        )

        self.coupons_expired_total = Counter(
            "commerce_coupons_expired_total",
            "Coupons moved to EXPIRED by the sweeper",
        )

        # ====================================================================
        # Order Metrics
        # ====================================================================
        self.orders_created_total = Counter(
            "commerce_orders_created_total",
            "Total orders created",
            ["with_coupon"],
        )

        self.payments_total = Counter(
            "commerce_payments_total",
            "Payment attempts by outcome",
            [MetricLabels.RESULT, MetricLabels.ERROR_TYPE],
        )

        self.compensations_total = Counter(
            "commerce_compensations_total",
            "Saga compensation actions by step and outcome",
            [MetricLabels.STEP, "success"],
        )

        # ====================================================================
        # Database Metrics
        # ====================================================================
        self.db_write_verifications_total = Counter(
            "commerce_db_write_verifications_total",
            "Total write verification checks",
            ["success"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "commerce_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_balance_operation(
        self, operation: str, success: bool, amount: int, error_type: str | None = None
    ) -> None:
        """Record a balance charge, deduction or refund."""
        self.balance_operations_total.labels(
            operation=operation, success=str(success), error_type=error_type or "none"
        ).inc()
        if success:
            self.balance_amount.labels(operation=operation).observe(amount)

    def record_stock_operation(self, operation: str, success: bool) -> None:
        """Record a stock decrease or restore."""
        self.stock_operations_total.labels(operation=operation, success=str(success)).inc()

    def record_optimistic_retry(self, resource: str) -> None:
        """Record a version conflict that is about to be retried."""
        self.optimistic_retries_total.labels(resource=resource).inc()

    def record_coupon_issuance(self, result: str) -> None:
        """Record a coupon issuance outcome ("issued" or an error kind)."""
        self.coupon_issuance_total.labels(result=result).inc()

    def record_payment(self, result: str, error_type: str | None = None) -> None:
        """Record a payment outcome."""
        self.payments_total.labels(result=result, error_type=error_type or "none").inc()

    def record_compensation(self, step: str, success: bool) -> None:
        """Record one compensation action."""
        self.compensations_total.labels(step=step, success=str(success)).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = CommerceMetrics()


class track_operation:
    """
    Context manager for timing a service operation.

    Usage:
        with track_operation("process_payment"):
            ...
    """

    def __init__(self, operation: str) -> None:
        self.operation = operation
        self.start_time: float = 0.0

    def __enter__(self) -> "track_operation":
        """Start tracking."""
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: object) -> None:
        """Record duration and, on failure, the error type."""
        duration = time.perf_counter() - self.start_time
        metrics.operation_duration_seconds.labels(operation=self.operation).observe(duration)
        if exc_type is not None:
            metrics.record_error(exc_type.__name__, self.operation)
