"""
Prometheus metrics module for CareSlot.

Service timings are fed by ``@BaseService.measure_operation``; the domain
counters track how gateway notifications and settlement jobs are resolved.
"""

from typing import Optional, cast

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Histogram, generate_latest

# Create a custom registry to avoid conflicts with default metrics
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "careslot_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "careslot_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "careslot_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

reconciliation_outcomes_total = Counter(
    "careslot_reconciliation_outcomes_total",
    "Gateway notifications by reconciliation outcome",
    ["outcome", "status"],  # applied | duplicate | stale | ignored | unknown
    registry=REGISTRY,
)

booking_conflicts_total = Counter(
    "careslot_booking_conflicts_total",
    "Booking writes rejected because the slot was taken",
    ["operation", "source"],  # source: precheck | store
    registry=REGISTRY,
)

settlement_jobs_total = Counter(
    "careslot_settlement_jobs_total",
    "Settlement jobs by terminal result",
    ["result"],  # succeeded | retried | failed | skipped
    registry=REGISTRY,
)

confirmations_redriven_total = Counter(
    "careslot_confirmations_redriven_total",
    "Bookings confirmed by the compensating re-drive sweep",
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Manages Prometheus metrics collection and exposure."""

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        """
        Record service operation metrics from @measure_operation decorator.

        Args:
            service: Service name (e.g., 'BookingService')
            operation: Operation/method name (e.g., 'book')
            duration: Operation duration in seconds
            status: Operation status ('success' or 'error')
            error_type: Type of error if status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()

    @staticmethod
    def inc_reconciliation_outcome(outcome: str, status: str) -> None:
        reconciliation_outcomes_total.labels(outcome=outcome, status=status).inc()

    @staticmethod
    def inc_booking_conflict(operation: str, source: str) -> None:
        booking_conflicts_total.labels(operation=operation, source=source).inc()

    @staticmethod
    def inc_settlement_job(result: str) -> None:
        settlement_jobs_total.labels(result=result).inc()

    @staticmethod
    def inc_confirmation_redriven() -> None:
        confirmations_redriven_total.inc()

    @staticmethod
    def get_metrics() -> bytes:
        """Generate Prometheus metrics in exposition format."""
        return cast(bytes, generate_latest(REGISTRY))

    @staticmethod
    def get_content_type() -> str:
        return cast(str, CONTENT_TYPE_LATEST)


# Singleton instance
prometheus_metrics = PrometheusMetrics()
