"""
Observability Module for the Billing Pipeline

Provides:
- Structured logging with correlation IDs
- Metrics collection (jobs, fulfillment API calls, stage timings)
"""

from core.observability.metrics import (
    MetricsCollector,
    get_metrics,
    record_job_started,
    record_job_completed,
    record_job_failed,
    record_processing_time,
)

from core.observability.logging import (
    get_logger,
    configure_logging,
    CorrelationContext,
    with_correlation,
)

__all__ = [
    # Metrics
    "MetricsCollector",
    "get_metrics",
    "record_job_started",
    "record_job_completed",
    "record_job_failed",
    "record_processing_time",
    # Logging
    "get_logger",
    "configure_logging",
    "CorrelationContext",
    "with_correlation",
]
