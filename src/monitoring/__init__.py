"""
Monitoring for ShieldRoute.

- Metrics collection (counters, gauges, histograms) with Prometheus export
- Structured logging with JSON output and redaction
- Flask request middleware

Usage:
    from monitoring import metrics, get_logger

    metrics.increment("events_total", labels={"kind": "RefundIssued"})
    logger = get_logger(__name__)
    logger.info("Refund paid", extra={"request_id": 7})
"""

from monitoring.logging import LoggingContext, configure_logging, get_logger
from monitoring.metrics import MetricsCollector, metrics
from monitoring.middleware import counted, setup_request_logging, timed

__all__ = [
    "LoggingContext",
    "MetricsCollector",
    "metrics",
    "get_logger",
    "configure_logging",
    "setup_request_logging",
    "timed",
    "counted",
]
