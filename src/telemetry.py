"""
Telemetry and Prometheus metrics for the prisoner finance reconciliation system.
Emits named reconciliation events and tracks run, mismatch and API metrics.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import structlog
from prometheus_client import Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)
event_logger = structlog.get_logger("telemetry")

R = TypeVar("R")

# Business Metrics
RECONCILIATION_EVENTS_TOTAL = Counter(
    'reconciliation_events_total',
    'Total telemetry events emitted',
    ['event']
)

RECONCILIATION_RUNS_TOTAL = Counter(
    'reconciliation_runs_total',
    'Total number of reconciliation report runs',
    ['report', 'status']
)

RECONCILIATION_MISMATCHES = Gauge(
    'reconciliation_mismatches',
    'Mismatches found by the latest successful report run',
    ['report']
)

# Technical Metrics
RECONCILIATION_DURATION_SECONDS = Histogram(
    'reconciliation_duration_seconds',
    'Time spent on a reconciliation report run',
    ['report'],
    buckets=[1, 5, 10, 30, 60, 300, 600, 1800, 3600]
)

API_REQUESTS_TOTAL = Counter(
    'api_requests_total',
    'Total API requests made',
    ['api', 'status']
)


class MetricsCollector:
    """Centralized metrics collection for the reconciliation system."""

    def __init__(self, port: int = 8000):
        self.port = port
        self.server_started = False

    def start_metrics_server(self):
        """Start Prometheus metrics server."""
        if not self.server_started:
            try:
                if not (1024 <= self.port <= 65535):
                    raise ValueError(f"Invalid port {self.port}. Must be between 1024-65535")

                start_http_server(self.port)
                self.server_started = True
                logger.info(f"Metrics server started on port {self.port}")
            except Exception as e:
                logger.error(f"Failed to start metrics server: {e}")

    def record_event(self, event: str):
        RECONCILIATION_EVENTS_TOTAL.labels(event=event).inc()

    def record_reconciliation_run(self, report: str, status: str, duration: float):
        """Record reconciliation run metrics."""
        RECONCILIATION_RUNS_TOTAL.labels(report=report, status=status).inc()
        RECONCILIATION_DURATION_SECONDS.labels(report=report).observe(duration)

    def record_mismatches(self, report: str, count: int):
        RECONCILIATION_MISMATCHES.labels(report=report).set(count)

    def record_api_request(self, api: str, status: str):
        API_REQUESTS_TOTAL.labels(api=api, status=status).inc()


# Global metrics collector instance
metrics = MetricsCollector()


class TelemetryClient:
    """
    Fire-and-forget sink for named reconciliation events.

    Each event is written as a structured log line and counted in Prometheus.
    Attribute values are rendered as strings. Emitting never raises, so a
    telemetry fault cannot change the outcome of a reconciliation.
    """

    def track_event(self, name: str, attributes: Optional[Dict[str, Any]] = None) -> None:
        rendered = {key: str(value) for key, value in (attributes or {}).items()}
        try:
            event_logger.info("telemetry_event", event_name=name, **rendered)
            metrics.record_event(name)
        except Exception as e:
            logger.warning(f"Failed to emit telemetry event {name}: {e}")


async def track_report(
    telemetry: TelemetryClient,
    report_name: str,
    generate: Callable[[], Awaitable[R]],
    summarise: Callable[[R], Dict[str, Any]],
) -> Optional[R]:
    """
    Run a whole report and turn its outcome into a `<report_name>-report` event.

    A failed run is logged and reported with success=false rather than raised;
    this is the only place a whole-run failure stops propagating.
    """
    start_time = time.time()
    try:
        result = await generate()
    except Exception as e:
        metrics.record_reconciliation_run(report_name, 'error', time.time() - start_time)
        telemetry.track_event(
            f"{report_name}-report",
            {"success": "false", "error": str(e)},
        )
        logger.error(f"{report_name} report failed", exc_info=True)
        return None

    summary = summarise(result)
    metrics.record_reconciliation_run(report_name, 'success', time.time() - start_time)
    if "mismatch-count" in summary:
        metrics.record_mismatches(report_name, int(summary["mismatch-count"]))
    telemetry.track_event(f"{report_name}-report", {**summary, "success": "true"})
    logger.info(f"{report_name} report completed: {summary}")
    return result
