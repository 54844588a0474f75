"""
Prometheus Metrics for Observability

Tracks generation calls, per-item latency and run outcomes.
Exposes /metrics endpoint for Prometheus scraping.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# External service calls
generation_calls_total = Counter(
    "ungrid_generation_calls_total",
    "Total number of calls to the generation/detection service",
    labelnames=["operation", "outcome"]
)

# Per-item latency
item_latency_seconds = Histogram(
    "ungrid_item_latency_seconds",
    "Time spent processing one panel, job or chain step",
    labelnames=["orchestrator", "outcome"],
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

# Run outcomes
runs_total = Counter(
    "ungrid_runs_total",
    "Total number of orchestrator runs",
    labelnames=["orchestrator", "outcome"]
)

# Active runs
active_runs_gauge = Gauge(
    "ungrid_active_runs",
    "Number of currently active orchestrator runs"
)

# API Request Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Application Info
app_info = Info(
    "ungrid_app",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


@contextmanager
def track_item_latency(orchestrator: str):
    """
    Context manager to track how long one work item takes.

    The body may set ``outcome["value"]`` to label the observation.

    Usage:
        with track_item_latency("panels") as outcome:
            ...
            outcome["value"] = "success"
    """
    start = time.time()
    outcome = {"value": "success"}
    try:
        yield outcome
    except Exception:
        if outcome["value"] == "success":
            outcome["value"] = "error"
        raise
    finally:
        duration = time.time() - start
        item_latency_seconds.labels(orchestrator=orchestrator, outcome=outcome["value"]).observe(duration)


def record_generation_call(operation: str, outcome: str):
    """Record a call to the external service."""
    generation_calls_total.labels(operation=operation, outcome=outcome).inc()


def record_run_started():
    active_runs_gauge.inc()


def record_run_finished(orchestrator: str, outcome: str):
    """Record the end of an orchestrator run."""
    runs_total.labels(orchestrator=orchestrator, outcome=outcome).inc()
    active_runs_gauge.dec()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
