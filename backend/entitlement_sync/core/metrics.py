"""Prometheus metrics for HTTP traffic and webhook reconciliation."""

import os

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    multiprocess,
)

REGISTRY = CollectorRegistry()

# Running under gunicorn with several workers
if "PROMETHEUS_MULTIPROC_DIR" in os.environ or "prometheus_multiproc_dir" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


APP_INFO = Info(
    "entitlement_sync_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# HTTP Request Metrics
# ============================================
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests currently in progress",
    ["method", "endpoint"],
    registry=REGISTRY,
)


# ============================================
# Webhook / Reconciliation Metrics
# ============================================
WEBHOOK_EVENTS_TOTAL = Counter(
    "webhook_events_total",
    "Webhook deliveries by final outcome",
    ["outcome"],
    registry=REGISTRY,
)

RECONCILE_CONFLICTS_TOTAL = Counter(
    "reconcile_conflicts_total",
    "Compare-and-write conflicts hit while applying billing events",
    registry=REGISTRY,
)

ENTITLEMENT_TRANSITIONS_TOTAL = Counter(
    "entitlement_transitions_total",
    "Applied entitlement writes by status before and after",
    ["from_status", "to_status"],
    registry=REGISTRY,
)

RECONCILE_DURATION_SECONDS = Histogram(
    "reconcile_duration_seconds",
    "Time spent applying one billing event",
    ["kind"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
    registry=REGISTRY,
)


def set_app_info(version: str, environment: str) -> None:
    APP_INFO.info({"version": version, "environment": environment})


def record_webhook_outcome(outcome: str) -> None:
    WEBHOOK_EVENTS_TOTAL.labels(outcome=outcome).inc()


def get_metrics() -> bytes:
    """Render all metrics in the Prometheus text format."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
