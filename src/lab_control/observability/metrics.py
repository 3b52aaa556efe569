"""Prometheus metrics for the lab control plane.

HTTP metrics are recorded by ``MetricsMiddleware``; lifecycle metrics by
the session orchestrator and the expiry sweeper.

Usage::

    from lab_control.observability.metrics import LAB_STARTS_TOTAL

    LAB_STARTS_TOTAL.labels(outcome="created").inc()
"""

from __future__ import annotations

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

# ---------------------------------------------------------------------------
# HTTP request metrics
# ---------------------------------------------------------------------------

HTTP_REQUESTS_TOTAL = Counter(
    "http_server_requests_total",
    "Total HTTP requests by method, path pattern, and status code.",
    labelnames=["method", "path", "status"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_server_request_duration_seconds",
    "HTTP request latency in seconds.",
    labelnames=["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 120.0, 300.0),
    registry=REGISTRY,
)

HTTP_REQUESTS_IN_FLIGHT = Gauge(
    "http_server_requests_in_flight",
    "Number of HTTP requests currently being processed.",
    registry=REGISTRY,
)

# ---------------------------------------------------------------------------
# Lab session lifecycle
# ---------------------------------------------------------------------------

LAB_STARTS_TOTAL = Counter(
    "lab_session_starts_total",
    "Start requests by outcome (created, existing, or an error code).",
    labelnames=["outcome"],
    registry=REGISTRY,
)

LAB_PROVISION_DURATION_SECONDS = Histogram(
    "lab_session_provision_duration_seconds",
    "Infrastructure provisioning latency by outcome.",
    labelnames=["outcome"],
    buckets=(1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 180.0, 240.0, 300.0, 600.0),
    registry=REGISTRY,
)

LAB_DESTROYS_TOTAL = Counter(
    "lab_session_destroys_total",
    "Destroy attempts by declarative outcome, fallback use and cleanliness.",
    labelnames=["declarative", "fallback", "clean"],
    registry=REGISTRY,
)

LAB_SESSIONS_ENDED_TOTAL = Counter(
    "lab_sessions_ended_total",
    "Sessions moved to ENDED by reason.",
    labelnames=["reason"],
    registry=REGISTRY,
)

LAB_LIVE_SESSIONS = Gauge(
    "lab_sessions_live",
    "PENDING/ACTIVE sessions seen at the last capacity check or sweep.",
    registry=REGISTRY,
)

LAB_CONSOLE_URLS_TOTAL = Counter(
    "lab_console_urls_total",
    "Console sign-in URL generation attempts by outcome.",
    labelnames=["outcome"],
    registry=REGISTRY,
)

# ---------------------------------------------------------------------------
# Audit event metrics
# ---------------------------------------------------------------------------

AUDIT_EVENTS_EMITTED = Counter(
    "lab_audit_events_total",
    "Audit events emitted by action type.",
    labelnames=["action"],
    registry=REGISTRY,
)


def metrics_text() -> tuple[bytes, str]:
    """Generate Prometheus exposition text and content-type header."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
