"""Prometheus metric helpers."""
from __future__ import annotations

from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "messenger_requests_total",
    "HTTP requests processed by the reference store",
    ("method", "path", "status"),
)

REQUEST_LATENCY = Histogram(
    "messenger_request_latency_seconds",
    "Latency of HTTP requests processed by the reference store",
    ("method", "path"),
    buckets=(
        0.005,
        0.01,
        0.025,
        0.05,
        0.1,
        0.25,
        0.5,
        1.0,
        2.5,
        5.0,
    ),
)

SYNC_EVENTS = Counter(
    "messenger_sync_events_total",
    "Updates processed by the conversation sync engine",
    ("source", "outcome"),
)

FETCH_FAILURES = Counter(
    "messenger_fetch_failures_total",
    "Store reads that failed inside the sync client",
    ("operation",),
)


def record_request(method: str, path: str, status_code: int, duration: float) -> None:
    """Record counters and histograms for a processed HTTP request."""

    REQUEST_COUNT.labels(method, path, str(status_code)).inc()
    REQUEST_LATENCY.labels(method, path).observe(duration)


def record_sync_event(source: str, outcome: str) -> None:
    """Count a merge attempt by its source (insert, update, poll, ...) and outcome."""

    SYNC_EVENTS.labels(source, outcome).inc()


def record_fetch_failure(operation: str) -> None:
    FETCH_FAILURES.labels(operation).inc()
