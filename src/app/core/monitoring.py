"""Prometheus metrics for HTTP requests and Pipedrive sync runs.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- Sync counters/histograms recorded by the sync engine
- get_metrics_response(): FastAPI route handler body for /metrics
"""

from __future__ import annotations

import time

from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

sync_runs_total = Counter(
    "pipedrive_sync_runs_total",
    "Total Pipedrive sync runs by type and final status",
    ["sync_type", "status"],
)

sync_contacts_total = Counter(
    "pipedrive_sync_contacts_total",
    "Contacts handled by sync runs, by outcome",
    ["outcome"],
)

sync_errors_total = Counter(
    "pipedrive_sync_errors_total",
    "Classified sync errors",
    ["kind", "recoverable"],
)

sync_batch_duration_seconds = Histogram(
    "pipedrive_sync_batch_duration_seconds",
    "Duration of one sync batch (remote page fetch)",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

sync_batch_timeouts_total = Counter(
    "pipedrive_sync_batch_timeouts_total",
    "Sync batches that exceeded their deadline",
)


def record_sync_contacts(created: int, updated: int, failed: int, unchanged: int) -> None:
    """Add one run's contact outcomes to the contacts counter."""
    for outcome, count in (
        ("created", created),
        ("updated", updated),
        ("failed", failed),
        ("unchanged", unchanged),
    ):
        if count:
            sync_contacts_total.labels(outcome=outcome).inc(count)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        # Route path pattern (set once routing matched) keeps cardinality bounded
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
