"""Prometheus metrics for the HTTP surface and the datasource sync engine.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- track_sync(): Context manager recording sync outcome and duration
- record_tracker_request(): Counter helper for outbound tracker calls
- get_metrics_response(): FastAPI route handler body for /metrics
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

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

# ── Datasource Sync Metrics ──────────────────────────────────────────────────

datasource_sync_total = Counter(
    "datasource_sync_total",
    "Datasource item requests by outcome",
    ["outcome"],  # cache_hit | success | fallback | failed
)

datasource_sync_duration_seconds = Histogram(
    "datasource_sync_duration_seconds",
    "Duration of live syncs against the work tracker",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

tracker_requests_total = Counter(
    "tracker_requests_total",
    "Outbound work tracker API calls",
    ["operation", "status"],
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Uses the matched route pattern as the endpoint label so roadmap ids do
    not explode label cardinality. Skips the /metrics endpoint itself.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or request.url.path

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


# ── Sync Metrics Helpers ─────────────────────────────────────────────────────


def record_sync_outcome(outcome: str) -> None:
    datasource_sync_total.labels(outcome=outcome).inc()


@contextmanager
def track_sync() -> Iterator[dict[str, Any]]:
    """Time one live sync and count its outcome.

    Usage:
        with track_sync() as tracker:
            outcome = await fetch(...)
            tracker["outcome"] = "success"

    The outcome defaults to "failed" when the block raises and no outcome
    was set.
    """
    tracker: dict[str, Any] = {"outcome": None}
    start_time = time.perf_counter()
    try:
        yield tracker
    except Exception:
        if tracker["outcome"] is None:
            tracker["outcome"] = "failed"
        raise
    finally:
        datasource_sync_duration_seconds.observe(time.perf_counter() - start_time)
        record_sync_outcome(tracker["outcome"] or "success")


def record_tracker_request(operation: str, status: int | str) -> None:
    tracker_requests_total.labels(operation=operation, status=str(status)).inc()


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
