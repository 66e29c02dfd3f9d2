"""Unit tests for observability: sync metrics, HTTP metrics and request logging.

Tests cover:
- track_sync outcome counting (success, explicit outcome, failure)
- record_tracker_request counter labels
- MetricsMiddleware labelling requests by route template, not roadmap id
- /metrics exposition and X-Request-ID on the full application
"""

from __future__ import annotations

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from prometheus_client import REGISTRY

from src.app.core.monitoring import (
    MetricsMiddleware,
    record_tracker_request,
    track_sync,
)
from src.app.main import create_app


def _sample(name: str, labels: dict[str, str]) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


# ── track_sync ───────────────────────────────────────────────────────────────


class TestTrackSync:
    """Tests for the track_sync context manager."""

    def test_defaults_to_success(self):
        before = _sample("datasource_sync_total", {"outcome": "success"})
        with track_sync():
            pass
        assert _sample("datasource_sync_total", {"outcome": "success"}) == before + 1

    def test_explicit_outcome(self):
        before = _sample("datasource_sync_total", {"outcome": "fallback"})
        with track_sync() as tracker:
            tracker["outcome"] = "fallback"
        assert _sample("datasource_sync_total", {"outcome": "fallback"}) == before + 1

    def test_exception_counts_as_failed(self):
        before = _sample("datasource_sync_total", {"outcome": "failed"})
        with pytest.raises(RuntimeError):
            with track_sync():
                raise RuntimeError("tracker down")
        assert _sample("datasource_sync_total", {"outcome": "failed"}) == before + 1

    def test_duration_observed(self):
        before = _sample("datasource_sync_duration_seconds_count", {})
        with track_sync():
            pass
        assert _sample("datasource_sync_duration_seconds_count", {}) == before + 1


def test_record_tracker_request_labels():
    """Status codes and failure kinds share one status label."""
    before = _sample("tracker_requests_total", {"operation": "wiql", "status": "503"})
    record_tracker_request("wiql", 503)
    assert _sample("tracker_requests_total", {"operation": "wiql", "status": "503"}) == before + 1


# ── HTTP Metrics & Logging ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_metrics_middleware_uses_route_template():
    """Two roadmap ids land in one endpoint label."""
    app = FastAPI()
    app.add_middleware(MetricsMiddleware)

    @app.get("/api/v1/roadmaps/{roadmap_id}/ping")
    async def ping(roadmap_id: str):
        return {"roadmap_id": roadmap_id}

    labels = {
        "method": "GET",
        "endpoint": "/api/v1/roadmaps/{roadmap_id}/ping",
        "status_code": "200",
    }
    before = _sample("http_requests_total", labels)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        await client.get("/api/v1/roadmaps/a/ping")
        await client.get("/api/v1/roadmaps/b/ping")

    assert _sample("http_requests_total", labels) == before + 2


@pytest.mark.asyncio
async def test_app_serves_metrics_and_request_ids():
    """The assembled app exposes /metrics and tags responses with X-Request-ID."""
    app = create_app()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        health = await client.get("/health")
        metrics = await client.get("/metrics")

    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert health.headers["X-Request-ID"]
    assert metrics.status_code == 200
    assert "datasource_sync_total" in metrics.text
