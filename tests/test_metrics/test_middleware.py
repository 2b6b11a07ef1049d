"""Tests for the Prometheus request middleware."""

from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry

from account_guard.metrics.middleware import PrometheusMiddleware


@pytest.fixture
def _app_with_metrics() -> tuple[FastAPI, CollectorRegistry]:
    registry = CollectorRegistry()
    app = FastAPI()
    app.add_middleware(PrometheusMiddleware, registry=registry)

    @app.get("/test")
    async def test_endpoint() -> dict[str, str]:
        return {"ok": "yes"}

    @app.get("/devices/{device_id}")
    async def device_endpoint(device_id: str) -> dict[str, str]:
        return {"id": device_id}

    return app, registry


class TestPrometheusMiddleware:
    """Tests for PrometheusMiddleware."""

    def test_increments_request_count(self, _app_with_metrics: tuple) -> None:
        app, registry = _app_with_metrics
        client = TestClient(app)
        client.get("/test")
        metric_names = [m.name for m in registry.collect()]
        assert "http_request" in metric_names

    def test_records_duration(self, _app_with_metrics: tuple) -> None:
        app, registry = _app_with_metrics
        client = TestClient(app)
        client.get("/test")
        metric_names = [m.name for m in registry.collect()]
        assert "http_request_duration_seconds" in metric_names

    def test_multiple_requests(self, _app_with_metrics: tuple) -> None:
        app, registry = _app_with_metrics
        client = TestClient(app)
        for _ in range(3):
            client.get("/test")
        value = registry.get_sample_value(
            "http_request_total",
            {"method": "GET", "path": "/test", "status_code": "200", "app": "account-guard"},
        )
        assert value == 3.0

    def test_path_label_uses_route_template(self, _app_with_metrics: tuple) -> None:
        app, registry = _app_with_metrics
        client = TestClient(app)
        client.get("/devices/dev_1")
        client.get("/devices/dev_2")
        value = registry.get_sample_value(
            "http_request_total",
            {
                "method": "GET",
                "path": "/devices/{device_id}",
                "status_code": "200",
                "app": "account-guard",
            },
        )
        assert value == 2.0

    def test_unmatched_path_uses_raw_url(self, _app_with_metrics: tuple) -> None:
        app, registry = _app_with_metrics
        client = TestClient(app)
        client.get("/missing")
        value = registry.get_sample_value(
            "http_request_total",
            {"method": "GET", "path": "/missing", "status_code": "404", "app": "account-guard"},
        )
        assert value == 1.0
