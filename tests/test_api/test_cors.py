"""Tests for CORS middleware configuration."""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.testclient import TestClient

from account_guard.api.middleware.cors import setup_cors


class TestCORSMiddleware:
    def test_cors_headers_present(self):
        app = FastAPI()
        setup_cors(app)

        @app.get("/test")
        async def test_route():
            return {"ok": True}

        client = TestClient(app)
        resp = client.options(
            "/test",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "GET",
                "Access-Control-Request-Headers": "x-api-key",
            },
        )
        # CORS preflight should return 200
        assert resp.status_code == 200
        assert "access-control-allow-origin" in resp.headers

    def test_cors_exposes_auth_headers(self):
        app = FastAPI()
        setup_cors(app)

        @app.get("/test")
        async def test_route():
            return {"ok": True}

        client = TestClient(app)
        resp = client.get(
            "/test",
            headers={"Origin": "http://localhost:3000"},
        )
        assert resp.status_code == 200
        expose_headers = resp.headers.get("access-control-expose-headers", "")
        assert "x-api-key" in expose_headers
        assert "x-admin-key" in expose_headers
