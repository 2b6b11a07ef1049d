"""Tests for FastAPI dependency injection helpers."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from fastapi import FastAPI, Request

from account_guard.api.dependencies import client_ip, get_engine, request_context
from account_guard.errors.guard_errors import GuardError


class TestGetEngine:
    def test_returns_engine_from_state(self):
        app = FastAPI()
        engine = MagicMock()
        app.state.engine = engine

        request = MagicMock(spec=Request)
        request.app = app

        result = get_engine(request)
        assert result is engine

    def test_raises_if_no_engine(self):
        app = FastAPI()
        # No engine set on state

        request = MagicMock(spec=Request)
        request.app = app

        with pytest.raises(GuardError, match="unauthorized"):
            get_engine(request)


class TestRequestDetails:
    def test_client_ip(self):
        request = MagicMock(spec=Request)
        request.client = SimpleNamespace(host="10.1.2.3")
        assert client_ip(request) == "10.1.2.3"

    def test_client_ip_unknown(self):
        request = MagicMock(spec=Request)
        request.client = None
        assert client_ip(request) == "unknown"

    def test_request_context(self):
        request = MagicMock(spec=Request)
        request.method = "POST"
        request.url = SimpleNamespace(path="/api/v1/api-keys")
        request.client = SimpleNamespace(host="10.1.2.3")
        request.headers = {"user-agent": "pytest"}

        ctx = request_context(request, 201)
        assert ctx.method == "POST"
        assert ctx.endpoint == "/api/v1/api-keys"
        assert ctx.status_code == 201
        assert ctx.ip_address == "10.1.2.3"
        assert ctx.user_agent == "pytest"
