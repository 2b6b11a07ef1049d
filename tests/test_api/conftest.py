"""Fixtures for HTTP-level tests."""

from __future__ import annotations

from collections.abc import Callable

import pytest
from fastapi.testclient import TestClient

IssueKey = Callable[..., tuple[str, dict[str, str]]]


@pytest.fixture
def admin_headers(app_config) -> dict[str, str]:
    return {"x-admin-key": app_config.admin_key}


@pytest.fixture
def issue_key(test_client: TestClient, admin_headers: dict[str, str]) -> IssueKey:
    """Issue an API key through the operator and return ``(key_id, headers)``."""

    def _issue(
        user_id: str,
        permissions: list[str],
        ip_allow_list: list[str] | None = None,
    ) -> tuple[str, dict[str, str]]:
        resp = test_client.post(
            "/api/v1/api-keys",
            json={
                "name": f"{user_id}-key",
                "permissions": permissions,
                "ip_allow_list": ip_allow_list or [],
                "user_id": user_id,
            },
            headers=admin_headers,
        )
        assert resp.status_code == 201, resp.text
        body = resp.json()
        return body["id"], {"x-api-key": body["key"]}

    return _issue
