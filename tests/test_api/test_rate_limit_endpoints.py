"""HTTP tests for /api/v1/rate-limits."""

from __future__ import annotations

import pytest

LIMITS = "/api/v1/rate-limits"


@pytest.fixture
def checker(issue_key) -> dict[str, str]:
    return issue_key("gateway", ["rate_limits:check"])[1]


def _check(client, headers, identifier="ip:10.0.0.1", rule_id="login", **extra) -> dict:
    resp = client.post(
        f"{LIMITS}/check", json={"identifier": identifier, "rule_id": rule_id, **extra}, headers=headers
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


class TestCheck:
    def test_allows_then_denies(self, test_client, checker, clock):
        results = [_check(test_client, checker) for _ in range(6)]
        assert [r["allowed"] for r in results] == [True] * 5 + [False]
        assert results[0]["remaining"] == 4
        assert results[0]["retry_after_ms"] is None
        assert results[-1]["retry_after_ms"] == 15 * 60 * 1000

        clock.advance(15 * 60 * 1000)
        assert _check(test_client, checker)["allowed"]

    def test_unknown_rule_fails_open(self, test_client, checker):
        result = _check(test_client, checker, rule_id="no-such-rule")
        assert result["allowed"]
        assert result["remaining"] == -1

    def test_reputation_changes_limit(self, test_client, checker):
        result = _check(test_client, checker, reputation=0.9)
        assert result["remaining"] == 5  # 5 + 1 bonus - 1 used

    def test_statistics(self, test_client, checker):
        for _ in range(7):
            _check(test_client, checker)
        stats = test_client.get(
            f"{LIMITS}/statistics", params={"identifier": "ip:10.0.0.1", "rule_id": "login"}, headers=checker
        ).json()
        assert stats == {
            "total_requests": 5,
            "blocked_requests": 2,
            "current_reputation": 0.5,
            "adjusted_limit": 5,
        }

    def test_statistics_without_record(self, test_client, checker):
        resp = test_client.get(
            f"{LIMITS}/statistics", params={"identifier": "nobody", "rule_id": "login"}, headers=checker
        )
        assert resp.json() is None

    def test_scope_required(self, test_client, issue_key):
        _, headers = issue_key("u1", ["devices:read"])
        resp = test_client.post(
            f"{LIMITS}/check", json={"identifier": "x", "rule_id": "login"}, headers=headers
        )
        assert resp.status_code == 403


class TestRules:
    def test_list_defaults(self, test_client, admin_headers):
        rules = {r["rule_id"]: r for r in test_client.get(f"{LIMITS}/rules", headers=admin_headers).json()}
        assert {"api:basic", "api:premium", "api:enterprise", "login", "password_reset", "withdrawal"} <= set(rules)
        assert rules["api:premium"]["reputation_modifier"] == 1.2

    def test_rules_require_admin(self, test_client, checker):
        assert test_client.get(f"{LIMITS}/rules", headers=checker).status_code == 403

    def test_put_and_enforce(self, test_client, admin_headers, checker):
        resp = test_client.put(
            f"{LIMITS}/rules",
            json={"rule_id": "export", "window_ms": 60_000, "max_requests": 1},
            headers=admin_headers,
        )
        assert resp.status_code == 201
        assert _check(test_client, checker, rule_id="export")["allowed"]
        assert not _check(test_client, checker, rule_id="export")["allowed"]

    def test_put_rejects_invalid(self, test_client, admin_headers):
        resp = test_client.put(
            f"{LIMITS}/rules",
            json={"rule_id": "bad", "window_ms": 0, "max_requests": 1},
            headers=admin_headers,
        )
        assert resp.status_code == 422

    def test_delete(self, test_client, admin_headers):
        assert test_client.delete(f"{LIMITS}/rules/password_reset", headers=admin_headers).status_code == 204
        missing = test_client.delete(f"{LIMITS}/rules/password_reset", headers=admin_headers)
        assert missing.status_code == 404
        assert missing.json()["code"] == "rate-limit-rule-not-found"

    @pytest.mark.parametrize(
        ("load", "errors", "expected"),
        [
            (0.9, 0.0, 42),
            (0.5, 0.2, 42),
            (0.1, 0.0, 72),
            (0.5, 0.05, 60),
        ],
    )
    def test_adjust(self, test_client, admin_headers, load, errors, expected):
        resp = test_client.post(
            f"{LIMITS}/rules/api:basic/adjust",
            json={"system_load": load, "error_rate": errors},
            headers=admin_headers,
        )
        assert resp.json() == {"rule_id": "api:basic", "max_requests": expected}

    def test_adjust_unknown_rule(self, test_client, admin_headers):
        resp = test_client.post(
            f"{LIMITS}/rules/missing/adjust", json={"system_load": 0.5, "error_rate": 0.0}, headers=admin_headers
        )
        assert resp.status_code == 404


class TestRecords:
    def test_reputation_and_reset(self, test_client, admin_headers, checker):
        body = {"identifier": "ip:10.0.0.1", "rule_id": "login"}
        assert test_client.put(
            f"{LIMITS}/reputation", json={**body, "reputation": 0.1}, headers=admin_headers
        ).json() == {"updated": False}

        for _ in range(5):
            _check(test_client, checker)
        assert test_client.put(
            f"{LIMITS}/reputation", json={**body, "reputation": 0.1}, headers=admin_headers
        ).json() == {"updated": True}
        assert not _check(test_client, checker)["allowed"]

        assert test_client.post(f"{LIMITS}/reset", json=body, headers=admin_headers).json() == {"reset": True}
        assert _check(test_client, checker)["allowed"]

    def test_active_records(self, test_client, admin_headers, clock):
        _check(test_client, admin_headers, identifier="ip:10.0.0.1")
        clock.advance(20 * 60 * 1000)
        _check(test_client, admin_headers, identifier="ip:10.0.0.2")

        active = test_client.get(f"{LIMITS}/active", headers=admin_headers).json()
        assert [r["identifier"] for r in active] == ["ip:10.0.0.2"]

    def test_brute_force_raises_alert(self, test_client, admin_headers):
        for _ in range(12):
            _check(test_client, admin_headers, identifier="user-7")

        result = test_client.post(f"{LIMITS}/brute-force/user-7", headers=admin_headers).json()
        assert result["detected"]
        assert result["severity"] == "medium"

        alerts = test_client.get("/api/v1/alerts", params={"user_id": "user-7"}, headers=admin_headers).json()
        assert [a["alert_type"] for a in alerts] == ["brute_force"]

    def test_brute_force_quiet(self, test_client, admin_headers):
        result = test_client.post(f"{LIMITS}/brute-force/user-8", headers=admin_headers).json()
        assert result == {"detected": False, "severity": "low", "details": "No login activity"}
        alerts = test_client.get("/api/v1/alerts", params={"user_id": "user-8"}, headers=admin_headers).json()
        assert alerts == []
