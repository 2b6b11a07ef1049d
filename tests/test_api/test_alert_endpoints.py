"""HTTP tests for /api/v1/alerts."""

from __future__ import annotations

import pytest

ALERTS = "/api/v1/alerts"


@pytest.fixture
def user(issue_key) -> dict[str, str]:
    return issue_key("u1", ["alerts:read", "alerts:write"])[1]


def _raise(client, admin_headers, user_id="u1", severity="medium", alert_type="manual_review") -> dict:
    resp = client.post(
        ALERTS,
        json={
            "user_id": user_id,
            "alert_type": alert_type,
            "severity": severity,
            "title": "Review account",
            "metadata": {"ticket": "SEC-1"},
        },
        headers=admin_headers,
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestRaise:
    def test_operator_raises_alert(self, test_client, admin_headers):
        alert = _raise(test_client, admin_headers, severity="critical")
        assert alert["channels"] == ["email", "sms", "push", "in-app"]
        assert alert["metadata"] == {"ticket": "SEC-1"}
        assert not alert["resolved"]

    def test_invalid_severity(self, test_client, admin_headers):
        resp = test_client.post(
            ALERTS,
            json={"user_id": "u1", "alert_type": "x", "severity": "urgent", "title": "t"},
            headers=admin_headers,
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "invalid-severity"

    def test_user_cannot_raise(self, test_client, user):
        resp = test_client.post(
            ALERTS,
            json={"user_id": "u1", "alert_type": "x", "severity": "low", "title": "t"},
            headers=user,
        )
        assert resp.status_code == 403

    def test_detect_anomalies(self, test_client, admin_headers):
        resp = test_client.post(
            f"{ALERTS}/detect",
            json={
                "user_id": "u1",
                "activity": {"type": "login", "location": "Lagos", "expected_location": "Berlin"},
            },
            headers=admin_headers,
        )
        alerts = resp.json()
        assert len(alerts) == 1
        assert alerts[0]["alert_type"] == "unusual_location"

    @pytest.mark.parametrize(
        "activity",
        [{"type": "failed_login", "attempts": "three"}, {"type": "device", "trust_score": "low"}],
    )
    def test_detect_ignores_malformed_numbers(self, test_client, admin_headers, activity):
        resp = test_client.post(
            f"{ALERTS}/detect", json={"user_id": "u1", "activity": activity}, headers=admin_headers
        )
        assert resp.status_code == 200
        assert resp.json() == []

    def test_configure_threshold(self, test_client, admin_headers):
        resp = test_client.put(
            f"{ALERTS}/thresholds/large_withdrawal", json={"threshold": 50}, headers=admin_headers
        )
        assert resp.json() == {"alert_type": "large_withdrawal", "threshold": 50.0}
        detected = test_client.post(
            f"{ALERTS}/detect",
            json={"user_id": "u1", "activity": {"type": "withdrawal", "amount": 60, "currency": "ETH"}},
            headers=admin_headers,
        ).json()
        assert detected[0]["alert_type"] == "large_withdrawal"


class TestUserAlerts:
    def test_list_filters_and_ownership(self, test_client, user, admin_headers):
        _raise(test_client, admin_headers, severity="low")
        _raise(test_client, admin_headers, severity="critical")
        _raise(test_client, admin_headers, user_id="u2")

        assert len(test_client.get(ALERTS, headers=user).json()) == 2
        critical = test_client.get(f"{ALERTS}/critical", headers=user).json()
        assert [a["severity"] for a in critical] == ["critical"]
        # A non-operator cannot widen the subject.
        assert len(test_client.get(ALERTS, params={"user_id": "u2"}, headers=user).json()) == 2
        assert len(test_client.get(ALERTS, params={"user_id": "u2"}, headers=admin_headers).json()) == 1

    def test_resolve(self, test_client, user, admin_headers):
        alert_id = _raise(test_client, admin_headers)["id"]
        resp = test_client.post(f"{ALERTS}/{alert_id}/resolve", json={"notes": "was me"}, headers=user)
        assert resp.json() == {"alert_id": alert_id, "resolved": True}
        again = test_client.post(f"{ALERTS}/{alert_id}/resolve", json={}, headers=user)
        assert again.json()["resolved"] is False

        alert = test_client.get(f"{ALERTS}/{alert_id}", headers=user).json()
        assert alert["resolved_by"] == "u1"
        assert test_client.get(f"{ALERTS}/unresolved", headers=user).json() == []

        incidents = test_client.get(f"{ALERTS}/{alert_id}/incidents", headers=user).json()
        assert incidents[0]["action"] == "resolved"
        assert incidents[0]["notes"] == "was me"

    def test_other_users_alert_hidden(self, test_client, user, admin_headers):
        alert_id = _raise(test_client, admin_headers, user_id="u2")["id"]
        resp = test_client.get(f"{ALERTS}/{alert_id}", headers=user)
        assert resp.status_code == 404
        assert resp.json()["code"] == "alert-not-found"

    def test_statistics(self, test_client, user, admin_headers):
        _raise(test_client, admin_headers, severity="high")
        _raise(test_client, admin_headers, severity="high", alert_type="other")
        stats = test_client.get(f"{ALERTS}/statistics", headers=user).json()
        assert stats["total_alerts"] == 2
        assert stats["by_severity"]["high"] == 2
        assert stats["by_type"] == {"manual_review": 1, "other": 1}

    def test_trend(self, test_client, user, admin_headers):
        _raise(test_client, admin_headers)
        trend = test_client.get(f"{ALERTS}/trend", params={"days": 7}, headers=user).json()
        assert trend["daily_alerts"] == [{"date": "2023-11-14", "count": 1}]
        assert trend["direction"] == "stable"


class TestOperatorActions:
    def test_escalate_upward_only(self, test_client, admin_headers):
        alert_id = _raise(test_client, admin_headers, severity="medium")["id"]
        down = test_client.post(f"{ALERTS}/{alert_id}/escalate", json={"severity": "low"}, headers=admin_headers)
        assert down.json()["escalated"] is False
        up = test_client.post(f"{ALERTS}/{alert_id}/escalate", json={"severity": "critical"}, headers=admin_headers)
        assert up.json()["escalated"] is True
        alert = test_client.get(f"{ALERTS}/{alert_id}", headers=admin_headers).json()
        assert alert["severity"] == "critical"
        assert "sms" in alert["channels"]

    def test_bulk_resolve(self, test_client, admin_headers):
        ids = [_raise(test_client, admin_headers)["id"] for _ in range(3)]
        resp = test_client.post(f"{ALERTS}/resolve", json={"alert_ids": [*ids, "alert_missing"]}, headers=admin_headers)
        assert resp.json() == {"resolved": 3}

    def test_incident_response(self, test_client, admin_headers):
        alert_id = _raise(test_client, admin_headers)["id"]
        resp = test_client.post(
            f"{ALERTS}/{alert_id}/incidents",
            json={"action": "account_locked", "outcome": "locked for 24h"},
            headers=admin_headers,
        )
        assert resp.status_code == 201
        assert resp.json()["performed_by"] == "admin"

        missing = test_client.post(
            f"{ALERTS}/alert_missing/incidents", json={"action": "x"}, headers=admin_headers
        )
        assert missing.status_code == 404
