"""HTTP tests for /api/v1/devices."""

from __future__ import annotations

import pytest

DEV = "/api/v1/devices"
INFO = {"user_agent": "Mozilla/5.0", "platform": "Linux", "timezone": "UTC", "language": "en"}


@pytest.fixture
def user(issue_key) -> dict[str, str]:
    return issue_key("u1", ["devices:read", "devices:write", "alerts:read"])[1]


def _register(client, headers, info=None) -> dict:
    resp = client.post(DEV, json={"device_info": info or INFO}, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestRegister:
    def test_register_then_identify(self, test_client, user):
        first = _register(test_client, user)
        assert first["created"]
        device = first["device"]
        assert device["user_id"] == "u1"
        assert device["trust_score"] == 0.5
        assert not device["verified"]

        second = _register(test_client, user)
        assert not second["created"]
        assert second["device"]["id"] == device["id"]

        listed = test_client.get(DEV, headers=user).json()
        assert [d["id"] for d in listed] == [device["id"]]

    def test_registration_is_audited_once(self, test_client, user, admin_headers):
        _register(test_client, user)
        _register(test_client, user)
        entries = test_client.get(
            "/api/v1/audit/logs", params={"action": "device_registered"}, headers=admin_headers
        ).json()
        assert len(entries) == 1

    def test_read_only_key_cannot_register(self, test_client, issue_key):
        _, headers = issue_key("u1", ["devices:read"])
        resp = test_client.post(DEV, json={"device_info": INFO}, headers=headers)
        assert resp.status_code == 403


class TestDeviceActions:
    def test_failed_logins_flag_and_alert(self, test_client, user):
        device_id = _register(test_client, user)["device"]["id"]
        for _ in range(2):
            resp = test_client.post(f"{DEV}/{device_id}/logins", json={"success": False}, headers=user)
            assert not resp.json()["flagged"]
        resp = test_client.post(f"{DEV}/{device_id}/logins", json={"success": False}, headers=user)
        body = resp.json()
        assert body["flagged"]
        assert body["failed_login_attempts"] == 3

        activities = test_client.get(f"{DEV}/{device_id}/suspicious-activities", headers=user).json()
        assert activities[0]["activity_type"] == "multiple_failed_logins"

        alerts = test_client.get(
            "/api/v1/alerts", params={"alert_type": "failed_login_attempts"}, headers=user
        ).json()
        assert len(alerts) == 1
        assert alerts[0]["severity"] == "high"

    def test_successful_login_resets_streak(self, test_client, user):
        device_id = _register(test_client, user)["device"]["id"]
        test_client.post(f"{DEV}/{device_id}/logins", json={"success": False}, headers=user)
        resp = test_client.post(
            f"{DEV}/{device_id}/logins", json={"success": True, "location": "Berlin"}, headers=user
        )
        assert resp.json()["failed_login_attempts"] == 0
        device = test_client.get(f"{DEV}/{device_id}", headers=user).json()
        assert device["typical_locations"] == ["Berlin"]
        assert device["login_count"] == 2

    def test_verify_and_verification_required(self, test_client, user):
        device_id = _register(test_client, user)["device"]["id"]
        resp = test_client.get(f"{DEV}/{device_id}/verification-required", headers=user)
        assert resp.json()["required"]

        device = test_client.post(f"{DEV}/{device_id}/verify", headers=user).json()
        assert device["verified"]
        assert device["trust_score"] > 0.5

    def test_analyze_new_location(self, test_client, user):
        device_id = _register(test_client, user)["device"]["id"]
        test_client.post(
            f"{DEV}/{device_id}/logins", json={"success": True, "location": "Berlin"}, headers=user
        )
        resp = test_client.post(f"{DEV}/{device_id}/analyze", json={"location": "Lagos"}, headers=user)
        analysis = resp.json()
        assert analysis["anomalous"]
        assert "New location" in analysis["anomalies"]

    def test_flag_activity(self, test_client, user):
        device_id = _register(test_client, user)["device"]["id"]
        resp = test_client.post(
            f"{DEV}/{device_id}/suspicious-activities",
            json={"activity_type": "session_hijack", "severity": "high", "details": "token reuse"},
            headers=user,
        )
        assert resp.status_code == 201
        assert "session_hijack" in resp.json()["risk_factors"]

    def test_statistics(self, test_client, user):
        _register(test_client, user)
        _register(test_client, user, {**INFO, "platform": "Windows"})
        stats = test_client.get(f"{DEV}/statistics", headers=user).json()
        assert stats["total_devices"] == 2
        assert stats["verified_devices"] == 0

    def test_remove(self, test_client, user):
        device_id = _register(test_client, user)["device"]["id"]
        assert test_client.delete(f"{DEV}/{device_id}", headers=user).status_code == 204
        assert test_client.get(f"{DEV}/{device_id}", headers=user).status_code == 404

    def test_other_users_device_hidden(self, test_client, user, issue_key):
        device_id = _register(test_client, user)["device"]["id"]
        _, other = issue_key("u2", ["devices:read", "devices:write"])
        resp = test_client.get(f"{DEV}/{device_id}", headers=other)
        assert resp.status_code == 404
        assert resp.json()["code"] == "device-not-found"
        assert test_client.post(f"{DEV}/{device_id}/verify", headers=other).status_code == 404


class TestDeviceHeader:
    def test_known_device_raises_no_alert(self, test_client, user):
        device_id = _register(test_client, user)["device"]["id"]
        resp = test_client.get(DEV, headers={**user, "x-device-id": device_id})
        assert resp.status_code == 200
        assert test_client.get("/api/v1/alerts", headers=user).json() == []

    def test_unknown_device_raises_alert(self, test_client, user):
        resp = test_client.get(DEV, headers={**user, "x-device-id": "dev_unknown"})
        assert resp.status_code == 200
        alerts = test_client.get("/api/v1/alerts", headers=user).json()
        assert [(a["alert_type"], a["severity"]) for a in alerts] == [("device_anomaly", "high")]
        assert alerts[0]["metadata"]["device_id"] == "dev_unknown"

    def test_other_users_device_raises_alert(self, test_client, user, issue_key):
        device_id = _register(test_client, user)["device"]["id"]
        _, other = issue_key("u2", ["devices:read", "alerts:read"])
        resp = test_client.get(DEV, headers={**other, "x-device-id": device_id})
        assert resp.status_code == 200
        alerts = test_client.get("/api/v1/alerts", headers=other).json()
        assert [(a["alert_type"], a["severity"]) for a in alerts] == [("device_anomaly", "high")]
