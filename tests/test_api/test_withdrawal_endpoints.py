"""HTTP tests for /api/v1/withdrawals."""

from __future__ import annotations

from decimal import Decimal

import pytest

WD = "/api/v1/withdrawals"
ADDR = "bc1qdestination"
TRADER = ["withdrawals:create", "withdrawals:read"]
APPROVER = ["withdrawals:approve", "withdrawals:read"]


@pytest.fixture
def trader(issue_key) -> dict[str, str]:
    return issue_key("trader-1", TRADER)[1]


@pytest.fixture
def approvers(issue_key) -> list[dict[str, str]]:
    return [issue_key(f"ops-{i}", APPROVER)[1] for i in range(1, 4)]


def _create(client, headers, amount="500", currency="BTC") -> dict:
    resp = client.post(
        WD,
        json={"amount": amount, "currency": currency, "destination_address": ADDR},
        headers=headers,
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["request"]


def _whitelist(client, trader, admin_headers, currency="BTC") -> None:
    resp = client.post(
        f"{WD}/whitelist",
        json={"address": ADDR, "label": "cold", "currency": currency},
        headers=trader,
    )
    assert resp.status_code == 201
    assert not resp.json()["verified"]
    resp = client.put(f"{WD}/whitelist/trader-1/{ADDR}/verify", headers=admin_headers)
    assert resp.json() == {"address": ADDR, "verified": True}


class TestCreate:
    def test_create(self, test_client, trader):
        request = _create(test_client, trader, amount="0.25", currency="btc")
        assert request["status"] == "pending"
        assert request["currency"] == "BTC"
        assert Decimal(request["amount"]) == Decimal("0.25")
        assert request["required_approvals"] == 1
        assert request["approvals"] == []

    def test_non_positive_amount_rejected_by_schema(self, test_client, trader):
        resp = test_client.post(
            WD, json={"amount": "0", "currency": "BTC", "destination_address": ADDR}, headers=trader
        )
        assert resp.status_code == 422

    def test_denial_is_409_with_body(self, test_client, trader, admin_headers):
        test_client.put(
            f"{WD}/limits/trader-1",
            json={
                "daily_limit": "100",
                "monthly_limit": "1000",
                "requires_approval_above": "50",
                "multi_sig_threshold": "90",
            },
            headers=admin_headers,
        )
        resp = test_client.post(
            WD, json={"amount": "150", "currency": "BTC", "destination_address": ADDR}, headers=trader
        )
        assert resp.status_code == 409
        assert resp.json() == {
            "success": False,
            "message": "Daily withdrawal limit exceeded",
            "request": None,
        }

    def test_other_users_device_refused(self, test_client, trader, issue_key):
        _, owner = issue_key("trader-2", ["devices:write"])
        registered = test_client.post(
            "/api/v1/devices", json={"device_info": {"platform": "Linux"}}, headers=owner
        )
        device_id = registered.json()["device"]["id"]
        resp = test_client.post(
            WD,
            json={
                "amount": "1",
                "currency": "BTC",
                "destination_address": ADDR,
                "device_id": device_id,
            },
            headers=trader,
        )
        assert resp.status_code == 409
        assert resp.json()["message"] == "Device risk too high; additional verification required"

    def test_requires_create_scope(self, test_client, approvers):
        resp = test_client.post(
            WD,
            json={"amount": "1", "currency": "BTC", "destination_address": ADDR},
            headers=approvers[0],
        )
        assert resp.status_code == 403


class TestApprovalFlow:
    def test_full_flow(self, test_client, trader, approvers, admin_headers):
        _whitelist(test_client, trader, admin_headers)
        request = _create(test_client, trader, amount="5000")
        assert request["required_approvals"] == 2
        rid = request["id"]

        awaiting = test_client.get(f"{WD}/awaiting-approval", headers=approvers[0]).json()
        assert [r["id"] for r in awaiting] == [rid]

        resp = test_client.post(
            f"{WD}/{rid}/approve",
            json={"signature": "sig-1", "approver_name": "Ops One"},
            headers=approvers[0],
        )
        assert resp.status_code == 200
        assert resp.json()["request"]["status"] == "pending"

        again = test_client.post(f"{WD}/{rid}/approve", json={"signature": "x"}, headers=approvers[0])
        assert again.status_code == 409
        assert again.json()["message"] == "You have already approved this request"

        resp = test_client.post(f"{WD}/{rid}/approve", json={"signature": "sig-2"}, headers=approvers[1])
        body = resp.json()["request"]
        assert body["status"] == "approved"
        assert [a["approver_id"] for a in body["approvals"]] == ["ops-1", "ops-2"]

        resp = test_client.post(f"{WD}/{rid}/execute", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["message"] == "Withdrawal executed successfully"
        assert resp.json()["request"]["status"] == "executed"

        history = test_client.get(WD, headers=trader).json()
        assert history[0]["id"] == rid

    def test_execute_requires_admin(self, test_client, trader, approvers):
        rid = _create(test_client, trader)["id"]
        test_client.post(f"{WD}/{rid}/approve", json={"signature": "s"}, headers=approvers[0])
        assert test_client.post(f"{WD}/{rid}/execute", headers=trader).status_code == 403

    def test_execute_unwhitelisted(self, test_client, trader, approvers, admin_headers):
        rid = _create(test_client, trader)["id"]
        test_client.post(f"{WD}/{rid}/approve", json={"signature": "s"}, headers=approvers[0])
        resp = test_client.post(f"{WD}/{rid}/execute", headers=admin_headers)
        assert resp.status_code == 409
        assert resp.json()["message"] == "Destination address is not whitelisted"

    def test_cooling_off(self, test_client, trader, approvers, clock):
        request = _create(test_client, trader, amount="25000")
        assert request["cooling_off_until"] == request["requested_at"] + 3_600_000
        rid = request["id"]
        resp = test_client.post(f"{WD}/{rid}/approve", json={"signature": "s"}, headers=approvers[0])
        assert resp.status_code == 409
        assert resp.json()["message"].startswith("Cooling-off period active until")

        clock.advance(3_600_000)
        for headers in approvers:
            resp = test_client.post(f"{WD}/{rid}/approve", json={"signature": "s"}, headers=headers)
            assert resp.status_code == 200
        assert resp.json()["request"]["status"] == "approved"

    def test_self_approval_refused(self, test_client, issue_key):
        _, both = issue_key("trader-1", TRADER + APPROVER)
        rid = _create(test_client, both)["id"]
        resp = test_client.post(f"{WD}/{rid}/approve", json={"signature": "s"}, headers=both)
        assert resp.status_code == 409
        assert resp.json()["message"] == "Requester cannot approve their own withdrawal"

    def test_reject(self, test_client, trader, approvers):
        rid = _create(test_client, trader)["id"]
        resp = test_client.post(
            f"{WD}/{rid}/reject", json={"reason": "destination flagged"}, headers=approvers[0]
        )
        assert resp.status_code == 200
        assert resp.json()["request"]["rejection_reason"] == "destination flagged"

    def test_cancel(self, test_client, trader, issue_key):
        rid = _create(test_client, trader)["id"]
        _, other = issue_key("trader-2", TRADER)
        resp = test_client.post(f"{WD}/{rid}/cancel", headers=other)
        assert resp.status_code == 409
        assert resp.json()["message"] == "Unauthorized"

        resp = test_client.post(f"{WD}/{rid}/cancel", headers=trader)
        assert resp.status_code == 200
        assert resp.json()["request"]["status"] == "cancelled"
        assert test_client.get(f"{WD}/pending", headers=trader).json() == []

    def test_unknown_request(self, test_client, approvers):
        resp = test_client.post(f"{WD}/wd_missing/approve", json={"signature": "s"}, headers=approvers[0])
        assert resp.status_code == 409
        assert resp.json()["message"] == "Withdrawal request not found"


class TestReads:
    def test_get_visibility(self, test_client, trader, approvers, issue_key):
        rid = _create(test_client, trader)["id"]
        assert test_client.get(f"{WD}/{rid}", headers=trader).status_code == 200
        assert test_client.get(f"{WD}/{rid}", headers=approvers[0]).status_code == 200

        _, stranger = issue_key("trader-2", TRADER)
        resp = test_client.get(f"{WD}/{rid}", headers=stranger)
        assert resp.status_code == 404
        assert resp.json()["code"] == "withdrawal-not-found"

    def test_limits(self, test_client, trader, admin_headers):
        assert test_client.get(f"{WD}/limits", headers=trader).json() is None
        resp = test_client.put(
            f"{WD}/limits/trader-1",
            json={
                "daily_limit": "1000",
                "monthly_limit": "5000",
                "requires_approval_above": "100",
                "multi_sig_threshold": "900",
            },
            headers=admin_headers,
        )
        assert resp.status_code == 200
        limits = test_client.get(f"{WD}/limits", headers=trader).json()
        assert Decimal(limits["multi_sig_threshold"]) == Decimal("900")

    def test_set_limits_requires_admin(self, test_client, trader):
        resp = test_client.put(
            f"{WD}/limits/trader-1",
            json={
                "daily_limit": "1",
                "monthly_limit": "1",
                "requires_approval_above": "1",
                "multi_sig_threshold": "1",
            },
            headers=trader,
        )
        assert resp.status_code == 403

    def test_whitelist_listing_and_removal(self, test_client, trader, admin_headers):
        _whitelist(test_client, trader, admin_headers)
        entries = test_client.get(f"{WD}/whitelist", headers=trader).json()
        assert entries[0]["address"] == ADDR
        assert entries[0]["verified"]

        assert test_client.delete(f"{WD}/whitelist/{ADDR}", headers=trader).status_code == 204
        assert test_client.get(f"{WD}/whitelist", headers=trader).json() == []
