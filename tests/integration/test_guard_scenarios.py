"""Integration test — end-to-end guard scenarios with a real engine.

Each scenario drives the services together on in-memory SQLite and the
fake clock, with no mocks.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy import update

from account_guard.engine.models import AuditLog
from account_guard.engine.models.withdrawal import WithdrawalStatus
from account_guard.engine.services.credential_service import ERR_INVALID_KEY
from account_guard.engine.services.quota_service import RateLimitRule

if TYPE_CHECKING:
    from account_guard.engine.client import GuardEngine

HOUR_MS = 3_600_000
DESTINATION = "0xdeadbeef"


@pytest.mark.integration
class TestGuardScenarios:
    async def test_key_issue_verify_revoke(self, engine: GuardEngine) -> None:
        """A read key verifies once issued, fails tampered, and stays dead once revoked."""
        api_key, plaintext = await engine.credential_service.issue("u1", "reader", ["read"])

        ok = await engine.credential_service.verify(plaintext)
        assert ok.valid
        assert engine.credential_service.check_permission(ok.key, "read")

        tampered = plaintext[:-1] + ("0" if plaintext[-1] != "0" else "1")
        bad = await engine.credential_service.verify(tampered)
        assert not bad.valid
        assert bad.error == ERR_INVALID_KEY

        assert await engine.credential_service.revoke(api_key.id)
        for _ in range(2):
            revoked = await engine.credential_service.verify(plaintext)
            assert not revoked.valid
            assert "revoked" in revoked.error

    async def test_multi_sig_withdrawal(self, engine: GuardEngine, clock) -> None:
        """15,000 needs three approvals after the cooling-off hour and a verified destination."""
        service = engine.withdrawal_service
        created = await service.create("trader", "15000", "USDT", DESTINATION)
        assert created.success
        request = created.request
        assert request.required_approvals == 3
        assert request.cooling_off_until == clock.now_ms() + HOUR_MS

        early = await service.approve(request.id, "ops-1", "sig-1")
        assert not early.success
        assert "Cooling-off" in early.message

        clock.advance(HOUR_MS)
        for approver in ("ops-1", "ops-2"):
            result = await service.approve(request.id, approver, f"sig-{approver}")
            assert result.success
            assert result.request.status == WithdrawalStatus.PENDING
        duplicate = await service.approve(request.id, "ops-2", "sig-again")
        assert not duplicate.success

        final = await service.approve(request.id, "ops-3", "sig-ops-3")
        assert final.request.status == WithdrawalStatus.APPROVED
        assert final.request.approval_count == 3

        assert not (await service.execute(request.id)).success
        await service.add_whitelisted_address("trader", DESTINATION, "cold", "USDT", "trader")
        assert not (await service.execute(request.id)).success
        assert await service.verify_whitelisted_address("trader", DESTINATION)

        executed = await service.execute(request.id, "treasury")
        assert executed.success
        assert executed.request.status == WithdrawalStatus.EXECUTED

    async def test_audit_chain_tamper(self, engine: GuardEngine, clock) -> None:
        """Corrupting the second of three entries flags exactly that entry."""
        entries = []
        for action in ("KEY_CREATED", "DEVICE_REGISTERED", "WITHDRAWAL_CREATED"):
            entries.append(await engine.audit_service.log("u1", action, "account"))
            clock.advance(1)

        assert (await engine.audit_service.verify_chain()).valid

        async with engine.datastore.session() as session:
            await session.execute(
                update(AuditLog).where(AuditLog.id == entries[1].id).values(action="NOTHING")
            )
            await session.commit()

        result = await engine.audit_service.verify_chain()
        assert not result.valid
        assert result.tampered == [entries[1].id]

    async def test_failed_login_streak(self, engine: GuardEngine) -> None:
        """Three failures flag the device at high severity and cost at least 0.15 trust."""
        device = await engine.device_trust_service.register(
            "u1", {"user_agent": "Mozilla/5.0", "platform": "Linux", "timezone": "UTC"}
        )
        before = device.trust_score

        results = [await engine.device_trust_service.record_login(device.id, False) for _ in range(3)]
        assert [r.flagged for r in results] == [False, False, True]
        assert before - results[-1].trust_score >= 0.15

        activities = await engine.device_trust_service.suspicious_activities(device.id)
        assert [(a.activity_type, a.severity) for a in activities] == [
            ("multiple_failed_logins", "high")
        ]

    async def test_dynamic_adjustment_applies_immediately(self, engine: GuardEngine) -> None:
        """Shrinking a rule under a high error rate lowers the ceiling for the next check."""
        quota = engine.quota_service
        quota.add_rule(RateLimitRule("burst", 60_000, 10))
        first = await quota.check("client-1", "burst")
        assert first.remaining == 9

        assert quota.adjust_dynamically("burst", 0.5, 0.5) == 7
        second = await quota.check("client-1", "burst")
        assert second.remaining == 5

        for _ in range(5):
            assert (await quota.check("client-1", "burst")).allowed
        assert not (await quota.check("client-1", "burst")).allowed
