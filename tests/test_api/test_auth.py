"""Tests for auth middleware — authenticate_request, require_admin, require_scope."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from account_guard.api.middleware.auth import (
    ADMIN_USER_ID,
    AuthType,
    CallerContext,
    authenticate_request,
    require_admin,
    require_scope,
)
from account_guard.engine.permissions import PermissionSet
from account_guard.errors.guard_errors import GuardError

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def api_key():
    return SimpleNamespace(id="ak_1", user_id="trader-1", permissions=["withdrawals:create"])


@pytest.fixture
def mock_engine(api_key):
    """Create a mock engine with credential_service and quota_service."""
    engine = MagicMock()
    engine.config = MagicMock()
    engine.config.admin_key = "admin-secret"
    engine.config.server.api_rate_limit_rule = "api:basic"
    engine.credential_service = MagicMock()
    engine.credential_service.verify = AsyncMock(
        return_value=SimpleNamespace(valid=True, key=api_key, error=None)
    )
    engine.credential_service.check_ip_allowed = MagicMock(return_value=True)
    engine.credential_service.permission_set = MagicMock(
        return_value=PermissionSet.parse(api_key.permissions)
    )
    engine.quota_service = MagicMock()
    engine.quota_service.check = AsyncMock(return_value=SimpleNamespace(allowed=True))
    return engine


# ---------------------------------------------------------------------------
# AuthType + CallerContext
# ---------------------------------------------------------------------------


class TestAuthType:
    def test_enum_values(self):
        assert AuthType.API_KEY == 0
        assert AuthType.ADMIN == 1


class TestCallerContext:
    def test_is_admin_true(self):
        ctx = CallerContext(auth_type=AuthType.ADMIN, user_id="admin")
        assert ctx.is_admin is True
        assert ctx.allows("anything:at_all")

    def test_is_admin_false(self):
        ctx = CallerContext(auth_type=AuthType.API_KEY, user_id="u1")
        assert ctx.is_admin is False
        assert not ctx.allows("devices:read")

    def test_allows_granted_scope(self):
        ctx = CallerContext(
            auth_type=AuthType.API_KEY,
            user_id="u1",
            permissions=PermissionSet.parse(["devices:read"]),
        )
        assert ctx.allows("devices:read")
        assert not ctx.allows("devices:write")

    def test_frozen(self):
        ctx = CallerContext(auth_type=AuthType.API_KEY, user_id="u1")
        with pytest.raises(AttributeError):
            ctx.user_id = "other"  # type: ignore[misc]


# ---------------------------------------------------------------------------
# authenticate_request
# ---------------------------------------------------------------------------


class TestAuthenticateRequest:
    async def test_no_headers_raises_unauthorized(self, mock_engine):
        with pytest.raises(GuardError, match="unauthorized"):
            await authenticate_request(mock_engine)

    async def test_admin_key(self, mock_engine):
        ctx = await authenticate_request(
            mock_engine, admin_key_header="admin-secret", client_ip="10.0.0.9"
        )
        assert ctx.auth_type == AuthType.ADMIN
        assert ctx.user_id == ADMIN_USER_ID
        assert ctx.permissions.grants_all
        assert ctx.ip_address == "10.0.0.9"

    async def test_wrong_admin_key(self, mock_engine):
        with pytest.raises(GuardError, match="unauthorized") as exc_info:
            await authenticate_request(mock_engine, admin_key_header="guess")
        assert exc_info.value.status_code == 401

    async def test_admin_key_unconfigured(self, mock_engine):
        mock_engine.config.admin_key = ""
        with pytest.raises(GuardError, match="unauthorized"):
            await authenticate_request(mock_engine, admin_key_header="anything")

    async def test_api_key(self, mock_engine):
        ctx = await authenticate_request(
            mock_engine, api_key_header="ak_1.secret", client_ip="10.0.0.9"
        )
        assert ctx.auth_type == AuthType.API_KEY
        assert ctx.user_id == "trader-1"
        assert ctx.key_id == "ak_1"
        assert ctx.allows("withdrawals:create")
        mock_engine.credential_service.verify.assert_awaited_once_with("ak_1.secret")
        mock_engine.quota_service.check.assert_awaited_once_with("key:ak_1", "api:basic")

    async def test_invalid_api_key(self, mock_engine):
        mock_engine.credential_service.verify.return_value = SimpleNamespace(
            valid=False, key=None, error="Invalid API key"
        )
        with pytest.raises(GuardError, match="unauthorized"):
            await authenticate_request(mock_engine, api_key_header="ak_1.wrong")
        mock_engine.quota_service.check.assert_not_awaited()

    async def test_ip_not_allowed(self, mock_engine):
        mock_engine.credential_service.check_ip_allowed.return_value = False
        with pytest.raises(GuardError, match="allow-list") as exc_info:
            await authenticate_request(mock_engine, api_key_header="ak_1.secret")
        assert exc_info.value.status_code == 403
        mock_engine.quota_service.check.assert_not_awaited()

    async def test_rate_limited(self, mock_engine):
        mock_engine.quota_service.check.return_value = SimpleNamespace(allowed=False)
        with pytest.raises(GuardError, match="rate limit") as exc_info:
            await authenticate_request(mock_engine, api_key_header="ak_1.secret")
        assert exc_info.value.status_code == 429

    async def test_admin_key_takes_precedence(self, mock_engine):
        ctx = await authenticate_request(
            mock_engine, api_key_header="ak_1.secret", admin_key_header="admin-secret"
        )
        assert ctx.is_admin
        mock_engine.credential_service.verify.assert_not_awaited()

    async def test_device_analysis_skipped_without_header(self, mock_engine):
        ctx = await authenticate_request(mock_engine, api_key_header="ak_1.secret")
        assert ctx.device_id == ""
        mock_engine.device_trust_service.analyze_pattern.assert_not_called()

    async def test_normal_device_no_alert(self, mock_engine):
        mock_engine.device_trust_service.analyze_pattern = AsyncMock(
            return_value=SimpleNamespace(anomalous=False, anomalies=[], risk_level="low")
        )
        mock_engine.alert_service.from_pattern_analysis = AsyncMock()
        ctx = await authenticate_request(
            mock_engine, api_key_header="ak_1.secret", device_id_header="dev_1"
        )
        assert ctx.device_id == "dev_1"
        assert ctx.device_risk == "low"
        mock_engine.device_trust_service.analyze_pattern.assert_awaited_once_with(
            "dev_1", {"ip_address": "unknown"}, owner="trader-1"
        )
        mock_engine.alert_service.from_pattern_analysis.assert_not_awaited()

    async def test_anomalous_device_raises_alert(self, mock_engine):
        analysis = SimpleNamespace(anomalous=True, anomalies=["Unknown device"], risk_level="high")
        mock_engine.device_trust_service.analyze_pattern = AsyncMock(return_value=analysis)
        mock_engine.alert_service.from_pattern_analysis = AsyncMock()
        ctx = await authenticate_request(
            mock_engine, api_key_header="ak_1.secret", device_id_header="dev_x"
        )
        assert ctx.device_risk == "high"
        mock_engine.alert_service.from_pattern_analysis.assert_awaited_once_with(
            "trader-1", "dev_x", analysis
        )


# ---------------------------------------------------------------------------
# require_admin / require_scope
# ---------------------------------------------------------------------------


class TestRequireAdmin:
    def test_admin_passes(self):
        require_admin(CallerContext(auth_type=AuthType.ADMIN, user_id="admin"))

    def test_non_admin_raises(self):
        ctx = CallerContext(auth_type=AuthType.API_KEY, user_id="u1")
        with pytest.raises(GuardError, match="admin") as exc_info:
            require_admin(ctx)
        assert exc_info.value.status_code == 403


class TestRequireScope:
    def test_granted(self):
        ctx = CallerContext(
            auth_type=AuthType.API_KEY,
            user_id="u1",
            permissions=PermissionSet.parse(["audit:read"]),
        )
        require_scope(ctx, "audit:read")

    def test_missing_scope_raises(self):
        ctx = CallerContext(auth_type=AuthType.API_KEY, user_id="u1")
        with pytest.raises(GuardError, match="permission denied"):
            require_scope(ctx, "audit:read")
