"""Authentication middleware: API key and admin key.

- Reads ``x-api-key`` (``<id>.<secret>``) or ``x-admin-key`` headers
- Verifies the key, its IP allow-list and the per-key request quota
- Runs device pattern analysis when ``x-device-id`` is sent; anomalies raise
  an alert but do not refuse the request
- Resolves the caller's user id and granted permissions
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from account_guard.engine.permissions import PermissionSet
from account_guard.errors.definitions import (
    ErrAdminRequired,
    ErrForbidden,
    ErrIPNotAllowed,
    ErrRateLimited,
    ErrUnauthorized,
)
from account_guard.utils.crypto import constant_time_equals

if TYPE_CHECKING:
    from account_guard.engine.client import GuardEngine

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

AUTH_HEADER_API_KEY = "x-api-key"
AUTH_HEADER_ADMIN_KEY = "x-admin-key"
AUTH_HEADER_DEVICE_ID = "x-device-id"

ADMIN_USER_ID = "admin"
QUOTA_IDENTIFIER_PREFIX = "key:"


class AuthType(enum.IntEnum):
    """Authentication type for the current request."""

    API_KEY = 0
    ADMIN = 1


# ---------------------------------------------------------------------------
# CallerContext — passed through request state after auth
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CallerContext:
    """Authenticated caller attached to the request."""

    auth_type: AuthType
    user_id: str
    key_id: str = ""
    permissions: PermissionSet = field(default_factory=PermissionSet)
    ip_address: str = "unknown"
    device_id: str = ""
    device_risk: str = ""

    @property
    def is_admin(self) -> bool:
        return self.auth_type == AuthType.ADMIN

    def allows(self, scope: str) -> bool:
        return self.is_admin or self.permissions.allows(scope)


# ---------------------------------------------------------------------------
# Authentication logic
# ---------------------------------------------------------------------------


async def authenticate_request(
    engine: GuardEngine,
    *,
    api_key_header: str = "",
    admin_key_header: str = "",
    client_ip: str = "unknown",
    device_id_header: str = "",
) -> CallerContext:
    """Authenticate a request based on auth headers.

    Args:
        engine: The guard engine.
        api_key_header: Value of ``x-api-key`` header.
        admin_key_header: Value of ``x-admin-key`` header.
        client_ip: Address the request came from.
        device_id_header: Value of ``x-device-id`` header, if any.

    Returns:
        CallerContext with resolved auth type, user and permissions.

    Raises:
        GuardError: If no valid credential is presented, the address is not
            allowed, or the key's request quota is exhausted.
    """
    if admin_key_header:
        return _auth_by_admin_key(engine, admin_key_header, client_ip)

    if api_key_header:
        return await _auth_by_api_key(engine, api_key_header, client_ip, device_id_header)

    raise ErrUnauthorized


def _auth_by_admin_key(engine: GuardEngine, raw_key: str, client_ip: str) -> CallerContext:
    admin_key = engine.config.admin_key
    if not admin_key or not constant_time_equals(raw_key, admin_key):
        raise ErrUnauthorized
    return CallerContext(
        auth_type=AuthType.ADMIN,
        user_id=ADMIN_USER_ID,
        permissions=PermissionSet.all(),
        ip_address=client_ip,
    )


async def _auth_by_api_key(
    engine: GuardEngine, raw_key: str, client_ip: str, device_id: str
) -> CallerContext:
    credentials = engine.credential_service
    verification = await credentials.verify(raw_key)
    if not verification.valid or verification.key is None:
        raise ErrUnauthorized
    api_key = verification.key

    device_risk = ""
    if device_id:
        device_risk = await _analyze_device(engine, api_key.user_id, device_id, client_ip)

    if not credentials.check_ip_allowed(api_key, client_ip):
        raise ErrIPNotAllowed

    quota = await engine.quota_service.check(
        QUOTA_IDENTIFIER_PREFIX + api_key.id, engine.config.server.api_rate_limit_rule
    )
    if not quota.allowed:
        raise ErrRateLimited

    return CallerContext(
        auth_type=AuthType.API_KEY,
        user_id=api_key.user_id,
        key_id=api_key.id,
        permissions=credentials.permission_set(api_key),
        ip_address=client_ip,
        device_id=device_id,
        device_risk=device_risk,
    )


async def _analyze_device(engine: GuardEngine, user_id: str, device_id: str, client_ip: str) -> str:
    analysis = await engine.device_trust_service.analyze_pattern(
        device_id, {"ip_address": client_ip}, owner=user_id
    )
    if analysis.anomalous:
        await engine.alert_service.from_pattern_analysis(user_id, device_id, analysis)
    return analysis.risk_level


def require_admin(ctx: CallerContext) -> None:
    """Raise if the caller is not the operator.

    Raises:
        GuardError: If not admin.
    """
    if not ctx.is_admin:
        raise ErrAdminRequired


def require_scope(ctx: CallerContext, scope: str) -> None:
    """Raise if the caller lacks *scope*.

    Raises:
        GuardError: If the scope is not granted.
    """
    if not ctx.allows(scope):
        raise ErrForbidden
