"""Credential service — scoped API key lifecycle.

- Issue keys (secret returned once, only its SHA-256 stored)
- Verify presented ``<id>.<secret>`` strings
- Permission and IP allow-list checks
- Rotate / revoke (keys are never deleted)
- Usage recording and statistics
"""

from __future__ import annotations

import ipaddress
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select

from account_guard.engine.models.api_key import APIKey, APIKeyStatus, APIKeyUsage
from account_guard.engine.permissions import PermissionSet
from account_guard.errors.definitions import ErrAPIKeyNotFound, ErrInvalidAllowList
from account_guard.utils.crypto import constant_time_equals, new_id, random_token, sha256_hex
from account_guard.utils.locks import KeyedLock

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession

    from account_guard.engine.client import GuardEngine

logger = logging.getLogger(__name__)

KEY_ID_PREFIX = "ak"
_TOP_ENDPOINTS = 10

# Verification failure messages
ERR_INVALID_FORMAT = "Invalid key format"
ERR_NOT_FOUND = "Key not found"
ERR_EXPIRED = "Key expired"
ERR_INVALID_KEY = "Invalid key"


@dataclass(frozen=True)
class KeyVerification:
    """Outcome of verifying a presented key string."""

    valid: bool
    key: APIKey | None = None
    error: str | None = None


@dataclass(frozen=True)
class RotationResult:
    """Outcome of a key rotation. ``plaintext`` is set only on success."""

    success: bool
    key: APIKey | None = None
    plaintext: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class UsageStatistics:
    """Aggregated usage of one key over a timeframe."""

    total_requests: int
    success_rate: float
    avg_response_time_ms: float
    top_endpoints: list[dict[str, Any]] = field(default_factory=list)


def _validate_allow_list(entries: Iterable[str]) -> list[str]:
    """Normalize allow-list entries to addresses or networks.

    Raises:
        GuardError: If any entry is neither an IP address nor a CIDR block.
    """
    normalized: list[str] = []
    for raw in entries:
        entry = raw.strip()
        try:
            if "/" in entry:
                normalized.append(str(ipaddress.ip_network(entry, strict=False)))
            else:
                normalized.append(str(ipaddress.ip_address(entry)))
        except ValueError as e:
            raise ErrInvalidAllowList from e
    return normalized


def _hash_secret(secret: str) -> str:
    return sha256_hex(secret)


class CredentialService:
    """Business logic for API key management.

    Keys are mutated under a per-key lock so verification, rotation and
    revocation of the same key never interleave.
    """

    def __init__(self, engine: GuardEngine) -> None:
        self._engine = engine
        self._locks = KeyedLock()

    # ------------------------------------------------------------------
    # Issue / verify
    # ------------------------------------------------------------------

    def _new_key(
        self,
        user_id: str,
        name: str,
        permissions: PermissionSet,
        ip_allow_list: list[str],
        expires_in_ms: int | None,
    ) -> tuple[APIKey, str]:
        now = self._engine.clock.now_ms()
        key_id = new_id(KEY_ID_PREFIX)
        secret = random_token(self._engine.config.credentials.secret_bytes)
        api_key = APIKey(
            id=key_id,
            user_id=user_id,
            name=name,
            secret_hash=_hash_secret(secret),
            permissions=permissions.to_list(),
            ip_allow_list=ip_allow_list,
            issued_at=now,
            expires_at=now + expires_in_ms if expires_in_ms is not None else None,
            status=APIKeyStatus.ACTIVE,
        )
        return api_key, f"{key_id}.{secret}"

    async def issue(
        self,
        user_id: str,
        name: str,
        permissions: Iterable[str],
        ip_allow_list: Iterable[str] = (),
        expires_in_ms: int | None = None,
    ) -> tuple[APIKey, str]:
        """Issue a new API key.

        Args:
            user_id: Owner of the key.
            name: Human-readable label.
            permissions: Scopes to grant; ``*`` grants everything.
            ip_allow_list: Addresses or CIDR blocks; empty allows any address.
            expires_in_ms: Lifetime in milliseconds, or None for no expiry.

        Returns:
            Tuple of (persisted APIKey, plaintext ``<id>.<secret>``).
            The plaintext is returned ONLY here.

        Raises:
            GuardError: On malformed permissions or allow-list entries.
        """
        perms = PermissionSet.parse(permissions)
        allow = _validate_allow_list(ip_allow_list)
        api_key, plaintext = self._new_key(user_id, name, perms, allow, expires_in_ms)

        async with self._engine.datastore.session() as session:
            session.add(api_key)
            await session.commit()

        logger.info("Issued API key %s for user %s", api_key.id, user_id)
        return api_key, plaintext

    async def verify(self, key_string: str) -> KeyVerification:
        """Verify a presented ``<id>.<secret>`` string.

        An active key past its expiry is transitioned to ``expired``. On
        success ``last_used_at`` is updated.
        """
        key_id, sep, secret = key_string.partition(".")
        if not sep or not key_id or not secret:
            return self._verification_failed(ERR_INVALID_FORMAT)

        async with self._locks.hold(key_id), self._engine.datastore.session() as session:
            api_key = await session.get(APIKey, key_id)
            if api_key is None:
                return self._verification_failed(ERR_NOT_FOUND)

            if not api_key.is_active:
                return self._verification_failed(f"Key is {api_key.status}")

            now = self._engine.clock.now_ms()
            if api_key.expires_at is not None and api_key.expires_at < now:
                api_key.status = APIKeyStatus.EXPIRED
                await session.commit()
                logger.info("API key %s expired", key_id)
                return self._verification_failed(ERR_EXPIRED)

            if not constant_time_equals(_hash_secret(secret), api_key.secret_hash):
                return self._verification_failed(ERR_INVALID_KEY)

            api_key.last_used_at = now
            await session.commit()

        if self._engine.metrics:
            self._engine.metrics.record_key_verification("ok")
        return KeyVerification(valid=True, key=api_key)

    def _verification_failed(self, error: str) -> KeyVerification:
        if self._engine.metrics:
            self._engine.metrics.record_key_verification(error.lower().replace(" ", "_"))
        logger.debug("API key verification failed: %s", error)
        return KeyVerification(valid=False, error=error)

    # ------------------------------------------------------------------
    # Authorization checks
    # ------------------------------------------------------------------

    @staticmethod
    def permission_set(api_key: APIKey) -> PermissionSet:
        """Parsed permissions of *api_key*."""
        return PermissionSet.parse(api_key.permissions)

    def check_permission(self, api_key: APIKey, required: str) -> bool:
        """True if the key grants *required* (or grants everything)."""
        return self.permission_set(api_key).allows(required)

    @staticmethod
    def check_ip_allowed(api_key: APIKey, ip: str) -> bool:
        """True if *ip* is allowed by the key's allow-list.

        An empty list allows any address. Entries match exactly or by CIDR
        containment; an unparsable *ip* is never allowed by a non-empty list.
        """
        if not api_key.ip_allow_list:
            return True
        try:
            addr = ipaddress.ip_address(ip.strip())
        except ValueError:
            return False
        # Dual-stack listeners report IPv4 clients as ::ffff:a.b.c.d.
        addr = getattr(addr, "ipv4_mapped", None) or addr
        for entry in api_key.ip_allow_list:
            try:
                if "/" in entry:
                    if addr in ipaddress.ip_network(entry, strict=False):
                        return True
                elif addr == ipaddress.ip_address(entry):
                    return True
            except ValueError:
                logger.warning("Ignoring malformed allow-list entry %r on key %s", entry, api_key.id)
        return False

    # ------------------------------------------------------------------
    # Rotation / revocation
    # ------------------------------------------------------------------

    async def rotate(self, key_id: str) -> RotationResult:
        """Revoke *key_id* and issue a replacement in one transaction.

        The replacement keeps user, name, permissions and allow-list, and the
        remaining lifetime if the old key had an expiry. Only active keys can
        be rotated.
        """
        async with self._locks.hold(key_id), self._engine.datastore.session() as session:
            old = await session.get(APIKey, key_id)
            if old is None:
                return RotationResult(success=False, error=ERR_NOT_FOUND)
            if not old.is_active:
                return RotationResult(success=False, error=f"Key is {old.status}")

            now = self._engine.clock.now_ms()
            remaining: int | None = None
            if old.expires_at is not None:
                remaining = old.expires_at - now
                if remaining <= 0:
                    old.status = APIKeyStatus.EXPIRED
                    await session.commit()
                    return RotationResult(success=False, error=ERR_EXPIRED)

            new_key, plaintext = self._new_key(
                old.user_id,
                old.name,
                PermissionSet.parse(old.permissions),
                list(old.ip_allow_list),
                remaining,
            )
            old.status = APIKeyStatus.REVOKED
            old.replaced_by = new_key.id
            session.add(new_key)
            await session.commit()

        logger.info("Rotated API key %s -> %s", key_id, new_key.id)
        return RotationResult(success=True, key=new_key, plaintext=plaintext)

    async def revoke(self, key_id: str) -> bool:
        """Revoke a key. Idempotent; False only if the key does not exist."""
        async with self._locks.hold(key_id), self._engine.datastore.session() as session:
            api_key = await session.get(APIKey, key_id)
            if api_key is None:
                return False
            if api_key.status != APIKeyStatus.REVOKED:
                api_key.status = APIKeyStatus.REVOKED
                await session.commit()
                logger.info("Revoked API key %s", key_id)
        return True

    # ------------------------------------------------------------------
    # Queries and updates
    # ------------------------------------------------------------------

    async def get_key(self, key_id: str) -> APIKey | None:
        """Look up a key by id."""
        async with self._engine.datastore.session() as session:
            return await session.get(APIKey, key_id)

    async def list_keys(self, user_id: str) -> list[APIKey]:
        """All keys of *user_id*, oldest first, whatever their status."""
        async with self._engine.datastore.session() as session:
            result = await session.execute(
                select(APIKey).where(APIKey.user_id == user_id).order_by(APIKey.issued_at)
            )
            return list(result.scalars().all())

    async def count_active_keys(self, user_id: str | None = None) -> int:
        """Number of active keys, optionally for one user."""
        stmt = select(func.count(APIKey.id)).where(APIKey.status == APIKeyStatus.ACTIVE)
        if user_id is not None:
            stmt = stmt.where(APIKey.user_id == user_id)
        async with self._engine.datastore.session() as session:
            return (await session.execute(stmt)).scalar_one()

    async def _get_for_update(self, session: AsyncSession, key_id: str) -> APIKey:
        api_key = await session.get(APIKey, key_id)
        if api_key is None:
            raise ErrAPIKeyNotFound
        return api_key

    async def update_permissions(self, key_id: str, permissions: Iterable[str]) -> APIKey:
        """Replace the scopes granted by a key.

        Raises:
            GuardError: If the key is unknown or a scope is malformed.
        """
        perms = PermissionSet.parse(permissions)
        async with self._locks.hold(key_id), self._engine.datastore.session() as session:
            api_key = await self._get_for_update(session, key_id)
            api_key.permissions = perms.to_list()
            await session.commit()
        return api_key

    async def update_ip_allow_list(self, key_id: str, ip_allow_list: Iterable[str]) -> APIKey:
        """Replace the allow-list of a key.

        Raises:
            GuardError: If the key is unknown or an entry is malformed.
        """
        allow = _validate_allow_list(ip_allow_list)
        async with self._locks.hold(key_id), self._engine.datastore.session() as session:
            api_key = await self._get_for_update(session, key_id)
            api_key.ip_allow_list = allow
            await session.commit()
        return api_key

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    async def record_usage(
        self,
        key_id: str,
        endpoint: str,
        method: str,
        status_code: int,
        ip_address: str = "",
        response_time_ms: float = 0.0,
    ) -> None:
        """Record one request made with *key_id*."""
        usage = APIKeyUsage(
            key_id=key_id,
            endpoint=endpoint,
            method=method.upper(),
            status_code=status_code,
            ip_address=ip_address,
            response_time_ms=response_time_ms,
            timestamp=self._engine.clock.now_ms(),
        )
        async with self._engine.datastore.session() as session:
            session.add(usage)
            await session.commit()

    async def usage_statistics(
        self, key_id: str, timeframe_ms: int = 86_400_000
    ) -> UsageStatistics:
        """Aggregate usage of *key_id* over the last *timeframe_ms*.

        Success means a 2xx status code.
        """
        cutoff = self._engine.clock.now_ms() - timeframe_ms
        async with self._engine.datastore.session() as session:
            result = await session.execute(
                select(APIKeyUsage).where(
                    APIKeyUsage.key_id == key_id,
                    APIKeyUsage.timestamp >= cutoff,
                )
            )
            rows = list(result.scalars().all())

        total = len(rows)
        if total == 0:
            return UsageStatistics(total_requests=0, success_rate=0.0, avg_response_time_ms=0.0)

        successes = sum(1 for r in rows if 200 <= r.status_code < 300)
        endpoints = Counter(r.endpoint for r in rows)
        return UsageStatistics(
            total_requests=total,
            success_rate=successes / total,
            avg_response_time_ms=sum(r.response_time_ms for r in rows) / total,
            top_endpoints=[
                {"endpoint": ep, "count": n} for ep, n in endpoints.most_common(_TOP_ENDPOINTS)
            ],
        )

    async def prune_usage(self, older_than_ms: int) -> int:
        """Delete usage rows recorded before *older_than_ms*. Returns the count."""
        async with self._engine.datastore.session() as session:
            result = await session.execute(
                delete(APIKeyUsage).where(APIKeyUsage.timestamp < older_than_ms)
            )
            await session.commit()
            return result.rowcount or 0  # type: ignore[attr-defined]
