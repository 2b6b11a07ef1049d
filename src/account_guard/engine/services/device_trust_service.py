"""Device trust service — fingerprinting, trust scoring, login anomalies.

Unknown devices are treated as maximal risk (fail-closed).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select

from account_guard.engine.models.device import DeviceFingerprint, SuspiciousActivity
from account_guard.utils.clock import MS_PER_DAY, hour_of_day
from account_guard.utils.crypto import new_id, sha256_hex
from account_guard.utils.locks import KeyedLock

if TYPE_CHECKING:
    from collections.abc import Mapping

    from sqlalchemy.ext.asyncio import AsyncSession

    from account_guard.engine.client import GuardEngine

logger = logging.getLogger(__name__)

DEVICE_ID_PREFIX = "dev"
MULTIPLE_FAILED_LOGINS = "multiple_failed_logins"

# Incremental trust nudges
_TRUST_ADJUSTMENTS = {
    "successful_login": 0.01,
    "failed_login": -0.05,
    "suspicious_activity": -0.15,
    "verification_completed": 0.2,
}

_LOW_TRUST = 0.3
_VERY_LOW_TRUST = 0.2
_VERIFICATION_TRUST = 0.5
_UNUSUAL_HOUR_MIN_LOGINS = 10
_FAILURE_STREAK_ANOMALY = 2


@dataclass(frozen=True)
class DeviceInfo:
    """Attributes reported by a client device."""

    user_agent: str = ""
    platform: str = ""
    screen_resolution: str = ""
    timezone: str = ""
    language: str = ""
    plugins: tuple[str, ...] = ()
    fonts: tuple[str, ...] = ()
    canvas: str = ""
    webgl: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> DeviceInfo:
        return cls(
            user_agent=str(data.get("user_agent") or ""),
            platform=str(data.get("platform") or ""),
            screen_resolution=str(data.get("screen_resolution") or ""),
            timezone=str(data.get("timezone") or ""),
            language=str(data.get("language") or ""),
            plugins=tuple(data.get("plugins") or ()),
            fonts=tuple(data.get("fonts") or ()),
            canvas=str(data.get("canvas") or ""),
            webgl=str(data.get("webgl") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_agent": self.user_agent,
            "platform": self.platform,
            "screen_resolution": self.screen_resolution,
            "timezone": self.timezone,
            "language": self.language,
            "plugins": list(self.plugins),
            "fonts": list(self.fonts),
            "canvas": self.canvas,
            "webgl": self.webgl,
        }


@dataclass(frozen=True)
class LoginResult:
    """Device state after a recorded login attempt."""

    found: bool
    trust_score: float = 0.0
    failed_login_attempts: int = 0
    flagged: bool = False


@dataclass(frozen=True)
class PatternAnalysis:
    anomalous: bool
    anomalies: list[str] = field(default_factory=list)
    risk_level: str = "low"


@dataclass(frozen=True)
class DeviceStatistics:
    total_devices: int
    verified_devices: int
    average_trust_score: float
    suspicious_devices: int


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _nudge(device: DeviceFingerprint, event: str) -> None:
    device.trust_score = _clamp(device.trust_score + _TRUST_ADJUSTMENTS[event])


def compute_trust_score(device: DeviceFingerprint, now: int) -> float:
    """Composite trust of *device* from its history, clamped to [0, 1]."""
    score = 0.5

    age_days = (now - device.first_seen) / MS_PER_DAY
    if age_days > 30:
        score += 0.2
    elif age_days > 7:
        score += 0.1

    if device.login_count > 50:
        score += 0.15
    elif device.login_count > 10:
        score += 0.1
    elif device.login_count > 5:
        score += 0.05

    if device.failed_login_attempts == 0:
        score += 0.1
    elif device.failed_login_attempts > 5:
        score -= 0.2

    if device.verified:
        score += 0.15

    score -= len(set(device.risk_factors)) * 0.05
    return _clamp(score)


class DeviceTrustService:
    """Business logic for device fingerprinting and trust."""

    def __init__(self, engine: GuardEngine) -> None:
        self._engine = engine
        self._locks = KeyedLock()

    # ------------------------------------------------------------------
    # Fingerprinting / registration
    # ------------------------------------------------------------------

    @staticmethod
    def fingerprint(device_info: DeviceInfo | Mapping[str, Any]) -> str:
        """Deterministic SHA-256 hex over the ordered device attributes."""
        info = device_info if isinstance(device_info, DeviceInfo) else DeviceInfo.from_mapping(device_info)
        data = "|".join(
            [
                info.user_agent,
                info.platform,
                info.screen_resolution,
                info.timezone,
                info.language,
                ",".join(info.plugins),
                ",".join(info.fonts),
                info.canvas,
                info.webgl,
            ]
        )
        return sha256_hex(data)

    async def register(
        self, user_id: str, device_info: DeviceInfo | Mapping[str, Any]
    ) -> DeviceFingerprint:
        """Register a device for *user_id*.

        A device already known for this user is returned unchanged.
        """
        info = device_info if isinstance(device_info, DeviceInfo) else DeviceInfo.from_mapping(device_info)
        fp = self.fingerprint(info)

        async with self._locks.hold(f"{user_id}:{fp}"):
            existing = await self.identify(info, user_id=user_id)
            if existing is not None:
                return existing

            now = self._engine.clock.now_ms()
            device = DeviceFingerprint(
                id=new_id(DEVICE_ID_PREFIX),
                user_id=user_id,
                fingerprint=fp,
                trust_score=self._engine.config.devices.initial_trust,
                first_seen=now,
                last_seen=now,
                login_count=1,
                failed_login_attempts=0,
                login_hours=[hour_of_day(now)],
                typical_locations=[],
                risk_factors=[],
                verified=False,
                attributes=info.to_dict(),
            )
            async with self._engine.datastore.session() as session:
                session.add(device)
                await session.commit()

        logger.info("Registered device %s for user %s", device.id, user_id)
        return device

    async def identify(
        self, device_info: DeviceInfo | Mapping[str, Any], user_id: str | None = None
    ) -> DeviceFingerprint | None:
        """Find a registered device by fingerprint, optionally for one user."""
        stmt = select(DeviceFingerprint).where(
            DeviceFingerprint.fingerprint == self.fingerprint(device_info)
        )
        if user_id is not None:
            stmt = stmt.where(DeviceFingerprint.user_id == user_id)
        stmt = stmt.order_by(DeviceFingerprint.last_seen.desc()).limit(1)
        async with self._engine.datastore.session() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def identify_or_register(
        self, user_id: str, device_info: DeviceInfo | Mapping[str, Any]
    ) -> tuple[DeviceFingerprint, bool]:
        """Return ``(device, created)`` for *user_id*'s device."""
        device = await self.identify(device_info, user_id=user_id)
        if device is not None:
            return device, False
        return await self.register(user_id, device_info), True

    async def get_device(self, device_id: str) -> DeviceFingerprint | None:
        async with self._engine.datastore.session() as session:
            return await session.get(DeviceFingerprint, device_id)

    # ------------------------------------------------------------------
    # Login tracking
    # ------------------------------------------------------------------

    async def record_login(
        self, device_id: str, success: bool, location: str | None = None
    ) -> LoginResult:
        """Record a login attempt made from *device_id*.

        Success resets the failure streak and learns the login hour and
        location. Once the failure streak reaches the flag threshold a
        high-severity ``multiple_failed_logins`` activity is flagged.
        """
        threshold = self._engine.config.devices.failed_login_flag_threshold
        flagged = False
        async with self._locks.hold(device_id), self._engine.datastore.session() as session:
            device = await session.get(DeviceFingerprint, device_id)
            if device is None:
                logger.warning("Login recorded for unknown device %s", device_id)
                return LoginResult(found=False)

            now = self._engine.clock.now_ms()
            device.last_seen = now
            if success:
                device.login_count += 1
                device.failed_login_attempts = 0
                device.login_hours = [*device.login_hours, hour_of_day(now)]
                if location and location not in device.typical_locations:
                    device.typical_locations = [*device.typical_locations, location]
                _nudge(device, "successful_login")
            else:
                device.failed_login_attempts += 1
                _nudge(device, "failed_login")
                if device.failed_login_attempts >= threshold:
                    self._flag(
                        session,
                        device,
                        MULTIPLE_FAILED_LOGINS,
                        "high",
                        f"{device.failed_login_attempts} consecutive failed login attempts",
                    )
                    flagged = True
            await session.commit()

        return LoginResult(
            found=True,
            trust_score=device.trust_score,
            failed_login_attempts=device.failed_login_attempts,
            flagged=flagged,
        )

    # ------------------------------------------------------------------
    # Trust and risk
    # ------------------------------------------------------------------

    def trust_score(self, device: DeviceFingerprint) -> float:
        """Composite trust score of *device* at the current time."""
        return compute_trust_score(device, self._engine.clock.now_ms())

    async def analyze_pattern(
        self,
        device_id: str,
        activity: Mapping[str, Any] | None = None,
        *,
        owner: str | None = None,
    ) -> PatternAnalysis:
        """Look for anomalies in *activity* against the device's history.

        ``activity`` may carry ``location``. Unknown devices are anomalous
        with high risk. When *owner* is given, a device registered to any
        other user is treated as unknown.
        """
        device = await self.get_device(device_id)
        if device is not None and owner is not None and device.user_id != owner:
            logger.warning("Device %s presented by %s is registered to another user", device_id, owner)
            device = None
        if device is None:
            logger.warning("Pattern analysis for unknown device %s", device_id)
            return PatternAnalysis(anomalous=True, anomalies=["Unknown device"], risk_level="high")

        activity = activity or {}
        anomalies: list[str] = []

        current_hour = hour_of_day(self._engine.clock.now_ms())
        if (
            device.login_count >= _UNUSUAL_HOUR_MIN_LOGINS
            and current_hour not in set(device.login_hours)
        ):
            anomalies.append("Unusual login time")

        location = activity.get("location")
        if location and device.typical_locations and location not in device.typical_locations:
            anomalies.append("New location")

        if device.trust_score < _LOW_TRUST:
            anomalies.append("Low trust score")

        if device.failed_login_attempts > _FAILURE_STREAK_ANOMALY:
            anomalies.append("Recent failed login attempts")

        if len(anomalies) >= 3 or device.trust_score < _VERY_LOW_TRUST:
            risk = "high"
        elif len(anomalies) >= 2 or device.trust_score < _VERIFICATION_TRUST:
            risk = "medium"
        else:
            risk = "low"

        return PatternAnalysis(anomalous=bool(anomalies), anomalies=anomalies, risk_level=risk)

    async def require_additional_verification(self, device_id: str) -> bool:
        """True unless the device is trusted, verified, clean and recently seen."""
        device = await self.get_device(device_id)
        if device is None:
            return True
        if device.trust_score < _VERIFICATION_TRUST or not device.verified:
            return True
        if device.failed_login_attempts > 0:
            return True
        stale_ms = self._engine.config.devices.stale_after_days * MS_PER_DAY
        return self._engine.clock.now_ms() - device.last_seen > stale_ms

    # ------------------------------------------------------------------
    # Suspicious activity / verification
    # ------------------------------------------------------------------

    def _flag(
        self,
        session: AsyncSession,
        device: DeviceFingerprint,
        activity_type: str,
        severity: str,
        details: str,
    ) -> None:
        session.add(
            SuspiciousActivity(
                device_id=device.id,
                activity_type=activity_type,
                severity=severity,
                timestamp=self._engine.clock.now_ms(),
                details=details,
            )
        )
        if activity_type not in device.risk_factors:
            device.risk_factors = [*device.risk_factors, activity_type]
        _nudge(device, "suspicious_activity")
        logger.warning(
            "Suspicious activity %s (%s) on device %s: %s",
            activity_type,
            severity,
            device.id,
            details,
        )

    async def flag_suspicious_activity(
        self, device_id: str, activity_type: str, severity: str, details: str = ""
    ) -> bool:
        """Flag an activity against a device. False if the device is unknown."""
        async with self._locks.hold(device_id), self._engine.datastore.session() as session:
            device = await session.get(DeviceFingerprint, device_id)
            if device is None:
                return False
            self._flag(session, device, activity_type, severity, details)
            await session.commit()
        return True

    async def verify_device(self, device_id: str) -> bool:
        """Mark a device as verified by the user."""
        async with self._locks.hold(device_id), self._engine.datastore.session() as session:
            device = await session.get(DeviceFingerprint, device_id)
            if device is None:
                return False
            if not device.verified:
                device.verified = True
                _nudge(device, "verification_completed")
                await session.commit()
        return True

    async def suspicious_activities(self, device_id: str) -> list[SuspiciousActivity]:
        async with self._engine.datastore.session() as session:
            result = await session.execute(
                select(SuspiciousActivity)
                .where(SuspiciousActivity.device_id == device_id)
                .order_by(SuspiciousActivity.timestamp, SuspiciousActivity.id)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Per-user queries
    # ------------------------------------------------------------------

    async def user_devices(self, user_id: str) -> list[DeviceFingerprint]:
        """Devices of *user_id*, most recently seen first."""
        async with self._engine.datastore.session() as session:
            result = await session.execute(
                select(DeviceFingerprint)
                .where(DeviceFingerprint.user_id == user_id)
                .order_by(DeviceFingerprint.last_seen.desc())
            )
            return list(result.scalars().all())

    async def remove_device(self, device_id: str) -> bool:
        """Forget a device and its flagged activities."""
        async with self._locks.hold(device_id), self._engine.datastore.session() as session:
            device = await session.get(DeviceFingerprint, device_id)
            if device is None:
                return False
            await session.delete(device)
            await session.execute(
                delete(SuspiciousActivity).where(SuspiciousActivity.device_id == device_id)
            )
            await session.commit()
        logger.info("Removed device %s", device_id)
        return True

    async def device_statistics(self, user_id: str) -> DeviceStatistics:
        devices = await self.user_devices(user_id)
        total = len(devices)
        return DeviceStatistics(
            total_devices=total,
            verified_devices=sum(1 for d in devices if d.verified),
            average_trust_score=sum(d.trust_score for d in devices) / total if total else 0.0,
            suspicious_devices=sum(1 for d in devices if d.trust_score < _LOW_TRUST),
        )

    async def count_devices(self) -> int:
        async with self._engine.datastore.session() as session:
            return (await session.execute(select(func.count(DeviceFingerprint.id)))).scalar_one()
