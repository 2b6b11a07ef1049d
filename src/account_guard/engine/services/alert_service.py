"""Alert service — severity-routed security alerts and incident tracking.

Alerts fan out to delivery channels by severity through the notification
service. Resolution and escalation are one-way and each is recorded as an
incident response.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select

from account_guard.engine.models.alert import (
    AlertChannel,
    AlertSeverity,
    IncidentResponse,
    SecurityAlert,
)
from account_guard.errors.definitions import ErrAlertNotFound, ErrInvalidSeverity
from account_guard.notifications.events import AlertEvent
from account_guard.utils.clock import MS_PER_DAY, iso_date
from account_guard.utils.crypto import new_id
from account_guard.utils.locks import KeyedLock

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from account_guard.engine.client import GuardEngine
    from account_guard.engine.services.device_trust_service import PatternAnalysis
    from account_guard.engine.services.quota_service import BruteForceResult

logger = logging.getLogger(__name__)

ALERT_ID_PREFIX = "alert"

# Alert types
UNUSUAL_LOCATION = "unusual_location"
FAILED_LOGIN_ATTEMPTS = "failed_login_attempts"
LARGE_WITHDRAWAL = "large_withdrawal"
SUSPICIOUS_DEVICE = "suspicious_device"
API_RATE_LIMIT_EXCEEDED = "api_rate_limit_exceeded"
BRUTE_FORCE = "brute_force"
DEVICE_ANOMALY = "device_anomaly"

_CHANNELS: dict[AlertSeverity, tuple[AlertChannel, ...]] = {
    AlertSeverity.CRITICAL: (
        AlertChannel.EMAIL,
        AlertChannel.SMS,
        AlertChannel.PUSH,
        AlertChannel.IN_APP,
    ),
    AlertSeverity.HIGH: (AlertChannel.EMAIL, AlertChannel.PUSH, AlertChannel.IN_APP),
    AlertSeverity.MEDIUM: (AlertChannel.PUSH, AlertChannel.IN_APP),
    AlertSeverity.LOW: (AlertChannel.IN_APP,),
}

_TREND_WEEK = 7
_TREND_UP = 1.2
_TREND_DOWN = 0.8
_DEFAULT_STATS_TIMEFRAME_MS = 30 * MS_PER_DAY


def channels_for(severity: AlertSeverity | str) -> list[str]:
    """Delivery channels for *severity*."""
    return [str(c) for c in _CHANNELS[AlertSeverity(severity)]]


def _severity(value: AlertSeverity | str) -> AlertSeverity:
    try:
        return AlertSeverity(value)
    except ValueError as e:
        raise ErrInvalidSeverity from e


def _decimal(value: Any) -> Decimal | None:
    """Parse a finite number from an activity field, or None."""
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return number if number.is_finite() else None


def _count(value: Any) -> int | None:
    number = _decimal(value if value is not None else 0)
    return None if number is None else int(number)


@dataclass(frozen=True)
class AlertStatistics:
    total_alerts: int
    by_severity: dict[str, int]
    by_type: dict[str, int]
    resolved_count: int
    average_resolution_time_ms: float


@dataclass(frozen=True)
class AlertTrend:
    daily_alerts: list[dict[str, Any]] = field(default_factory=list)
    direction: str = "stable"


class AlertService:
    """Business logic for security alerts."""

    def __init__(self, engine: GuardEngine) -> None:
        self._engine = engine
        self._locks = KeyedLock()
        cfg = engine.config.alerts
        self._thresholds: dict[str, float] = {
            FAILED_LOGIN_ATTEMPTS: cfg.failed_login_threshold,
            API_RATE_LIMIT_EXCEEDED: 5,
            UNUSUAL_LOCATION: 1,
            LARGE_WITHDRAWAL: cfg.large_withdrawal_threshold,
            SUSPICIOUS_DEVICE: cfg.low_trust_threshold,
        }

    # ------------------------------------------------------------------
    # Thresholds
    # ------------------------------------------------------------------

    def configure_threshold(self, alert_type: str, threshold: float) -> None:
        self._thresholds[alert_type] = threshold

    def get_threshold(self, alert_type: str) -> float:
        return self._thresholds.get(alert_type, 1)

    # ------------------------------------------------------------------
    # Create / deliver
    # ------------------------------------------------------------------

    async def create(
        self,
        user_id: str,
        alert_type: str,
        severity: AlertSeverity | str,
        title: str,
        description: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> SecurityAlert:
        """Persist an alert and deliver it on its severity's channels.

        Raises:
            GuardError: If *severity* is not a known severity.
        """
        level = _severity(severity)
        alert = SecurityAlert(
            id=new_id(ALERT_ID_PREFIX),
            user_id=user_id,
            alert_type=alert_type,
            severity=level,
            title=title,
            description=description,
            timestamp=self._engine.clock.now_ms(),
            resolved=False,
            channels=channels_for(level),
            metadata_=metadata or {},
        )
        async with self._engine.datastore.session() as session:
            session.add(alert)
            await session.commit()

        logger.info("Alert %s (%s/%s) raised for user %s", alert.id, alert_type, level, user_id)
        if self._engine.metrics:
            self._engine.metrics.record_alert(level)
        await self._deliver(alert)
        return alert

    async def _deliver(self, alert: SecurityAlert, *, escalated: bool = False) -> None:
        notifications = self._engine.notification_service
        if notifications is None:
            return
        for channel in alert.channels:
            await notifications.notify(
                AlertEvent(
                    alert_id=alert.id,
                    user_id=alert.user_id,
                    channel=channel,
                    severity=alert.severity,
                    title=alert.title,
                    escalated=escalated,
                    content={"alert_type": alert.alert_type, "description": alert.description},
                )
            )

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    async def detect_anomalies(
        self, user_id: str, activity: Mapping[str, Any]
    ) -> list[SecurityAlert]:
        """Raise the alerts *activity* warrants.

        ``activity["type"]`` selects the rule: ``login`` (location vs
        expected_location), ``failed_login`` (attempts), ``withdrawal``
        (amount), ``device`` (trust_score), ``rate_limit`` (blocked).
        """
        kind = activity.get("type")
        alerts: list[SecurityAlert] = []

        if kind == "login":
            location = activity.get("location")
            expected = activity.get("expected_location")
            if location and expected and location != expected:
                alerts.append(
                    await self.create(
                        user_id,
                        UNUSUAL_LOCATION,
                        AlertSeverity.MEDIUM,
                        "Login from unusual location",
                        f"Login detected from {location}, which differs from your usual locations",
                        {"location": location, "expected_location": expected},
                    )
                )

        elif kind == "failed_login":
            attempts = _count(activity.get("attempts"))
            if attempts is not None and attempts >= self.get_threshold(FAILED_LOGIN_ATTEMPTS):
                alerts.append(
                    await self.create(
                        user_id,
                        FAILED_LOGIN_ATTEMPTS,
                        AlertSeverity.HIGH,
                        "Multiple failed login attempts",
                        f"{attempts} failed login attempts detected",
                        {"attempts": attempts, "ip_address": activity.get("ip_address")},
                    )
                )

        elif kind == "withdrawal":
            amount = _decimal(activity.get("amount"))
            threshold = _decimal(self.get_threshold(LARGE_WITHDRAWAL))
            if amount is not None and threshold is not None and amount > threshold:
                currency = activity.get("currency", "")
                alerts.append(
                    await self.create(
                        user_id,
                        LARGE_WITHDRAWAL,
                        AlertSeverity.HIGH,
                        "Large withdrawal request",
                        f"Withdrawal of {amount} {currency} requested",
                        {
                            "amount": str(amount),
                            "currency": currency,
                            "destination": activity.get("destination"),
                        },
                    )
                )

        elif kind == "device":
            trust = _decimal(activity.get("trust_score"))
            if trust is not None and float(trust) < self.get_threshold(SUSPICIOUS_DEVICE):
                alerts.append(
                    await self.create(
                        user_id,
                        SUSPICIOUS_DEVICE,
                        AlertSeverity.MEDIUM,
                        "Suspicious device detected",
                        f"Login from a device with low trust score ({float(trust):.2f})",
                        {"device_id": activity.get("device_id"), "trust_score": float(trust)},
                    )
                )

        elif kind == "rate_limit":
            blocked = _count(activity.get("blocked"))
            if blocked is not None and blocked >= self.get_threshold(API_RATE_LIMIT_EXCEEDED):
                alerts.append(
                    await self.create(
                        user_id,
                        API_RATE_LIMIT_EXCEEDED,
                        AlertSeverity.MEDIUM,
                        "API rate limit repeatedly exceeded",
                        f"{blocked} requests were rejected by rate limiting",
                        {"rule": activity.get("rule"), "blocked": blocked},
                    )
                )

        return alerts

    async def from_brute_force(self, user_id: str, result: BruteForceResult) -> SecurityAlert | None:
        """Raise an alert for a detected brute-force pattern."""
        if not result.detected:
            return None
        return await self.create(
            user_id,
            BRUTE_FORCE,
            result.severity,
            "Possible brute-force attack",
            result.details,
            {"severity": result.severity},
        )

    async def from_pattern_analysis(
        self, user_id: str, device_id: str, analysis: PatternAnalysis
    ) -> SecurityAlert | None:
        """Raise an alert for an anomalous device pattern."""
        if not analysis.anomalous:
            return None
        return await self.create(
            user_id,
            DEVICE_ANOMALY,
            analysis.risk_level,
            "Unusual device activity",
            ", ".join(analysis.anomalies),
            {"device_id": device_id, "anomalies": analysis.anomalies},
        )

    # ------------------------------------------------------------------
    # Resolution / escalation
    # ------------------------------------------------------------------

    async def resolve(self, alert_id: str, resolved_by: str, notes: str | None = None) -> bool:
        """Resolve an open alert. False if unknown or already resolved."""
        async with self._locks.hold(alert_id), self._engine.datastore.session() as session:
            alert = await session.get(SecurityAlert, alert_id)
            if alert is None or alert.resolved:
                return False
            now = self._engine.clock.now_ms()
            alert.resolved = True
            alert.resolved_at = now
            alert.resolved_by = resolved_by
            session.add(
                IncidentResponse(
                    alert_id=alert_id,
                    action="resolved",
                    performed_by=resolved_by,
                    timestamp=now,
                    outcome="Alert resolved",
                    notes=notes,
                )
            )
            await session.commit()
        return True

    async def bulk_resolve(self, alert_ids: Iterable[str], resolved_by: str) -> int:
        """Resolve several alerts; returns how many were resolved."""
        resolved = 0
        for alert_id in alert_ids:
            if await self.resolve(alert_id, resolved_by):
                resolved += 1
        return resolved

    async def escalate(
        self,
        alert_id: str,
        new_severity: AlertSeverity | str,
        performed_by: str = "system",
    ) -> bool:
        """Raise the severity of an open alert and re-deliver it.

        Escalation only moves upward; an equal or lower severity is refused.

        Raises:
            GuardError: If *new_severity* is not a known severity.
        """
        level = _severity(new_severity)
        async with self._locks.hold(alert_id), self._engine.datastore.session() as session:
            alert = await session.get(SecurityAlert, alert_id)
            if alert is None or alert.resolved:
                return False
            current = AlertSeverity(alert.severity)
            if level.rank <= current.rank:
                return False
            alert.severity = level
            alert.channels = channels_for(level)
            session.add(
                IncidentResponse(
                    alert_id=alert_id,
                    action="escalated",
                    performed_by=performed_by,
                    timestamp=self._engine.clock.now_ms(),
                    outcome=f"Severity raised from {current} to {level}",
                )
            )
            await session.commit()

        logger.info("Alert %s escalated to %s", alert_id, level)
        if self._engine.metrics:
            self._engine.metrics.record_alert(level)
        await self._deliver(alert, escalated=True)
        return True

    async def initiate_incident_response(
        self,
        alert_id: str,
        action: str,
        performed_by: str,
        outcome: str,
        notes: str | None = None,
    ) -> IncidentResponse:
        """Record an action taken on an alert.

        Raises:
            GuardError: If the alert does not exist.
        """
        async with self._engine.datastore.session() as session:
            if await session.get(SecurityAlert, alert_id) is None:
                raise ErrAlertNotFound
            response = IncidentResponse(
                alert_id=alert_id,
                action=action,
                performed_by=performed_by,
                timestamp=self._engine.clock.now_ms(),
                outcome=outcome,
                notes=notes,
            )
            session.add(response)
            await session.commit()
        return response

    async def incident_responses(self, alert_id: str) -> list[IncidentResponse]:
        async with self._engine.datastore.session() as session:
            result = await session.execute(
                select(IncidentResponse)
                .where(IncidentResponse.alert_id == alert_id)
                .order_by(IncidentResponse.id)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_alert(self, alert_id: str) -> SecurityAlert | None:
        async with self._engine.datastore.session() as session:
            return await session.get(SecurityAlert, alert_id)

    async def get_alerts(
        self,
        user_id: str,
        *,
        severity: str | None = None,
        alert_type: str | None = None,
        resolved: bool | None = None,
        start: int | None = None,
        end: int | None = None,
    ) -> list[SecurityAlert]:
        """Alerts of *user_id* matching the filters, newest first."""
        stmt = select(SecurityAlert).where(SecurityAlert.user_id == user_id)
        if severity:
            stmt = stmt.where(SecurityAlert.severity == severity)
        if alert_type:
            stmt = stmt.where(SecurityAlert.alert_type == alert_type)
        if resolved is not None:
            stmt = stmt.where(SecurityAlert.resolved.is_(resolved))
        if start is not None:
            stmt = stmt.where(SecurityAlert.timestamp >= start)
        if end is not None:
            stmt = stmt.where(SecurityAlert.timestamp <= end)
        stmt = stmt.order_by(SecurityAlert.timestamp.desc())
        async with self._engine.datastore.session() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def unresolved_alerts(self, user_id: str) -> list[SecurityAlert]:
        return await self.get_alerts(user_id, resolved=False)

    async def critical_alerts(self, user_id: str) -> list[SecurityAlert]:
        return await self.get_alerts(user_id, severity=AlertSeverity.CRITICAL, resolved=False)

    async def count_open(self) -> int:
        """Unresolved alerts across all users."""
        async with self._engine.datastore.session() as session:
            return (
                await session.execute(
                    select(func.count(SecurityAlert.id)).where(SecurityAlert.resolved.is_(False))
                )
            ).scalar_one()

    async def statistics(
        self, user_id: str, timeframe_ms: int = _DEFAULT_STATS_TIMEFRAME_MS
    ) -> AlertStatistics:
        cutoff = self._engine.clock.now_ms() - timeframe_ms
        alerts = await self.get_alerts(user_id, start=cutoff)
        resolved = [a for a in alerts if a.resolved and a.resolved_at is not None]
        total_resolution = sum(a.resolved_at - a.timestamp for a in resolved)  # type: ignore[operator]
        return AlertStatistics(
            total_alerts=len(alerts),
            by_severity=dict(Counter(a.severity for a in alerts)),
            by_type=dict(Counter(a.alert_type for a in alerts)),
            resolved_count=len(resolved),
            average_resolution_time_ms=total_resolution / len(resolved) if resolved else 0.0,
        )

    async def trend(self, user_id: str, days: int = 30) -> AlertTrend:
        """Daily alert counts and their direction.

        With at least a week of buckets, the last seven buckets are compared
        with the first seven: more than 20% up is ``increasing``, more than
        20% down is ``decreasing``.
        """
        cutoff = self._engine.clock.now_ms() - days * MS_PER_DAY
        alerts = await self.get_alerts(user_id, start=cutoff)
        daily = sorted(Counter(iso_date(a.timestamp) for a in alerts).items())
        buckets = [{"date": d, "count": n} for d, n in daily]

        direction = "stable"
        if len(daily) >= _TREND_WEEK:
            first = sum(n for _, n in daily[:_TREND_WEEK])
            last = sum(n for _, n in daily[-_TREND_WEEK:])
            if last > first * _TREND_UP:
                direction = "increasing"
            elif last < first * _TREND_DOWN:
                direction = "decreasing"
        return AlertTrend(daily_alerts=buckets, direction=direction)
