"""SecurityAlert and IncidentResponse models."""

from __future__ import annotations

import enum

from sqlalchemy import JSON, BigInteger, Boolean, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from account_guard.engine.models.base import Base, MetadataMixin, TimestampMixin


class AlertSeverity(enum.StrEnum):
    """Alert severity, ordered from least to most severe."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    AlertSeverity.LOW: 0,
    AlertSeverity.MEDIUM: 1,
    AlertSeverity.HIGH: 2,
    AlertSeverity.CRITICAL: 3,
}


class AlertChannel(enum.StrEnum):
    """Delivery channels for security alerts."""

    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    IN_APP = "in-app"


class SecurityAlert(Base, TimestampMixin, MetadataMixin):
    """Security alert raised for a user. Resolved or escalated, never deleted."""

    __tablename__ = "security_alerts"

    id: Mapped[str] = mapped_column(String(40), primary_key=True, comment="alert_<32 hex>")
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    alert_type: Mapped[str] = mapped_column(String(64), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True, default=None)
    resolved_by: Mapped[str | None] = mapped_column(String(128), nullable=True, default=None)
    channels: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    def __repr__(self) -> str:
        return f"<SecurityAlert id={self.id} type={self.alert_type} severity={self.severity}>"


class IncidentResponse(Base):
    """Action taken in response to an alert."""

    __tablename__ = "incident_responses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    alert_id: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    performed_by: Mapped[str] = mapped_column(String(128), nullable=False)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    outcome: Mapped[str] = mapped_column(Text, nullable=False, default="")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
