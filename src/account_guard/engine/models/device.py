"""DeviceFingerprint and SuspiciousActivity models."""

from __future__ import annotations

from typing import Any

from sqlalchemy import JSON, BigInteger, Boolean, Float, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from account_guard.engine.models.base import Base, TimestampMixin


class DeviceFingerprint(Base, TimestampMixin):
    """A device seen logging in to an account, with its trust history.

    ``fingerprint`` is indexed so identification is a direct lookup.
    """

    __tablename__ = "devices"
    __table_args__ = (UniqueConstraint("user_id", "fingerprint", name="uq_devices_user_fp"),)

    id: Mapped[str] = mapped_column(String(40), primary_key=True, comment="dev_<32 hex>")
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    trust_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    first_seen: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_seen: Mapped[int] = mapped_column(BigInteger, nullable=False)
    login_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_login_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Current consecutive failure streak"
    )
    login_hours: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    typical_locations: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    risk_factors: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attributes: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    def __repr__(self) -> str:
        return f"<DeviceFingerprint id={self.id} user={self.user_id} trust={self.trust_score:.2f}>"


class SuspiciousActivity(Base):
    """A suspicious event flagged against a device."""

    __tablename__ = "device_activities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    activity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    details: Mapped[str] = mapped_column(Text, nullable=False, default="")
