"""APIKey model — scoped, hashed API credentials."""

from __future__ import annotations

import enum

from sqlalchemy import JSON, BigInteger, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from account_guard.engine.models.base import Base, TimestampMixin


class APIKeyStatus(enum.StrEnum):
    """Lifecycle status of an API key. Keys are never deleted."""

    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


class APIKey(Base, TimestampMixin):
    """Scoped API key.

    Only the SHA-256 hash of the secret is stored; the plaintext
    ``<id>.<secret>`` string is handed to the caller once at issue time.
    """

    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String(40), primary_key=True, comment="ak_<32 hex>")
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    secret_hash: Mapped[str] = mapped_column(
        String(64), nullable=False, comment="SHA-256 hex of the secret"
    )
    permissions: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    ip_allow_list: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    issued_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expires_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True, default=None)
    last_used_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True, default=None)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=APIKeyStatus.ACTIVE
    )
    replaced_by: Mapped[str | None] = mapped_column(
        String(40), nullable=True, default=None, comment="Key issued by rotation"
    )

    @property
    def is_active(self) -> bool:
        return self.status == APIKeyStatus.ACTIVE

    def __repr__(self) -> str:
        return f"<APIKey id={self.id} user={self.user_id} status={self.status}>"


class APIKeyUsage(Base):
    """One recorded request made with an API key."""

    __tablename__ = "api_key_usage"
    __table_args__ = (Index("ix_api_key_usage_key_ts", "key_id", "timestamp"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key_id: Mapped[str] = mapped_column(String(40), nullable=False)
    endpoint: Mapped[str] = mapped_column(String(512), nullable=False)
    method: Mapped[str] = mapped_column(String(16), nullable=False)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    ip_address: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    response_time_ms: Mapped[float] = mapped_column(nullable=False, default=0.0)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
