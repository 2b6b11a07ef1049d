"""AuditLog and AuditCheckpoint models — the hash-chained ledger."""

from __future__ import annotations

from sqlalchemy import BigInteger, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from account_guard.engine.models.base import Base, MetadataMixin


class AuditLog(Base, MetadataMixin):
    """Append-only audit entry.

    ``checksum`` is SHA-256 over every column except ``sequence`` and
    ``checksum`` itself, ``previous_checksum`` included; rows are ordered
    by the monotonic ``sequence``.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_user_ts", "user_id", "timestamp"),
        Index("ix_audit_logs_action", "action"),
    )

    sequence: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(40), unique=True, nullable=False, comment="log_<32 hex>")
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    action: Mapped[str] = mapped_column(String(128), nullable=False)
    resource: Mapped[str] = mapped_column(String(255), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(128), nullable=True, default=None)
    method: Mapped[str | None] = mapped_column(String(16), nullable=True, default=None)
    endpoint: Mapped[str | None] = mapped_column(String(512), nullable=True, default=None)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True, default=None)
    ip_address: Mapped[str] = mapped_column(String(64), nullable=False, default="unknown")
    user_agent: Mapped[str] = mapped_column(String(512), nullable=False, default="unknown")
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    previous_checksum: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    checksum: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)

    def __repr__(self) -> str:
        return f"<AuditLog seq={self.sequence} id={self.id} action={self.action}>"


class AuditCheckpoint(Base):
    """Chain root written when a prefix of the ledger is archived.

    Verification of the remaining entries starts from ``anchor_checksum``.
    """

    __tablename__ = "audit_checkpoints"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    archived_through: Mapped[int] = mapped_column(
        Integer, nullable=False, comment="Highest archived sequence number"
    )
    anchor_checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    archived_count: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
