"""Withdrawal approval workflow models."""

from __future__ import annotations

import enum
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from account_guard.engine.models.base import Base, TimestampMixin

AMOUNT_PRECISION = 28
AMOUNT_SCALE = 8


class WithdrawalStatus(enum.StrEnum):
    """Withdrawal request status."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTED = "executed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class WithdrawalRequest(Base, TimestampMixin):
    """A withdrawal awaiting (or past) approval."""

    __tablename__ = "withdrawal_requests"
    __table_args__ = (Index("ix_withdrawal_requests_user_status", "user_id", "status"),)

    id: Mapped[str] = mapped_column(String(40), primary_key=True, comment="wd_<32 hex>")
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[Decimal] = mapped_column(
        Numeric(AMOUNT_PRECISION, AMOUNT_SCALE), nullable=False
    )
    currency: Mapped[str] = mapped_column(String(16), nullable=False)
    destination_address: Mapped[str] = mapped_column(String(255), nullable=False)
    requested_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=WithdrawalStatus.PENDING, index=True
    )
    required_approvals: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    cooling_off_until: Mapped[int | None] = mapped_column(BigInteger, nullable=True, default=None)
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    executed_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True, default=None)
    rejected_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True, default=None)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    cancelled_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True, default=None)

    approvals: Mapped[list[Approval]] = relationship(
        back_populates="request",
        lazy="selectin",
        order_by="Approval.id",
        cascade="all, delete-orphan",
    )

    @property
    def approval_count(self) -> int:
        return len(self.approvals)

    def has_approved(self, approver_id: str) -> bool:
        """True if *approver_id* already approved this request."""
        return any(a.approver_id == approver_id for a in self.approvals)

    def __repr__(self) -> str:
        return (
            f"<WithdrawalRequest id={self.id} amount={self.amount} {self.currency} "
            f"status={self.status}>"
        )


class Approval(Base):
    """One approver's sign-off on a withdrawal request."""

    __tablename__ = "withdrawal_approvals"
    __table_args__ = (
        UniqueConstraint("request_id", "approver_id", name="uq_withdrawal_approvals_approver"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(
        String(40), ForeignKey("withdrawal_requests.id", ondelete="CASCADE"), nullable=False
    )
    approver_id: Mapped[str] = mapped_column(String(128), nullable=False)
    approver_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    signature: Mapped[str] = mapped_column(Text, nullable=False)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)

    request: Mapped[WithdrawalRequest] = relationship(back_populates="approvals")


class WhitelistedAddress(Base):
    """Destination address a user is allowed to withdraw to once verified."""

    __tablename__ = "whitelisted_addresses"
    __table_args__ = (UniqueConstraint("user_id", "address", name="uq_whitelisted_user_address"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    address: Mapped[str] = mapped_column(String(255), nullable=False)
    label: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    currency: Mapped[str] = mapped_column(String(16), nullable=False)
    added_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    added_by: Mapped[str] = mapped_column(String(128), nullable=False)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    verified_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True, default=None)


class WithdrawalLimit(Base):
    """Per-user withdrawal limits and approval thresholds."""

    __tablename__ = "withdrawal_limits"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    daily_limit: Mapped[Decimal] = mapped_column(
        Numeric(AMOUNT_PRECISION, AMOUNT_SCALE), nullable=False
    )
    monthly_limit: Mapped[Decimal] = mapped_column(
        Numeric(AMOUNT_PRECISION, AMOUNT_SCALE), nullable=False
    )
    requires_approval_above: Mapped[Decimal] = mapped_column(
        Numeric(AMOUNT_PRECISION, AMOUNT_SCALE), nullable=False
    )
    multi_sig_threshold: Mapped[Decimal] = mapped_column(
        Numeric(AMOUNT_PRECISION, AMOUNT_SCALE), nullable=False
    )
