"""Withdrawal service — multi-approval withdrawal state machine.

    pending  → approved | rejected | cancelled | expired
    approved → executed | cancelled

Every operation returns a :class:`WorkflowResult`; business-rule denials
are never raised. Each decision is written to the audit ledger.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select

from account_guard.engine.models.withdrawal import (
    Approval,
    WhitelistedAddress,
    WithdrawalLimit,
    WithdrawalRequest,
    WithdrawalStatus,
)
from account_guard.errors.definitions import ErrWorkflowRejected
from account_guard.utils.clock import MS_PER_DAY, to_datetime
from account_guard.utils.crypto import new_id
from account_guard.utils.locks import KeyedLock

if TYPE_CHECKING:
    from account_guard.engine.client import GuardEngine

logger = logging.getLogger(__name__)

REQUEST_ID_PREFIX = "wd"
AUDIT_RESOURCE = "withdrawal"
DEFAULT_HISTORY_LIMIT = 50

_MONTH_MS = 30 * MS_PER_DAY

# Statuses that still count against daily/monthly limits
_COMMITTED_STATUSES = (
    WithdrawalStatus.PENDING,
    WithdrawalStatus.APPROVED,
    WithdrawalStatus.EXECUTED,
)

_STATUS_TRANSITIONS: dict[str, set[str]] = {
    WithdrawalStatus.PENDING: {
        WithdrawalStatus.APPROVED,
        WithdrawalStatus.REJECTED,
        WithdrawalStatus.CANCELLED,
        WithdrawalStatus.EXPIRED,
    },
    WithdrawalStatus.APPROVED: {WithdrawalStatus.EXECUTED, WithdrawalStatus.CANCELLED},
    WithdrawalStatus.REJECTED: set(),
    WithdrawalStatus.EXECUTED: set(),
    WithdrawalStatus.CANCELLED: set(),
    WithdrawalStatus.EXPIRED: set(),
}

MSG_NOT_FOUND = "Withdrawal request not found"


@dataclass(frozen=True)
class WorkflowResult:
    """Outcome of a workflow operation."""

    success: bool
    message: str
    request: WithdrawalRequest | None = None


@dataclass(frozen=True)
class LimitPolicy:
    """Effective limits for a user. Daily/monthly caps are None without a user limit."""

    requires_approval_above: Decimal
    multi_sig_threshold: Decimal
    daily_limit: Decimal | None = None
    monthly_limit: Decimal | None = None

    def required_approvals(self, amount: Decimal) -> int:
        if amount >= self.multi_sig_threshold:
            return 3
        if amount >= self.requires_approval_above:
            return 2
        return 1


def _to_decimal(value: Any) -> Decimal | None:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def _transition(request: WithdrawalRequest, target: WithdrawalStatus) -> None:
    """Move *request* to *target*.

    Raises:
        GuardError: If the state machine forbids the transition.
    """
    if target not in _STATUS_TRANSITIONS.get(request.status, set()):
        raise ErrWorkflowRejected
    request.status = target


class WithdrawalService:
    """Business logic for the withdrawal approval workflow.

    Each request is mutated under its own lock.
    """

    def __init__(self, engine: GuardEngine) -> None:
        self._engine = engine
        self._locks = KeyedLock()

    # ------------------------------------------------------------------
    # Limits
    # ------------------------------------------------------------------

    async def set_limit(
        self,
        user_id: str,
        *,
        daily_limit: Decimal | float | str,
        monthly_limit: Decimal | float | str,
        requires_approval_above: Decimal | float | str,
        multi_sig_threshold: Decimal | float | str,
    ) -> WithdrawalLimit:
        """Create or replace the withdrawal limits of *user_id*."""
        limit = WithdrawalLimit(
            user_id=user_id,
            daily_limit=Decimal(str(daily_limit)),
            monthly_limit=Decimal(str(monthly_limit)),
            requires_approval_above=Decimal(str(requires_approval_above)),
            multi_sig_threshold=Decimal(str(multi_sig_threshold)),
        )
        async with self._engine.datastore.session() as session:
            limit = await session.merge(limit)
            await session.commit()
        return limit

    async def get_limit(self, user_id: str) -> WithdrawalLimit | None:
        async with self._engine.datastore.session() as session:
            return await session.get(WithdrawalLimit, user_id)

    async def limit_policy(self, user_id: str) -> LimitPolicy:
        """The user's own limits, or the configured defaults."""
        limit = await self.get_limit(user_id)
        if limit is None:
            cfg = self._engine.config.withdrawals
            return LimitPolicy(
                requires_approval_above=Decimal(str(cfg.default_requires_approval_above)),
                multi_sig_threshold=Decimal(str(cfg.default_multi_sig_threshold)),
            )
        return LimitPolicy(
            requires_approval_above=limit.requires_approval_above,
            multi_sig_threshold=limit.multi_sig_threshold,
            daily_limit=limit.daily_limit,
            monthly_limit=limit.monthly_limit,
        )

    async def _committed_since(self, user_id: str, since: int) -> Decimal:
        async with self._engine.datastore.session() as session:
            result = await session.execute(
                select(WithdrawalRequest.amount).where(
                    WithdrawalRequest.user_id == user_id,
                    WithdrawalRequest.requested_at > since,
                    WithdrawalRequest.status.in_(_COMMITTED_STATUSES),
                )
            )
            return sum((Decimal(str(a)) for a in result.scalars()), Decimal(0))

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self,
        user_id: str,
        amount: Decimal | float | str,
        currency: str,
        destination: str,
        *,
        device_id: str | None = None,
        reputation: float | None = None,
    ) -> WorkflowResult:
        """Open a withdrawal request.

        The request is refused when the amount is not positive, the device
        is high risk, the withdrawal quota is exhausted, or the daily or
        monthly limit would be exceeded. Withdrawals above the large
        withdrawal threshold raise an alert.
        """
        value = _to_decimal(amount)
        if value is None or value <= 0:
            return WorkflowResult(success=False, message="Amount must be positive")

        if device_id is not None:
            analysis = await self._engine.device_trust_service.analyze_pattern(device_id, owner=user_id)
            if analysis.risk_level == "high":
                await self._engine.alert_service.from_pattern_analysis(user_id, device_id, analysis)
                await self._audit(
                    user_id,
                    "withdrawal_refused",
                    None,
                    reason="device_risk",
                    device_id=device_id,
                    anomalies=analysis.anomalies,
                )
                return WorkflowResult(
                    success=False, message="Device risk too high; additional verification required"
                )

        quota = await self._engine.quota_service.check(
            user_id, self._engine.config.withdrawals.quota_rule, reputation
        )
        if not quota.allowed:
            retry_s = -(-(quota.retry_after_ms or 0) // 1000)
            await self._audit(user_id, "withdrawal_refused", None, reason="rate_limited")
            return WorkflowResult(
                success=False,
                message=f"Too many withdrawal requests; retry in {retry_s} seconds",
            )

        policy = await self.limit_policy(user_id)
        now = self._engine.clock.now_ms()
        if policy.daily_limit is not None:
            used = await self._committed_since(user_id, now - MS_PER_DAY)
            if used + value > policy.daily_limit:
                return WorkflowResult(success=False, message="Daily withdrawal limit exceeded")
        if policy.monthly_limit is not None:
            used = await self._committed_since(user_id, now - _MONTH_MS)
            if used + value > policy.monthly_limit:
                return WorkflowResult(success=False, message="Monthly withdrawal limit exceeded")

        cfg = self._engine.config.withdrawals
        request = WithdrawalRequest(
            id=new_id(REQUEST_ID_PREFIX),
            user_id=user_id,
            amount=value,
            currency=currency.upper(),
            destination_address=destination,
            requested_at=now,
            status=WithdrawalStatus.PENDING,
            required_approvals=policy.required_approvals(value),
            cooling_off_until=(
                now + cfg.cooling_period_ms if value >= policy.multi_sig_threshold else None
            ),
            expires_at=now + cfg.pending_ttl_ms,
            approvals=[],
        )
        async with self._engine.datastore.session() as session:
            session.add(request)
            await session.commit()

        logger.info(
            "Withdrawal %s opened for user %s: %s %s (%d approvals)",
            request.id,
            user_id,
            value,
            request.currency,
            request.required_approvals,
        )
        self._count_transition(WithdrawalStatus.PENDING)
        await self._audit(
            user_id,
            "withdrawal_requested",
            request,
            amount=str(value),
            currency=request.currency,
            destination=destination,
            required_approvals=request.required_approvals,
        )
        await self._engine.alert_service.detect_anomalies(
            user_id,
            {
                "type": "withdrawal",
                "amount": value,
                "currency": request.currency,
                "destination": destination,
            },
        )
        return WorkflowResult(success=True, message="Withdrawal request created", request=request)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def _expire_if_due(self, request: WithdrawalRequest, now: int) -> bool:
        if request.status == WithdrawalStatus.PENDING and now >= request.expires_at:
            _transition(request, WithdrawalStatus.EXPIRED)
            return True
        return False

    async def approve(
        self,
        request_id: str,
        approver_id: str,
        signature: str,
        *,
        approver_name: str = "",
        comments: str | None = None,
    ) -> WorkflowResult:
        """Record an approval; the request becomes approved at the required count."""
        expired = False
        async with self._locks.hold(request_id), self._engine.datastore.session() as session:
            request = await session.get(WithdrawalRequest, request_id)
            if request is None:
                return WorkflowResult(success=False, message=MSG_NOT_FOUND)

            now = self._engine.clock.now_ms()
            if self._expire_if_due(request, now):
                await session.commit()
                expired = True
            elif request.status != WithdrawalStatus.PENDING:
                return WorkflowResult(
                    success=False, message=f"Request is already {request.status}", request=request
                )
            elif approver_id == request.user_id:
                return WorkflowResult(
                    success=False,
                    message="Requester cannot approve their own withdrawal",
                    request=request,
                )
            elif request.has_approved(approver_id):
                return WorkflowResult(
                    success=False, message="You have already approved this request", request=request
                )
            elif request.cooling_off_until is not None and now < request.cooling_off_until:
                until = to_datetime(request.cooling_off_until).isoformat()
                return WorkflowResult(
                    success=False,
                    message=f"Cooling-off period active until {until}",
                    request=request,
                )
            elif not signature:
                return WorkflowResult(success=False, message="Signature is required", request=request)
            else:
                request.approvals.append(
                    Approval(
                        approver_id=approver_id,
                        approver_name=approver_name,
                        timestamp=now,
                        signature=signature,
                        comments=comments,
                    )
                )
                if request.approval_count >= request.required_approvals:
                    _transition(request, WithdrawalStatus.APPROVED)
                await session.commit()

        if expired:
            await self._on_expired(request)
            return WorkflowResult(success=False, message="Request has expired", request=request)

        await self._audit(
            approver_id,
            "withdrawal_approved",
            request,
            approvals=request.approval_count,
            required_approvals=request.required_approvals,
        )
        if request.status == WithdrawalStatus.APPROVED:
            self._count_transition(WithdrawalStatus.APPROVED)
            logger.info("Withdrawal %s fully approved", request_id)
        return WorkflowResult(success=True, message="Approval recorded", request=request)

    async def reject(self, request_id: str, approver_id: str, reason: str) -> WorkflowResult:
        """Veto a pending request. Terminal."""
        expired = False
        async with self._locks.hold(request_id), self._engine.datastore.session() as session:
            request = await session.get(WithdrawalRequest, request_id)
            if request is None:
                return WorkflowResult(success=False, message=MSG_NOT_FOUND)
            now = self._engine.clock.now_ms()
            if self._expire_if_due(request, now):
                await session.commit()
                expired = True
            elif request.status != WithdrawalStatus.PENDING:
                return WorkflowResult(
                    success=False, message=f"Request is already {request.status}", request=request
                )
            else:
                _transition(request, WithdrawalStatus.REJECTED)
                request.rejected_at = now
                request.rejection_reason = reason
                await session.commit()

        if expired:
            await self._on_expired(request)
            return WorkflowResult(success=False, message="Request has expired", request=request)

        self._count_transition(WithdrawalStatus.REJECTED)
        await self._audit(approver_id, "withdrawal_rejected", request, reason=reason)
        return WorkflowResult(success=True, message="Withdrawal request rejected", request=request)

    async def execute(self, request_id: str, executed_by: str = "system") -> WorkflowResult:
        """Execute an approved request to a whitelisted, verified destination."""
        async with self._locks.hold(request_id), self._engine.datastore.session() as session:
            request = await session.get(WithdrawalRequest, request_id)
            if request is None:
                return WorkflowResult(success=False, message=MSG_NOT_FOUND)
            if request.status != WithdrawalStatus.APPROVED:
                return WorkflowResult(
                    success=False,
                    message="Request must be approved before execution",
                    request=request,
                )

            entry = (
                await session.execute(
                    select(WhitelistedAddress).where(
                        WhitelistedAddress.user_id == request.user_id,
                        WhitelistedAddress.address == request.destination_address,
                    )
                )
            ).scalar_one_or_none()
            if entry is None:
                message = "Destination address is not whitelisted"
            elif not entry.verified:
                message = "Destination address is not verified"
            elif entry.currency.upper() != request.currency.upper():
                message = "Destination address is whitelisted for a different currency"
            else:
                message = ""
            if message:
                return WorkflowResult(success=False, message=message, request=request)

            _transition(request, WithdrawalStatus.EXECUTED)
            request.executed_at = self._engine.clock.now_ms()
            await session.commit()

        logger.info("Withdrawal %s executed", request_id)
        self._count_transition(WithdrawalStatus.EXECUTED)
        await self._audit(executed_by, "withdrawal_executed", request)
        return WorkflowResult(success=True, message="Withdrawal executed successfully", request=request)

    async def cancel(self, request_id: str, user_id: str) -> WorkflowResult:
        """Cancel a pending or approved request. Owner only."""
        async with self._locks.hold(request_id), self._engine.datastore.session() as session:
            request = await session.get(WithdrawalRequest, request_id)
            if request is None:
                return WorkflowResult(success=False, message=MSG_NOT_FOUND)
            if request.user_id != user_id:
                return WorkflowResult(success=False, message="Unauthorized")
            if WithdrawalStatus.CANCELLED not in _STATUS_TRANSITIONS[request.status]:
                return WorkflowResult(
                    success=False,
                    message=f"Cannot cancel {request.status} withdrawal",
                    request=request,
                )
            _transition(request, WithdrawalStatus.CANCELLED)
            request.cancelled_at = self._engine.clock.now_ms()
            await session.commit()

        self._count_transition(WithdrawalStatus.CANCELLED)
        await self._audit(user_id, "withdrawal_cancelled", request)
        return WorkflowResult(success=True, message="Withdrawal cancelled", request=request)

    async def expire_stale(self) -> int:
        """Expire pending requests past their deadline. Returns the count."""
        now = self._engine.clock.now_ms()
        async with self._engine.datastore.session() as session:
            result = await session.execute(
                select(WithdrawalRequest.id).where(
                    WithdrawalRequest.status == WithdrawalStatus.PENDING,
                    WithdrawalRequest.expires_at <= now,
                )
            )
            candidates = list(result.scalars().all())

        expired: list[WithdrawalRequest] = []
        for request_id in candidates:
            async with self._locks.hold(request_id), self._engine.datastore.session() as session:
                request = await session.get(WithdrawalRequest, request_id)
                if request is not None and self._expire_if_due(request, now):
                    await session.commit()
                    expired.append(request)

        for request in expired:
            await self._on_expired(request)
        if expired:
            logger.info("Expired %d stale withdrawal requests", len(expired))
        return len(expired)

    async def _on_expired(self, request: WithdrawalRequest) -> None:
        self._count_transition(WithdrawalStatus.EXPIRED)
        await self._audit("system", "withdrawal_expired", request)

    # ------------------------------------------------------------------
    # Whitelist
    # ------------------------------------------------------------------

    async def _find_address(self, session: Any, user_id: str, address: str) -> WhitelistedAddress | None:
        return (
            await session.execute(
                select(WhitelistedAddress).where(
                    WhitelistedAddress.user_id == user_id,
                    WhitelistedAddress.address == address,
                )
            )
        ).scalar_one_or_none()

    async def add_whitelisted_address(
        self, user_id: str, address: str, label: str, currency: str, added_by: str
    ) -> WhitelistedAddress:
        """Add an unverified whitelist entry. An existing entry is returned as is."""
        async with self._locks.hold(f"whitelist:{user_id}"), self._engine.datastore.session() as session:
            existing = await self._find_address(session, user_id, address)
            if existing is not None:
                return existing
            entry = WhitelistedAddress(
                user_id=user_id,
                address=address,
                label=label,
                currency=currency.upper(),
                added_at=self._engine.clock.now_ms(),
                added_by=added_by,
                verified=False,
            )
            session.add(entry)
            await session.commit()
        await self._audit(added_by, "whitelist_address_added", None, user=user_id, address=address)
        return entry

    async def verify_whitelisted_address(self, user_id: str, address: str) -> bool:
        async with self._locks.hold(f"whitelist:{user_id}"), self._engine.datastore.session() as session:
            entry = await self._find_address(session, user_id, address)
            if entry is None:
                return False
            if not entry.verified:
                entry.verified = True
                entry.verified_at = self._engine.clock.now_ms()
                await session.commit()
        await self._audit(user_id, "whitelist_address_verified", None, address=address)
        return True

    async def remove_whitelisted_address(self, user_id: str, address: str) -> bool:
        async with self._locks.hold(f"whitelist:{user_id}"), self._engine.datastore.session() as session:
            entry = await self._find_address(session, user_id, address)
            if entry is None:
                return False
            await session.delete(entry)
            await session.commit()
        await self._audit(user_id, "whitelist_address_removed", None, address=address)
        return True

    async def is_address_whitelisted(self, user_id: str, address: str) -> bool:
        """True only for a whitelisted and verified address."""
        async with self._engine.datastore.session() as session:
            entry = await self._find_address(session, user_id, address)
        return entry is not None and entry.verified

    async def whitelisted_addresses(self, user_id: str) -> list[WhitelistedAddress]:
        async with self._engine.datastore.session() as session:
            result = await session.execute(
                select(WhitelistedAddress)
                .where(WhitelistedAddress.user_id == user_id)
                .order_by(WhitelistedAddress.added_at, WhitelistedAddress.id)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_request(self, request_id: str) -> WithdrawalRequest | None:
        async with self._engine.datastore.session() as session:
            return await session.get(WithdrawalRequest, request_id)

    async def pending_withdrawals(self, user_id: str) -> list[WithdrawalRequest]:
        async with self._engine.datastore.session() as session:
            result = await session.execute(
                select(WithdrawalRequest)
                .where(
                    WithdrawalRequest.user_id == user_id,
                    WithdrawalRequest.status == WithdrawalStatus.PENDING,
                )
                .order_by(WithdrawalRequest.requested_at)
            )
            return list(result.scalars().all())

    async def withdrawal_history(
        self, user_id: str, limit: int = DEFAULT_HISTORY_LIMIT
    ) -> list[WithdrawalRequest]:
        """Requests of *user_id*, newest first."""
        async with self._engine.datastore.session() as session:
            result = await session.execute(
                select(WithdrawalRequest)
                .where(WithdrawalRequest.user_id == user_id)
                .order_by(WithdrawalRequest.requested_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def awaiting_approval(self, approver_id: str) -> list[WithdrawalRequest]:
        """Pending requests *approver_id* may still approve."""
        async with self._engine.datastore.session() as session:
            result = await session.execute(
                select(WithdrawalRequest)
                .where(
                    WithdrawalRequest.status == WithdrawalStatus.PENDING,
                    WithdrawalRequest.user_id != approver_id,
                )
                .order_by(WithdrawalRequest.requested_at)
            )
            requests = list(result.scalars().all())
        return [r for r in requests if not r.has_approved(approver_id)]

    async def count_pending(self) -> int:
        async with self._engine.datastore.session() as session:
            return (
                await session.execute(
                    select(func.count(WithdrawalRequest.id)).where(
                        WithdrawalRequest.status == WithdrawalStatus.PENDING
                    )
                )
            ).scalar_one()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _count_transition(self, status: WithdrawalStatus) -> None:
        if self._engine.metrics:
            self._engine.metrics.record_withdrawal_transition(status)

    async def _audit(
        self,
        actor: str,
        action: str,
        request: WithdrawalRequest | None,
        **details: Any,
    ) -> None:
        metadata: dict[str, Any] = dict(details)
        if request is not None:
            metadata["resource_id"] = request.id
            metadata["status"] = str(request.status)
        await self._engine.audit_service.log(actor, action, AUDIT_RESOURCE, metadata)
