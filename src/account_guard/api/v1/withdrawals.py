"""V1 withdrawal endpoints.

Requests, approvals and the destination whitelist. Workflow denials come
back as ``{"success": false, "message": ...}`` with status 409.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Response

from account_guard.api.dependencies import get_engine, require_admin, require_scope
from account_guard.api.middleware.auth import CallerContext  # noqa: TC001
from account_guard.api.v1.schemas import (
    ApproveRequest,
    RejectRequest,
    WhitelistAddRequest,
    WhitelistedAddressResponse,
    WithdrawalCreateRequest,
    WithdrawalLimitSchema,
    WithdrawalResponse,
    WorkflowResponse,
)
from account_guard.engine.client import GuardEngine  # noqa: TC001
from account_guard.engine.services.withdrawal_service import WorkflowResult  # noqa: TC001
from account_guard.errors.definitions import ErrWithdrawalNotFound

router = APIRouter(prefix="/withdrawals", tags=["withdrawals"])

SCOPE_CREATE = "withdrawals:create"
SCOPE_APPROVE = "withdrawals:approve"
SCOPE_READ = "withdrawals:read"

WORKFLOW_DENIED_STATUS = 409


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _withdrawal_resp(w: Any) -> dict:
    return WithdrawalResponse.model_validate(w).model_dump(mode="json")


def _workflow_resp(result: WorkflowResult, response: Response) -> dict:
    if not result.success:
        response.status_code = WORKFLOW_DENIED_STATUS
    return WorkflowResponse(
        success=result.success,
        message=result.message,
        request=WithdrawalResponse.model_validate(result.request) if result.request else None,
    ).model_dump(mode="json")


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


@router.post("", status_code=201)
async def create_withdrawal(
    body: WithdrawalCreateRequest,
    response: Response,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_CREATE))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    """Open a withdrawal request for the caller."""
    result = await engine.withdrawal_service.create(
        ctx.user_id,
        body.amount,
        body.currency,
        body.destination_address,
        device_id=body.device_id or ctx.device_id or None,
    )
    return _workflow_resp(result, response)


@router.get("")
async def withdrawal_history(
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_READ))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
    limit: int = 50,
) -> list[dict]:
    requests = await engine.withdrawal_service.withdrawal_history(ctx.user_id, limit)
    return [_withdrawal_resp(w) for w in requests]


@router.get("/pending")
async def pending_withdrawals(
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_READ))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> list[dict]:
    requests = await engine.withdrawal_service.pending_withdrawals(ctx.user_id)
    return [_withdrawal_resp(w) for w in requests]


@router.get("/awaiting-approval")
async def awaiting_approval(
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_APPROVE))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> list[dict]:
    """Pending requests of other users the caller has not yet approved."""
    requests = await engine.withdrawal_service.awaiting_approval(ctx.user_id)
    return [_withdrawal_resp(w) for w in requests]


# ---------------------------------------------------------------------------
# Whitelist
# ---------------------------------------------------------------------------


@router.get("/whitelist")
async def list_whitelist(
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_READ))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> list[dict]:
    entries = await engine.withdrawal_service.whitelisted_addresses(ctx.user_id)
    return [WhitelistedAddressResponse.model_validate(e).model_dump(mode="json") for e in entries]


@router.post("/whitelist", status_code=201)
async def add_whitelisted_address(
    body: WhitelistAddRequest,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_CREATE))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    """Add an unverified destination; it must be verified before use."""
    entry = await engine.withdrawal_service.add_whitelisted_address(
        ctx.user_id, body.address, body.label, body.currency, ctx.user_id
    )
    return WhitelistedAddressResponse.model_validate(entry).model_dump(mode="json")


@router.put("/whitelist/{user_id}/{address}/verify")
async def verify_whitelisted_address(
    user_id: str,
    address: str,
    ctx: Annotated[CallerContext, Depends(require_admin)],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    verified = await engine.withdrawal_service.verify_whitelisted_address(user_id, address)
    return {"address": address, "verified": verified}


@router.delete("/whitelist/{address}", status_code=204)
async def remove_whitelisted_address(
    address: str,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_CREATE))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> None:
    await engine.withdrawal_service.remove_whitelisted_address(ctx.user_id, address)


# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------


@router.get("/limits")
async def get_limits(
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_READ))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict | None:
    limit = await engine.withdrawal_service.get_limit(ctx.user_id)
    if limit is None:
        return None
    return WithdrawalLimitSchema.model_validate(limit).model_dump(mode="json")


@router.put("/limits/{user_id}")
async def set_limits(
    user_id: str,
    body: WithdrawalLimitSchema,
    ctx: Annotated[CallerContext, Depends(require_admin)],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    limit = await engine.withdrawal_service.set_limit(
        user_id,
        daily_limit=body.daily_limit,
        monthly_limit=body.monthly_limit,
        requires_approval_above=body.requires_approval_above,
        multi_sig_threshold=body.multi_sig_threshold,
    )
    return WithdrawalLimitSchema.model_validate(limit).model_dump(mode="json")


# ---------------------------------------------------------------------------
# Single request
# ---------------------------------------------------------------------------


@router.get("/{request_id}")
async def get_withdrawal(
    request_id: str,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_READ))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    """A request visible to its owner, approvers and the operator."""
    request = await engine.withdrawal_service.get_request(request_id)
    if request is None:
        raise ErrWithdrawalNotFound
    if request.user_id != ctx.user_id and not ctx.allows(SCOPE_APPROVE):
        raise ErrWithdrawalNotFound
    return _withdrawal_resp(request)


@router.post("/{request_id}/approve")
async def approve_withdrawal(
    request_id: str,
    body: ApproveRequest,
    response: Response,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_APPROVE))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    result = await engine.withdrawal_service.approve(
        request_id,
        ctx.user_id,
        body.signature,
        approver_name=body.approver_name,
        comments=body.comments,
    )
    return _workflow_resp(result, response)


@router.post("/{request_id}/reject")
async def reject_withdrawal(
    request_id: str,
    body: RejectRequest,
    response: Response,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_APPROVE))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    result = await engine.withdrawal_service.reject(request_id, ctx.user_id, body.reason)
    return _workflow_resp(result, response)


@router.post("/{request_id}/execute")
async def execute_withdrawal(
    request_id: str,
    response: Response,
    ctx: Annotated[CallerContext, Depends(require_admin)],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    result = await engine.withdrawal_service.execute(request_id, ctx.user_id)
    return _workflow_resp(result, response)


@router.post("/{request_id}/cancel")
async def cancel_withdrawal(
    request_id: str,
    response: Response,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_CREATE))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    result = await engine.withdrawal_service.cancel(request_id, ctx.user_id)
    return _workflow_resp(result, response)
