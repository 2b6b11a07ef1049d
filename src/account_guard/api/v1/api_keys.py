"""V1 API key endpoints.

Issue, list, rotate, revoke and re-scope API keys. Callers manage their
own keys; the operator may act on anyone's.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request

from account_guard.api.dependencies import get_engine, request_context, require_scope
from account_guard.api.middleware.auth import CallerContext  # noqa: TC001
from account_guard.api.v1.schemas import (
    AllowListUpdateRequest,
    APIKeyCreateRequest,
    APIKeyCreateResponse,
    APIKeyResponse,
    PermissionsUpdateRequest,
    UsageStatisticsResponse,
)
from account_guard.engine.client import GuardEngine  # noqa: TC001
from account_guard.errors.definitions import ErrAdminRequired, ErrAPIKeyNotFound
from account_guard.errors.guard_errors import GuardError

router = APIRouter(prefix="/api-keys", tags=["api_keys"])

SCOPE_READ = "api_keys:read"
SCOPE_WRITE = "api_keys:write"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _key_resp(k: Any) -> dict:
    return APIKeyResponse.model_validate(k).model_dump(mode="json")


async def _owned_key(engine: GuardEngine, ctx: CallerContext, key_id: str) -> Any:
    api_key = await engine.credential_service.get_key(key_id)
    if api_key is None or (not ctx.is_admin and api_key.user_id != ctx.user_id):
        raise ErrAPIKeyNotFound
    return api_key


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.post("", status_code=201)
async def issue_api_key(
    body: APIKeyCreateRequest,
    request: Request,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_WRITE))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    """Issue a key. The plaintext is returned only in this response."""
    owner = body.user_id or ctx.user_id
    if owner != ctx.user_id and not ctx.is_admin:
        raise ErrAdminRequired
    api_key, plaintext = await engine.credential_service.issue(
        owner,
        body.name,
        body.permissions,
        body.ip_allow_list,
        body.expires_in_ms,
    )
    await engine.audit_service.log(
        ctx.user_id,
        "api_key_created",
        "api_key",
        {"resource_id": api_key.id, "owner": owner, "permissions": api_key.permissions},
        request_context(request, 201),
    )
    return APIKeyCreateResponse(
        **APIKeyResponse.model_validate(api_key).model_dump(), key=plaintext
    ).model_dump(mode="json")


@router.get("")
async def list_api_keys(
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_READ))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
    user_id: str | None = None,
) -> list[dict]:
    """List keys of the caller (or of *user_id* for the operator)."""
    owner = user_id if user_id and ctx.is_admin else ctx.user_id
    keys = await engine.credential_service.list_keys(owner)
    return [_key_resp(k) for k in keys]


@router.get("/{key_id}")
async def get_api_key(
    key_id: str,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_READ))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    return _key_resp(await _owned_key(engine, ctx, key_id))


@router.post("/{key_id}/rotate", status_code=201)
async def rotate_api_key(
    key_id: str,
    request: Request,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_WRITE))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    """Replace a key with a fresh one carrying the same grants."""
    await _owned_key(engine, ctx, key_id)
    result = await engine.credential_service.rotate(key_id)
    if not result.success or result.key is None or result.plaintext is None:
        raise GuardError(result.error or "rotation failed", status_code=409, code="rotation-failed")
    await engine.audit_service.log(
        ctx.user_id,
        "api_key_rotated",
        "api_key",
        {"resource_id": key_id, "replaced_by": result.key.id},
        request_context(request, 201),
    )
    return APIKeyCreateResponse(
        **APIKeyResponse.model_validate(result.key).model_dump(), key=result.plaintext
    ).model_dump(mode="json")


@router.delete("/{key_id}", status_code=204)
async def revoke_api_key(
    key_id: str,
    request: Request,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_WRITE))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> None:
    """Revoke a key. Revoking twice is harmless."""
    await _owned_key(engine, ctx, key_id)
    await engine.credential_service.revoke(key_id)
    await engine.audit_service.log(
        ctx.user_id,
        "api_key_revoked",
        "api_key",
        {"resource_id": key_id},
        request_context(request, 204),
    )


@router.put("/{key_id}/permissions")
async def update_permissions(
    key_id: str,
    body: PermissionsUpdateRequest,
    request: Request,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_WRITE))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    await _owned_key(engine, ctx, key_id)
    api_key = await engine.credential_service.update_permissions(key_id, body.permissions)
    await engine.audit_service.log(
        ctx.user_id,
        "permission_change",
        "api_key",
        {"resource_id": key_id, "permissions": api_key.permissions},
        request_context(request),
    )
    return _key_resp(api_key)


@router.put("/{key_id}/ip-allow-list")
async def update_ip_allow_list(
    key_id: str,
    body: AllowListUpdateRequest,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_WRITE))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    await _owned_key(engine, ctx, key_id)
    api_key = await engine.credential_service.update_ip_allow_list(key_id, body.ip_allow_list)
    return _key_resp(api_key)


@router.get("/{key_id}/usage")
async def key_usage(
    key_id: str,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_READ))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
    timeframe_ms: int = 86_400_000,
) -> dict:
    """Request statistics of a key over *timeframe_ms*."""
    await _owned_key(engine, ctx, key_id)
    stats = await engine.credential_service.usage_statistics(key_id, timeframe_ms)
    return UsageStatisticsResponse(
        total_requests=stats.total_requests,
        success_rate=stats.success_rate,
        avg_response_time_ms=stats.avg_response_time_ms,
        top_endpoints=stats.top_endpoints,
    ).model_dump(mode="json")
