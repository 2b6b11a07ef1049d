"""V1 audit endpoints.

Callers read their own trail; the operator searches, exports, verifies
and archives the whole ledger.
"""

from __future__ import annotations

import dataclasses
from typing import Annotated

from fastapi import APIRouter, Depends, Query

from account_guard.api.dependencies import get_engine, require_admin, require_scope
from account_guard.api.middleware.auth import CallerContext  # noqa: TC001
from account_guard.api.v1.schemas import (
    ActivitySummaryResponse,
    ArchiveRequest,
    ArchiveResponse,
    AuditExportRequest,
    AuditExportResponse,
    AuditLogResponse,
    AuditSearchParams,
    ChainVerificationResponse,
)
from account_guard.engine.client import GuardEngine  # noqa: TC001
from account_guard.engine.models.audit_log import AuditLog  # noqa: TC001
from account_guard.engine.services.audit_service import AuditQuery, entry_to_dict

router = APIRouter(prefix="/audit", tags=["audit"])

SCOPE_READ = "audit:read"


def _entry_resp(e: AuditLog) -> dict:
    return AuditLogResponse(**entry_to_dict(e)).model_dump(mode="json")


# ---------------------------------------------------------------------------
# Caller trail
# ---------------------------------------------------------------------------


@router.get("/logs/me")
async def my_recent_logs(
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_READ))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
    limit: Annotated[int, Query(ge=1, le=1000)] = 50,
) -> list[dict]:
    return [_entry_resp(e) for e in await engine.audit_service.recent_logs(ctx.user_id, limit)]


@router.get("/security-events/me")
async def my_security_events(
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_READ))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
    timeframe_ms: int = 86_400_000,
) -> list[dict]:
    events = await engine.audit_service.security_events(ctx.user_id, timeframe_ms)
    return [_entry_resp(e) for e in events]


@router.get("/summary/me")
async def my_activity_summary(
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_READ))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
    timeframe_ms: int = 86_400_000,
) -> dict:
    summary = await engine.audit_service.activity_summary(ctx.user_id, timeframe_ms)
    return ActivitySummaryResponse(**dataclasses.asdict(summary)).model_dump(mode="json")


# ---------------------------------------------------------------------------
# Ledger (admin)
# ---------------------------------------------------------------------------


@router.get("/logs")
async def search_logs(
    params: Annotated[AuditSearchParams, Query()],
    ctx: Annotated[CallerContext, Depends(require_admin)],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> list[dict]:
    """Search entries; action and resource match case-insensitive substrings."""
    entries = await engine.audit_service.search(AuditQuery(**params.model_dump()))
    return [_entry_resp(e) for e in entries]


@router.get("/logs/{entry_id}")
async def get_log(
    entry_id: str,
    ctx: Annotated[CallerContext, Depends(require_admin)],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    entry = await engine.audit_service.get_entry(entry_id)
    return {**_entry_resp(entry), "checksum_valid": engine.audit_service.verify_entry(entry)}


@router.get("/verify")
async def verify_chain(
    ctx: Annotated[CallerContext, Depends(require_admin)],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    result = await engine.audit_service.verify_chain()
    return ChainVerificationResponse(**dataclasses.asdict(result)).model_dump(mode="json")


@router.post("/export")
async def export_logs(
    body: AuditExportRequest,
    ctx: Annotated[CallerContext, Depends(require_admin)],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    """Export matching entries as a signed JSON or CSV bundle."""
    query = AuditQuery(
        user_id=body.user_id,
        action=body.action,
        resource=body.resource,
        start=body.start,
        end=body.end,
    )
    export = await engine.audit_service.export(query, body.format, ctx.user_id)
    return AuditExportResponse(
        exported_at=export.exported_at,
        exported_by=export.exported_by,
        format=export.format,
        count=len(export.entries),
        signature=export.signature,
        content=export.content,
    ).model_dump(mode="json")


@router.post("/archive")
async def archive_logs(
    body: ArchiveRequest,
    ctx: Annotated[CallerContext, Depends(require_admin)],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    """Archive the chain prefix older than ``older_than_ms``."""
    result = await engine.audit_service.archive(body.older_than_ms)
    return ArchiveResponse(**dataclasses.asdict(result)).model_dump(mode="json")
