"""V1 security alert endpoints.

Callers read and resolve their own alerts; the operator raises,
escalates and records incident responses.
"""

from __future__ import annotations

import dataclasses
from typing import Annotated, Any

from fastapi import APIRouter, Depends

from account_guard.api.dependencies import get_engine, require_admin, require_scope
from account_guard.api.middleware.auth import CallerContext  # noqa: TC001
from account_guard.api.v1.schemas import (
    AlertCreateRequest,
    AlertEscalateRequest,
    AlertResolveRequest,
    AlertResponse,
    AlertStatisticsResponse,
    AlertTrendResponse,
    AnomalyDetectionRequest,
    BulkResolveRequest,
    IncidentResponseRequest,
    IncidentResponseSchema,
    ThresholdRequest,
)
from account_guard.engine.client import GuardEngine  # noqa: TC001
from account_guard.errors.definitions import ErrAlertNotFound

router = APIRouter(prefix="/alerts", tags=["alerts"])

SCOPE_READ = "alerts:read"
SCOPE_WRITE = "alerts:write"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _alert_resp(a: Any) -> dict:
    return AlertResponse(
        id=a.id,
        user_id=a.user_id,
        alert_type=a.alert_type,
        severity=a.severity,
        title=a.title,
        description=a.description,
        timestamp=a.timestamp,
        resolved=a.resolved,
        resolved_at=a.resolved_at,
        resolved_by=a.resolved_by,
        channels=a.channels,
        metadata=a.metadata_,
    ).model_dump(mode="json")


def _subject(ctx: CallerContext, user_id: str | None) -> str:
    return user_id if user_id and ctx.is_admin else ctx.user_id


async def _owned_alert(engine: GuardEngine, ctx: CallerContext, alert_id: str) -> Any:
    alert = await engine.alert_service.get_alert(alert_id)
    if alert is None or (not ctx.is_admin and alert.user_id != ctx.user_id):
        raise ErrAlertNotFound
    return alert


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("")
async def list_alerts(
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_READ))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
    user_id: str | None = None,
    severity: str | None = None,
    alert_type: str | None = None,
    resolved: bool | None = None,
    start: int | None = None,
    end: int | None = None,
) -> list[dict]:
    """Alerts matching the filters, newest first."""
    alerts = await engine.alert_service.get_alerts(
        _subject(ctx, user_id),
        severity=severity,
        alert_type=alert_type,
        resolved=resolved,
        start=start,
        end=end,
    )
    return [_alert_resp(a) for a in alerts]


@router.get("/unresolved")
async def unresolved_alerts(
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_READ))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
    user_id: str | None = None,
) -> list[dict]:
    alerts = await engine.alert_service.unresolved_alerts(_subject(ctx, user_id))
    return [_alert_resp(a) for a in alerts]


@router.get("/critical")
async def critical_alerts(
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_READ))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
    user_id: str | None = None,
) -> list[dict]:
    alerts = await engine.alert_service.critical_alerts(_subject(ctx, user_id))
    return [_alert_resp(a) for a in alerts]


@router.get("/statistics")
async def alert_statistics(
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_READ))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
    user_id: str | None = None,
) -> dict:
    stats = await engine.alert_service.statistics(_subject(ctx, user_id))
    return AlertStatisticsResponse(**dataclasses.asdict(stats)).model_dump(mode="json")


@router.get("/trend")
async def alert_trend(
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_READ))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
    user_id: str | None = None,
    days: int = 30,
) -> dict:
    trend = await engine.alert_service.trend(_subject(ctx, user_id), days)
    return AlertTrendResponse(**dataclasses.asdict(trend)).model_dump(mode="json")


@router.get("/{alert_id}")
async def get_alert(
    alert_id: str,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_READ))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    return _alert_resp(await _owned_alert(engine, ctx, alert_id))


@router.get("/{alert_id}/incidents")
async def list_incident_responses(
    alert_id: str,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_READ))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> list[dict]:
    await _owned_alert(engine, ctx, alert_id)
    responses = await engine.alert_service.incident_responses(alert_id)
    return [IncidentResponseSchema.model_validate(r).model_dump(mode="json") for r in responses]


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


@router.post("/{alert_id}/resolve")
async def resolve_alert(
    alert_id: str,
    body: AlertResolveRequest,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_WRITE))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    """Resolve an open alert. Resolving twice reports ``resolved: false``."""
    await _owned_alert(engine, ctx, alert_id)
    resolved = await engine.alert_service.resolve(alert_id, ctx.user_id, body.notes)
    return {"alert_id": alert_id, "resolved": resolved}


@router.post("/resolve")
async def bulk_resolve(
    body: BulkResolveRequest,
    ctx: Annotated[CallerContext, Depends(require_admin)],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    return {"resolved": await engine.alert_service.bulk_resolve(body.alert_ids, ctx.user_id)}


# ---------------------------------------------------------------------------
# Operator actions (admin)
# ---------------------------------------------------------------------------


@router.post("", status_code=201)
async def create_alert(
    body: AlertCreateRequest,
    ctx: Annotated[CallerContext, Depends(require_admin)],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    alert = await engine.alert_service.create(
        body.user_id,
        body.alert_type,
        body.severity,
        body.title,
        body.description,
        body.metadata,
    )
    return _alert_resp(alert)


@router.post("/detect")
async def detect_anomalies(
    body: AnomalyDetectionRequest,
    ctx: Annotated[CallerContext, Depends(require_admin)],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> list[dict]:
    """Run the anomaly rules over an activity and return the alerts raised."""
    alerts = await engine.alert_service.detect_anomalies(body.user_id, body.activity)
    return [_alert_resp(a) for a in alerts]


@router.post("/{alert_id}/escalate")
async def escalate_alert(
    alert_id: str,
    body: AlertEscalateRequest,
    ctx: Annotated[CallerContext, Depends(require_admin)],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    """Raise an open alert's severity. Lowering is refused."""
    await _owned_alert(engine, ctx, alert_id)
    escalated = await engine.alert_service.escalate(alert_id, body.severity, ctx.user_id)
    return {"alert_id": alert_id, "escalated": escalated}


@router.post("/{alert_id}/incidents", status_code=201)
async def record_incident_response(
    alert_id: str,
    body: IncidentResponseRequest,
    ctx: Annotated[CallerContext, Depends(require_admin)],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    response = await engine.alert_service.initiate_incident_response(
        alert_id, body.action, ctx.user_id, body.outcome, body.notes
    )
    return IncidentResponseSchema.model_validate(response).model_dump(mode="json")


@router.put("/thresholds/{alert_type}")
async def configure_threshold(
    alert_type: str,
    body: ThresholdRequest,
    ctx: Annotated[CallerContext, Depends(require_admin)],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    engine.alert_service.configure_threshold(alert_type, body.threshold)
    return {"alert_type": alert_type, "threshold": engine.alert_service.get_threshold(alert_type)}
