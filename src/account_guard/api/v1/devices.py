"""V1 device endpoints.

Device registration, login tracking, pattern analysis and verification.
"""

from __future__ import annotations

import dataclasses
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request

from account_guard.api.dependencies import get_engine, request_context, require_scope
from account_guard.api.middleware.auth import CallerContext  # noqa: TC001
from account_guard.api.v1.schemas import (
    DeviceRegisterRequest,
    DeviceRegisterResponse,
    DeviceResponse,
    DeviceStatisticsResponse,
    LoginRecordRequest,
    LoginRecordResponse,
    PatternAnalysisRequest,
    PatternAnalysisResponse,
    SuspiciousActivityRequest,
    SuspiciousActivityResponse,
)
from account_guard.engine.client import GuardEngine  # noqa: TC001
from account_guard.engine.services.device_trust_service import DeviceInfo
from account_guard.errors.definitions import ErrDeviceNotFound

router = APIRouter(prefix="/devices", tags=["devices"])

SCOPE_READ = "devices:read"
SCOPE_WRITE = "devices:write"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _device_resp(d: Any) -> dict:
    return DeviceResponse.model_validate(d).model_dump(mode="json")


async def _owned_device(engine: GuardEngine, ctx: CallerContext, device_id: str) -> Any:
    device = await engine.device_trust_service.get_device(device_id)
    if device is None or (not ctx.is_admin and device.user_id != ctx.user_id):
        raise ErrDeviceNotFound
    return device


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.post("", status_code=201)
async def register_device(
    body: DeviceRegisterRequest,
    request: Request,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_WRITE))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    """Register the caller's device, or return it if already known."""
    info = DeviceInfo.from_mapping(body.device_info.model_dump())
    device, created = await engine.device_trust_service.identify_or_register(ctx.user_id, info)
    if created:
        await engine.audit_service.log(
            ctx.user_id,
            "device_registered",
            "device",
            {"resource_id": device.id},
            request_context(request, 201),
        )
    return DeviceRegisterResponse(
        device=DeviceResponse.model_validate(device), created=created
    ).model_dump(mode="json")


@router.get("")
async def list_devices(
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_READ))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> list[dict]:
    """Devices of the caller, most recently seen first."""
    return [_device_resp(d) for d in await engine.device_trust_service.user_devices(ctx.user_id)]


@router.get("/statistics")
async def device_statistics(
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_READ))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    stats = await engine.device_trust_service.device_statistics(ctx.user_id)
    return DeviceStatisticsResponse(**dataclasses.asdict(stats)).model_dump(mode="json")


@router.get("/{device_id}")
async def get_device(
    device_id: str,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_READ))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    return _device_resp(await _owned_device(engine, ctx, device_id))


@router.delete("/{device_id}", status_code=204)
async def remove_device(
    device_id: str,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_WRITE))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> None:
    await _owned_device(engine, ctx, device_id)
    await engine.device_trust_service.remove_device(device_id)


@router.post("/{device_id}/logins")
async def record_login(
    device_id: str,
    body: LoginRecordRequest,
    request: Request,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_WRITE))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    """Record a login attempt; a flagged failure streak raises an alert."""
    device = await _owned_device(engine, ctx, device_id)
    result = await engine.device_trust_service.record_login(device_id, body.success, body.location)
    await engine.audit_service.log(
        device.user_id,
        "login",
        "device",
        {"resource_id": device_id, "success": body.success, "location": body.location},
        request_context(request),
    )
    if result.flagged:
        await engine.alert_service.detect_anomalies(
            device.user_id,
            {
                "type": "failed_login",
                "attempts": result.failed_login_attempts,
                "ip_address": request_context(request).ip_address,
            },
        )
    return LoginRecordResponse(**dataclasses.asdict(result)).model_dump(mode="json")


@router.post("/{device_id}/analyze")
async def analyze_pattern(
    device_id: str,
    body: PatternAnalysisRequest,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_READ))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    """Check an activity against the device's history; anomalies raise an alert."""
    device = await _owned_device(engine, ctx, device_id)
    analysis = await engine.device_trust_service.analyze_pattern(
        device_id, body.model_dump(exclude_none=True)
    )
    await engine.alert_service.from_pattern_analysis(device.user_id, device_id, analysis)
    return PatternAnalysisResponse(**dataclasses.asdict(analysis)).model_dump(mode="json")


@router.get("/{device_id}/verification-required")
async def verification_required(
    device_id: str,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_READ))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    await _owned_device(engine, ctx, device_id)
    required = await engine.device_trust_service.require_additional_verification(device_id)
    return {"device_id": device_id, "required": required}


@router.post("/{device_id}/verify")
async def verify_device(
    device_id: str,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_WRITE))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    await _owned_device(engine, ctx, device_id)
    await engine.device_trust_service.verify_device(device_id)
    return _device_resp(await engine.device_trust_service.get_device(device_id))


@router.post("/{device_id}/suspicious-activities", status_code=201)
async def flag_activity(
    device_id: str,
    body: SuspiciousActivityRequest,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_WRITE))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    await _owned_device(engine, ctx, device_id)
    await engine.device_trust_service.flag_suspicious_activity(
        device_id, body.activity_type, body.severity, body.details
    )
    return _device_resp(await engine.device_trust_service.get_device(device_id))


@router.get("/{device_id}/suspicious-activities")
async def list_activities(
    device_id: str,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_READ))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> list[dict]:
    await _owned_device(engine, ctx, device_id)
    activities = await engine.device_trust_service.suspicious_activities(device_id)
    return [SuspiciousActivityResponse.model_validate(a).model_dump(mode="json") for a in activities]
