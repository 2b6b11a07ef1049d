"""V1 rate limit endpoints.

Quota checks for callers, rule management and record administration for
the operator.
"""

from __future__ import annotations

import dataclasses
from typing import Annotated, Any

from fastapi import APIRouter, Depends

from account_guard.api.dependencies import get_engine, require_admin, require_scope
from account_guard.api.middleware.auth import CallerContext  # noqa: TC001
from account_guard.api.v1.schemas import (
    BruteForceResponse,
    DynamicAdjustmentRequest,
    RateLimitCheckRequest,
    RateLimitResultResponse,
    RateLimitRuleSchema,
    RecordStatisticsResponse,
    ReputationUpdateRequest,
)
from account_guard.engine.client import GuardEngine  # noqa: TC001
from account_guard.engine.services.quota_service import RateLimitRule, RateLimitTier
from account_guard.errors.definitions import ErrRateLimitRuleNotFound

router = APIRouter(prefix="/rate-limits", tags=["rate_limits"])

SCOPE_CHECK = "rate_limits:check"


def _rule_resp(rule: RateLimitRule) -> dict:
    return RateLimitRuleSchema(
        rule_id=rule.rule_id,
        window_ms=rule.window_ms,
        max_requests=rule.max_requests,
        tier=rule.tier,
        reputation_modifier=rule.reputation_modifier,
    ).model_dump(mode="json")


def _asdict(result: Any) -> dict[str, Any]:
    return dataclasses.asdict(result)


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------


@router.post("/check")
async def check_rate_limit(
    body: RateLimitCheckRequest,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_CHECK))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    """Count one request by *identifier* against a rule.

    A denial is a normal response with ``allowed: false``.
    """
    result = await engine.quota_service.check(body.identifier, body.rule_id, body.reputation)
    return RateLimitResultResponse(**_asdict(result)).model_dump(mode="json")


@router.get("/statistics")
async def record_statistics(
    identifier: str,
    rule_id: str,
    ctx: Annotated[CallerContext, Depends(require_scope(SCOPE_CHECK))],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict | None:
    stats = await engine.quota_service.record_statistics(identifier, rule_id)
    if stats is None:
        return None
    return RecordStatisticsResponse(**_asdict(stats)).model_dump(mode="json")


# ---------------------------------------------------------------------------
# Rules (admin)
# ---------------------------------------------------------------------------


@router.get("/rules")
async def list_rules(
    ctx: Annotated[CallerContext, Depends(require_admin)],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> list[dict]:
    return [_rule_resp(r) for r in engine.quota_service.list_rules()]


@router.put("/rules", status_code=201)
async def put_rule(
    body: RateLimitRuleSchema,
    ctx: Annotated[CallerContext, Depends(require_admin)],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    """Add or replace a rule."""
    rule = RateLimitRule(
        rule_id=body.rule_id,
        window_ms=body.window_ms,
        max_requests=body.max_requests,
        tier=RateLimitTier(body.tier),
        reputation_modifier=body.reputation_modifier,
    )
    engine.quota_service.add_rule(rule)
    return _rule_resp(rule)


@router.delete("/rules/{rule_id}", status_code=204)
async def delete_rule(
    rule_id: str,
    ctx: Annotated[CallerContext, Depends(require_admin)],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> None:
    if not engine.quota_service.remove_rule(rule_id):
        raise ErrRateLimitRuleNotFound


@router.post("/rules/{rule_id}/adjust")
async def adjust_rule(
    rule_id: str,
    body: DynamicAdjustmentRequest,
    ctx: Annotated[CallerContext, Depends(require_admin)],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    """Scale a rule to the reported system load and error rate."""
    new_max = engine.quota_service.adjust_dynamically(rule_id, body.system_load, body.error_rate)
    if new_max is None:
        raise ErrRateLimitRuleNotFound
    return {"rule_id": rule_id, "max_requests": new_max}


# ---------------------------------------------------------------------------
# Records (admin)
# ---------------------------------------------------------------------------


@router.put("/reputation")
async def update_reputation(
    body: ReputationUpdateRequest,
    ctx: Annotated[CallerContext, Depends(require_admin)],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    updated = await engine.quota_service.update_reputation(
        body.identifier, body.rule_id, body.reputation
    )
    return {"updated": updated}


@router.post("/reset")
async def reset_limit(
    body: RateLimitCheckRequest,
    ctx: Annotated[CallerContext, Depends(require_admin)],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    return {"reset": await engine.quota_service.reset_limit(body.identifier, body.rule_id)}


@router.get("/active")
async def active_records(
    ctx: Annotated[CallerContext, Depends(require_admin)],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> list[dict]:
    return [_asdict(r) for r in await engine.quota_service.active_records()]


@router.post("/brute-force/{identifier}")
async def detect_brute_force(
    identifier: str,
    ctx: Annotated[CallerContext, Depends(require_admin)],
    engine: Annotated[GuardEngine, Depends(get_engine)],
) -> dict:
    """Classify login pressure on *identifier*; a detection raises an alert."""
    result = await engine.quota_service.detect_brute_force(identifier)
    await engine.alert_service.from_brute_force(identifier, result)
    return BruteForceResponse(**_asdict(result)).model_dump(mode="json")
