"""Background task definitions — cron job handlers.

- ``rate_limit_sweep`` — drop idle rate limit records
- ``audit_archive`` — archive the audit chain prefix past retention
- ``withdrawal_expiry`` — expire pending withdrawals past their deadline
- ``api_key_usage_prune`` — delete usage rows past retention
- ``calculate_metrics`` (15 s) — count entities for Prometheus gauges

Handlers never raise; failures are logged and the next run retries.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from account_guard.utils.clock import MS_PER_DAY

if TYPE_CHECKING:
    from account_guard.engine.client import GuardEngine
    from account_guard.metrics.collector import GuardMetrics

logger = logging.getLogger(__name__)

USAGE_PRUNE_PERIOD = 3600


async def task_sweep_rate_limits(engine: GuardEngine) -> None:
    """Remove rate limit records whose window is empty and idle."""
    try:
        await engine.quota_service.sweep_idle_records()
    except Exception:
        logger.exception("rate_limit_sweep failed")


async def task_archive_audit_logs(engine: GuardEngine) -> None:
    """Archive audit entries older than ``audit.retention_days``."""
    try:
        retention_days = engine.config.audit.retention_days
        if retention_days <= 0:
            return
        result = await engine.audit_service.archive(retention_days * MS_PER_DAY)
        if result.archived:
            logger.info(
                "Audit archive: %d archived, %d remaining", result.archived, result.remaining
            )
    except Exception:
        logger.exception("audit_archive failed")


async def task_expire_withdrawals(engine: GuardEngine) -> None:
    """Move pending withdrawals past ``expires_at`` to expired."""
    try:
        await engine.withdrawal_service.expire_stale()
    except Exception:
        logger.exception("withdrawal_expiry failed")


async def task_prune_key_usage(engine: GuardEngine) -> None:
    """Delete API key usage rows older than ``credentials.usage_retention_days``."""
    try:
        retention_days = engine.config.credentials.usage_retention_days
        cutoff = engine.clock.now_ms() - retention_days * MS_PER_DAY
        count = await engine.credential_service.prune_usage(cutoff)
        if count:
            logger.info("Pruned %d API key usage rows", count)
    except Exception:
        logger.exception("api_key_usage_prune failed")


async def task_calculate_metrics(engine: GuardEngine, metrics: GuardMetrics) -> None:
    """Count entities and push to Prometheus gauges."""
    try:
        metrics.set_entity_count("api_keys", await engine.credential_service.count_active_keys())
        metrics.set_entity_count("devices", await engine.device_trust_service.count_devices())
        metrics.set_entity_count("audit_logs", await engine.audit_service.count())
        metrics.set_entity_count("open_alerts", await engine.alert_service.count_open())
        metrics.set_entity_count(
            "pending_withdrawals", await engine.withdrawal_service.count_pending()
        )
    except Exception:
        logger.exception("calculate_metrics failed")
