"""GuardEngine — central engine client owning all services."""

from __future__ import annotations

from typing import TYPE_CHECKING

from account_guard.utils.clock import SystemClock

if TYPE_CHECKING:
    from account_guard.cache.client import CacheClient
    from account_guard.config.settings import AppConfig
    from account_guard.datastore.client import Datastore
    from account_guard.engine.services.alert_service import AlertService
    from account_guard.engine.services.audit_service import AuditService
    from account_guard.engine.services.credential_service import CredentialService
    from account_guard.engine.services.device_trust_service import DeviceTrustService
    from account_guard.engine.services.quota_service import QuotaService
    from account_guard.engine.services.withdrawal_service import WithdrawalService
    from account_guard.metrics.collector import GuardMetrics
    from account_guard.notifications.service import NotificationService
    from account_guard.taskmanager.manager import TaskManager
    from account_guard.utils.clock import Clock

# Error messages
_ERR_NOT_INITIALIZED = "Engine not initialized. Call initialize() first."


class GuardEngine:
    """Central engine that owns all services and infrastructure.

    Services receive the engine and reach their collaborators through it,
    so there is exactly one instance of each per engine.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        clock: Clock | None = None,
        metrics: GuardMetrics | None = None,
    ) -> None:
        """Initialize engine with configuration.

        Args:
            config: Application configuration.
            clock: Millisecond time source. Defaults to the system clock.
            metrics: Metrics to record into, shared with the HTTP layer.
                Created on initialize when omitted and metrics are enabled.
        """
        self._config = config
        self._clock: Clock = clock or SystemClock()
        self._provided_metrics = metrics
        self._initialized = False

        # Infrastructure components
        self._datastore: Datastore | None = None
        self._cache: CacheClient | None = None

        # Services
        self._credential_service: CredentialService | None = None
        self._quota_service: QuotaService | None = None
        self._device_trust_service: DeviceTrustService | None = None
        self._audit_service: AuditService | None = None
        self._alert_service: AlertService | None = None
        self._withdrawal_service: WithdrawalService | None = None
        self._task_manager: TaskManager | None = None
        self._metrics: GuardMetrics | None = None
        self._notifications: NotificationService | None = None

    async def initialize(self) -> None:
        """Initialize datastore, run migrations, and start services.

        Raises:
            RuntimeError: If already initialized.
        """
        if self._initialized:
            msg = "Engine already initialized"
            raise RuntimeError(msg)

        # Import here to avoid circular deps
        from account_guard.cache.client import CacheClient
        from account_guard.datastore.client import Datastore
        from account_guard.datastore.migrations import run_auto_migrate

        # Initialize datastore and create the schema
        self._datastore = Datastore(self._config.db)
        await self._datastore.open()
        await run_auto_migrate(self._datastore.engine)

        # Initialize cache
        self._cache = CacheClient(self._config.cache)
        await self._cache.connect()

        # Initialize metrics
        from account_guard.metrics.collector import GuardMetrics

        if self._provided_metrics is not None:
            self._metrics = self._provided_metrics
        elif self._config.metrics.enabled:
            self._metrics = GuardMetrics()

        # Initialize notification service
        from account_guard.notifications.service import NotificationService

        if self._config.notifications.enabled:
            self._notifications = NotificationService(
                buffer_size=self._config.notifications.buffer_size
            )
            await self._notifications.start()

        # Initialize services
        from account_guard.engine.services.alert_service import AlertService
        from account_guard.engine.services.audit_service import AuditService
        from account_guard.engine.services.credential_service import CredentialService
        from account_guard.engine.services.device_trust_service import DeviceTrustService
        from account_guard.engine.services.quota_service import QuotaService
        from account_guard.engine.services.withdrawal_service import WithdrawalService

        self._credential_service = CredentialService(self)
        self._quota_service = QuotaService(self)
        self._device_trust_service = DeviceTrustService(self)
        self._audit_service = AuditService(self)
        self._alert_service = AlertService(self)
        self._withdrawal_service = WithdrawalService(self)

        # Initialize task manager and register cron jobs
        from functools import partial

        from account_guard.taskmanager.manager import CronJob, TaskManager
        from account_guard.taskmanager.tasks import (
            USAGE_PRUNE_PERIOD,
            task_archive_audit_logs,
            task_calculate_metrics,
            task_expire_withdrawals,
            task_prune_key_usage,
            task_sweep_rate_limits,
        )

        if self._config.task.enabled:
            self._task_manager = TaskManager(metrics=self._metrics)
            self._task_manager.register(
                "rate_limit_sweep",
                CronJob(
                    handler=partial(task_sweep_rate_limits, self),
                    period=self._config.rate_limit.sweep_period_seconds,
                ),
            )
            if self._config.audit.retention_days > 0:
                self._task_manager.register(
                    "audit_archive",
                    CronJob(
                        handler=partial(task_archive_audit_logs, self),
                        period=self._config.audit.archive_period_seconds,
                    ),
                )
            self._task_manager.register(
                "withdrawal_expiry",
                CronJob(
                    handler=partial(task_expire_withdrawals, self),
                    period=self._config.withdrawals.expiry_period_seconds,
                ),
            )
            self._task_manager.register(
                "api_key_usage_prune",
                CronJob(handler=partial(task_prune_key_usage, self), period=USAGE_PRUNE_PERIOD),
            )
            if self._metrics is not None:
                self._task_manager.register(
                    "calculate_metrics",
                    CronJob(
                        handler=partial(task_calculate_metrics, self, self._metrics),
                        period=self._config.task.metrics_period_seconds,
                    ),
                )
            await self._task_manager.start()

        self._initialized = True

    async def close(self) -> None:
        """Gracefully shut down all services and connections.

        Can be called multiple times (idempotent).
        """
        if not self._initialized:
            return

        # Stop task manager first (depends on services)
        if self._task_manager is not None:
            await self._task_manager.stop()
            self._task_manager = None

        if self._notifications is not None:
            await self._notifications.stop()
            self._notifications = None

        self._metrics = None

        # Tear down services
        self._withdrawal_service = None
        self._alert_service = None
        self._audit_service = None
        self._device_trust_service = None
        self._quota_service = None
        self._credential_service = None

        # Close cache
        if self._cache is not None:
            await self._cache.close()
            self._cache = None

        # Close datastore
        if self._datastore is not None:
            await self._datastore.close()
            self._datastore = None

        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        """Check if the engine is initialized."""
        return self._initialized

    @property
    def clock(self) -> Clock:
        """The millisecond time source shared by all services."""
        return self._clock

    @property
    def config(self) -> AppConfig:
        """Get the application configuration."""
        return self._config

    @property
    def datastore(self) -> Datastore:
        """Get the datastore instance.

        Raises:
            RuntimeError: If engine not initialized.
        """
        if self._datastore is None:
            raise RuntimeError(_ERR_NOT_INITIALIZED)
        return self._datastore

    @property
    def cache(self) -> CacheClient:
        """Get the cache client instance.

        Raises:
            RuntimeError: If engine not initialized.
        """
        if self._cache is None:
            raise RuntimeError(_ERR_NOT_INITIALIZED)
        return self._cache

    @property
    def credential_service(self) -> CredentialService:
        """Get the API key service."""
        if self._credential_service is None:
            raise RuntimeError(_ERR_NOT_INITIALIZED)
        return self._credential_service

    @property
    def quota_service(self) -> QuotaService:
        """Get the rate limiting service."""
        if self._quota_service is None:
            raise RuntimeError(_ERR_NOT_INITIALIZED)
        return self._quota_service

    @property
    def device_trust_service(self) -> DeviceTrustService:
        """Get the device trust service."""
        if self._device_trust_service is None:
            raise RuntimeError(_ERR_NOT_INITIALIZED)
        return self._device_trust_service

    @property
    def audit_service(self) -> AuditService:
        """Get the audit ledger service."""
        if self._audit_service is None:
            raise RuntimeError(_ERR_NOT_INITIALIZED)
        return self._audit_service

    @property
    def alert_service(self) -> AlertService:
        """Get the security alert service."""
        if self._alert_service is None:
            raise RuntimeError(_ERR_NOT_INITIALIZED)
        return self._alert_service

    @property
    def withdrawal_service(self) -> WithdrawalService:
        """Get the withdrawal approval service."""
        if self._withdrawal_service is None:
            raise RuntimeError(_ERR_NOT_INITIALIZED)
        return self._withdrawal_service

    @property
    def metrics(self) -> GuardMetrics | None:
        """Get the engine metrics (None if disabled)."""
        return self._metrics

    @property
    def task_manager(self) -> TaskManager | None:
        """Get the task manager (None if not enabled)."""
        return self._task_manager

    @property
    def notification_service(self) -> NotificationService | None:
        """Get the notification service (None if not enabled)."""
        return self._notifications

    async def health_check(self) -> dict[str, str]:
        """Check health status of all engine components.

        Returns:
            Dictionary with component statuses ('ok', 'error', 'not_initialized').
        """
        status = {
            "engine": "ok" if self._initialized else "not_initialized",
            "datastore": "unknown",
            "cache": "unknown",
            "tasks": "unknown",
        }

        if self._initialized:
            if self._datastore and await self._datastore.ping():
                status["datastore"] = "ok"
            else:
                status["datastore"] = "error"

            if self._cache and self._cache.is_connected:
                status["cache"] = "ok"
            else:
                status["cache"] = "error"

            if self._task_manager is None:
                status["tasks"] = "disabled"
            else:
                status["tasks"] = "ok" if self._task_manager.is_running else "error"

        return status
