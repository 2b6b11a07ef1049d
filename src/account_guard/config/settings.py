"""Application settings loaded from environment variables and config files.

Configuration is loaded from (highest priority first):
1. Environment variables (prefix: ``ACCOUNTGUARD_``, nested via ``__``)
2. YAML config file (``ACCOUNTGUARD_CONFIG_PATH`` env var or ``AppConfig.from_yaml``)
3. Defaults defined here
"""

from __future__ import annotations

import enum
from pathlib import Path
from typing import Any, Self

import yaml
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ---------------------------------------------------------------------------
# Enums for validated choices
# ---------------------------------------------------------------------------


class DatabaseEngine(enum.StrEnum):
    """Supported database engines."""

    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"


class CacheEngine(enum.StrEnum):
    """Supported cache backends (rate-limit record storage)."""

    MEMORY = "memory"
    REDIS = "redis"


# ---------------------------------------------------------------------------
# Sub-config models
# ---------------------------------------------------------------------------


class ServerConfig(BaseSettings):
    """HTTP boundary settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCOUNTGUARD_SERVER__",
        case_sensitive=False,
    )

    host: str = "0.0.0.0"  # noqa: S104
    port: int = 3010
    api_rate_limit_rule: str = "api:basic"


class DatabaseConfig(BaseSettings):
    """Database settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCOUNTGUARD_DB__",
        case_sensitive=False,
    )

    engine: DatabaseEngine = Field(
        default=DatabaseEngine.SQLITE,
        description="Database backend: sqlite or postgresql",
    )
    dsn: str = Field(
        default="sqlite+aiosqlite:///./account_guard.db",
        description="Async database connection string",
    )
    max_idle_connections: int = 5
    max_open_connections: int = 10
    debug_sql: bool = False


class CacheConfig(BaseSettings):
    """Cache settings. Rate-limit records live here."""

    model_config = SettingsConfigDict(
        env_prefix="ACCOUNTGUARD_CACHE__",
        case_sensitive=False,
    )

    engine: CacheEngine = Field(
        default=CacheEngine.MEMORY,
        description="Cache backend: memory or redis",
    )
    url: str = "redis://localhost:6379/0"
    max_connections: int = 10
    max_entries: int = 100_000
    # Keys under these prefixes expire by TTL or explicit delete only.
    pinned_prefixes: list[str] = Field(default_factory=lambda: ["ratelimit:"])


class CredentialConfig(BaseSettings):
    """API key issuance settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCOUNTGUARD_CREDENTIALS__",
        case_sensitive=False,
    )

    secret_bytes: int = Field(default=32, ge=16)
    usage_retention_days: int = 30


class RateLimitConfig(BaseSettings):
    """Sliding-window rate limiting settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCOUNTGUARD_RATELIMIT__",
        case_sensitive=False,
    )

    default_reputation: float = Field(default=0.5, ge=0.0, le=1.0)
    idle_record_max_age_ms: int = 3_600_000
    sweep_period_seconds: float = 60.0


class DeviceTrustConfig(BaseSettings):
    """Device fingerprinting and trust settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCOUNTGUARD_DEVICES__",
        case_sensitive=False,
    )

    initial_trust: float = Field(default=0.5, ge=0.0, le=1.0)
    failed_login_flag_threshold: int = 3
    stale_after_days: int = 30


class AuditConfig(BaseSettings):
    """Audit ledger settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCOUNTGUARD_AUDIT__",
        case_sensitive=False,
    )

    export_signing_key: str = ""
    export_max_entries: int = 10_000
    retention_days: int = Field(
        default=0,
        ge=0,
        description="Archive entries older than this many days (0 disables archival)",
    )
    archive_period_seconds: float = 3600.0


class AlertConfig(BaseSettings):
    """Security alert settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCOUNTGUARD_ALERTS__",
        case_sensitive=False,
    )

    large_withdrawal_threshold: float = 10_000
    low_trust_threshold: float = 0.3
    failed_login_threshold: int = 3


class WithdrawalConfig(BaseSettings):
    """Withdrawal approval workflow settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCOUNTGUARD_WITHDRAWALS__",
        case_sensitive=False,
    )

    cooling_period_ms: int = 3_600_000
    pending_ttl_ms: int = 7 * 86_400_000
    default_requires_approval_above: float = 1_000
    default_multi_sig_threshold: float = 10_000
    quota_rule: str = "withdrawal"
    expiry_period_seconds: float = 60.0


class NotificationConfig(BaseSettings):
    """Alert delivery fan-out settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCOUNTGUARD_NOTIFICATIONS__",
        case_sensitive=False,
    )

    enabled: bool = True
    buffer_size: int = 100


class MetricsConfig(BaseSettings):
    """Prometheus metrics settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCOUNTGUARD_METRICS__",
        case_sensitive=False,
    )

    enabled: bool = True


class TaskConfig(BaseSettings):
    """Background sweep settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCOUNTGUARD_TASK__",
        case_sensitive=False,
    )

    enabled: bool = True
    metrics_period_seconds: float = 15.0


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------


def _load_yaml(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file and return its contents as a dict.

    Returns an empty dict if the file doesn't exist or is empty.
    """
    p = Path(path)
    if not p.exists():
        return {}
    text = p.read_text(encoding="utf-8")
    data = yaml.safe_load(text)
    return data if isinstance(data, dict) else {}


class AppConfig(BaseSettings):
    """Top-level application configuration.

    Loads settings from environment variables (``ACCOUNTGUARD_`` prefix),
    an optional YAML file, and built-in defaults.
    """

    model_config = SettingsConfigDict(
        env_prefix="ACCOUNTGUARD_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    debug: bool = False
    version: str = "0.1.0"
    admin_key: str = ""
    config_path: str = ""

    server: ServerConfig = Field(default_factory=ServerConfig)
    db: DatabaseConfig = Field(default_factory=DatabaseConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    credentials: CredentialConfig = Field(default_factory=CredentialConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    devices: DeviceTrustConfig = Field(default_factory=DeviceTrustConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    alerts: AlertConfig = Field(default_factory=AlertConfig)
    withdrawals: WithdrawalConfig = Field(default_factory=WithdrawalConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    task: TaskConfig = Field(default_factory=TaskConfig)

    @model_validator(mode="before")
    @classmethod
    def _merge_yaml(cls, values: dict[str, Any]) -> dict[str, Any]:
        """Merge YAML config file contents under the env var overrides."""
        config_path = values.get("config_path", "")
        if not config_path:
            return values
        yaml_data = _load_yaml(config_path)
        # YAML values serve as defaults; env vars (already in *values*) win.
        for key, val in yaml_data.items():
            if key not in values or values[key] is None:
                values[key] = val
            elif isinstance(val, dict) and isinstance(values.get(key), dict):
                values[key] = {**val, **values[key]}
        return values

    @classmethod
    def from_yaml(cls, path: str | Path) -> Self:
        """Construct ``AppConfig`` loading defaults from a YAML file.

        Environment variables still override YAML values.
        """
        return cls(config_path=str(path))
