"""ORM models. Importing this package registers every table with ``Base.metadata``."""

from account_guard.engine.models.alert import (
    AlertChannel,
    AlertSeverity,
    IncidentResponse,
    SecurityAlert,
)
from account_guard.engine.models.api_key import APIKey, APIKeyStatus, APIKeyUsage
from account_guard.engine.models.audit_log import AuditCheckpoint, AuditLog
from account_guard.engine.models.base import Base
from account_guard.engine.models.device import DeviceFingerprint, SuspiciousActivity
from account_guard.engine.models.withdrawal import (
    Approval,
    WhitelistedAddress,
    WithdrawalLimit,
    WithdrawalRequest,
    WithdrawalStatus,
)

ALL_MODELS: list[type[Base]] = [
    APIKey,
    APIKeyUsage,
    DeviceFingerprint,
    SuspiciousActivity,
    AuditLog,
    AuditCheckpoint,
    SecurityAlert,
    IncidentResponse,
    WithdrawalRequest,
    Approval,
    WhitelistedAddress,
    WithdrawalLimit,
]

__all__ = [
    "ALL_MODELS",
    "APIKey",
    "APIKeyStatus",
    "APIKeyUsage",
    "AlertChannel",
    "AlertSeverity",
    "Approval",
    "AuditCheckpoint",
    "AuditLog",
    "Base",
    "DeviceFingerprint",
    "IncidentResponse",
    "SecurityAlert",
    "SuspiciousActivity",
    "WhitelistedAddress",
    "WithdrawalLimit",
    "WithdrawalRequest",
    "WithdrawalStatus",
]
