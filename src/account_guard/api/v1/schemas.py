"""V1 API request/response Pydantic schemas.

These are the *API-layer* schemas: thin wrappers that define the HTTP
contract. They deliberately do NOT inherit from SQLAlchemy models; the
endpoint code maps between ORM objects and these schemas.
"""

from __future__ import annotations

from decimal import Decimal  # noqa: TC003 - Pydantic needs this at runtime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Generic
# ---------------------------------------------------------------------------


class ErrorResponse(BaseModel):
    """Standard error body ``{"code": "...", "message": "..."}``."""

    code: str
    message: str


class _ORMResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


class APIKeyCreateRequest(BaseModel):
    """POST /api/v1/api-keys — issue a key."""

    name: str = Field(min_length=1, max_length=255)
    permissions: list[str] = Field(default_factory=list)
    ip_allow_list: list[str] = Field(default_factory=list)
    expires_in_ms: int | None = Field(default=None, gt=0)
    user_id: str | None = Field(default=None, description="Owner; admin only")


class APIKeyResponse(_ORMResponse):
    id: str
    user_id: str
    name: str
    permissions: list[str]
    ip_allow_list: list[str]
    issued_at: int
    expires_at: int | None = None
    last_used_at: int | None = None
    status: str
    replaced_by: str | None = None


class APIKeyCreateResponse(APIKeyResponse):
    """Carries the plaintext key, shown only once."""

    key: str


class PermissionsUpdateRequest(BaseModel):
    permissions: list[str]


class AllowListUpdateRequest(BaseModel):
    ip_allow_list: list[str]


class UsageStatisticsResponse(BaseModel):
    total_requests: int
    success_rate: float
    avg_response_time_ms: float
    top_endpoints: list[dict[str, Any]]


# ---------------------------------------------------------------------------
# Rate limits
# ---------------------------------------------------------------------------


class RateLimitRuleSchema(BaseModel):
    rule_id: str = Field(min_length=1, max_length=128)
    window_ms: int = Field(gt=0)
    max_requests: int = Field(ge=1)
    tier: str = Field(default="basic", pattern="^(basic|premium|enterprise)$")
    reputation_modifier: float = Field(default=1.0, gt=0)


class RateLimitCheckRequest(BaseModel):
    identifier: str = Field(min_length=1)
    rule_id: str
    reputation: float | None = Field(default=None, ge=0.0, le=1.0)


class RateLimitResultResponse(BaseModel):
    allowed: bool
    remaining: int
    reset_at: int
    retry_after_ms: int | None = None


class ReputationUpdateRequest(BaseModel):
    identifier: str
    rule_id: str
    reputation: float = Field(ge=0.0, le=1.0)


class DynamicAdjustmentRequest(BaseModel):
    system_load: float = Field(ge=0.0)
    error_rate: float = Field(ge=0.0, le=1.0)


class RecordStatisticsResponse(BaseModel):
    total_requests: int
    blocked_requests: int
    current_reputation: float
    adjusted_limit: int


class BruteForceResponse(BaseModel):
    detected: bool
    severity: str
    details: str


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


class DeviceInfoSchema(BaseModel):
    user_agent: str = ""
    platform: str = ""
    screen_resolution: str = ""
    timezone: str = ""
    language: str = ""
    plugins: list[str] = Field(default_factory=list)
    fonts: list[str] = Field(default_factory=list)
    canvas: str = ""
    webgl: str = ""


class DeviceRegisterRequest(BaseModel):
    device_info: DeviceInfoSchema


class DeviceResponse(_ORMResponse):
    id: str
    user_id: str
    fingerprint: str
    trust_score: float
    first_seen: int
    last_seen: int
    login_count: int
    failed_login_attempts: int
    typical_locations: list[str]
    risk_factors: list[str]
    verified: bool


class DeviceRegisterResponse(BaseModel):
    device: DeviceResponse
    created: bool


class LoginRecordRequest(BaseModel):
    success: bool
    location: str | None = None


class LoginRecordResponse(BaseModel):
    found: bool
    trust_score: float
    failed_login_attempts: int
    flagged: bool


class PatternAnalysisRequest(BaseModel):
    location: str | None = None


class PatternAnalysisResponse(BaseModel):
    anomalous: bool
    anomalies: list[str]
    risk_level: str


class SuspiciousActivityRequest(BaseModel):
    activity_type: str = Field(min_length=1)
    severity: str = "medium"
    details: str = ""


class SuspiciousActivityResponse(_ORMResponse):
    id: int
    device_id: str
    activity_type: str
    severity: str
    timestamp: int
    details: str


class DeviceStatisticsResponse(BaseModel):
    total_devices: int
    verified_devices: int
    average_trust_score: float
    suspicious_devices: int


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class AuditLogResponse(BaseModel):
    sequence: int
    id: str
    user_id: str
    action: str
    resource: str
    resource_id: str | None = None
    method: str | None = None
    endpoint: str | None = None
    status_code: int | None = None
    ip_address: str
    user_agent: str
    timestamp: int
    metadata: dict[str, Any]
    previous_checksum: str
    checksum: str


class AuditSearchParams(BaseModel):
    user_id: str | None = None
    action: str | None = None
    resource: str | None = None
    start: int | None = None
    end: int | None = None
    ip_address: str | None = None
    limit: int = Field(100, ge=1, le=1000)
    offset: int = Field(0, ge=0)


class AuditExportRequest(BaseModel):
    format: str = Field(default="json", pattern="^(json|csv)$")
    user_id: str | None = None
    action: str | None = None
    resource: str | None = None
    start: int | None = None
    end: int | None = None


class AuditExportResponse(BaseModel):
    exported_at: int
    exported_by: str
    format: str
    count: int
    signature: str
    content: str


class ChainVerificationResponse(BaseModel):
    valid: bool
    tampered: list[str]
    checked: int


class ActivitySummaryResponse(BaseModel):
    total_actions: int
    unique_resources: int
    top_actions: list[dict[str, Any]]
    activity_by_hour: list[int]


class ArchiveRequest(BaseModel):
    older_than_ms: int = Field(gt=0)


class ArchiveResponse(BaseModel):
    archived: int
    remaining: int
    anchor_checksum: str | None = None


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


class AlertCreateRequest(BaseModel):
    user_id: str
    alert_type: str = Field(min_length=1)
    severity: str
    title: str = Field(min_length=1, max_length=255)
    description: str = ""
    metadata: dict[str, Any] | None = None


class AlertResponse(BaseModel):
    id: str
    user_id: str
    alert_type: str
    severity: str
    title: str
    description: str
    timestamp: int
    resolved: bool
    resolved_at: int | None = None
    resolved_by: str | None = None
    channels: list[str]
    metadata: dict[str, Any]


class AnomalyDetectionRequest(BaseModel):
    user_id: str
    activity: dict[str, Any]


class AlertResolveRequest(BaseModel):
    notes: str | None = None


class BulkResolveRequest(BaseModel):
    alert_ids: list[str] = Field(min_length=1)


class AlertEscalateRequest(BaseModel):
    severity: str


class IncidentResponseRequest(BaseModel):
    action: str = Field(min_length=1)
    outcome: str = ""
    notes: str | None = None


class IncidentResponseSchema(_ORMResponse):
    id: int
    alert_id: str
    action: str
    performed_by: str
    timestamp: int
    outcome: str
    notes: str | None = None


class ThresholdRequest(BaseModel):
    threshold: float


class AlertStatisticsResponse(BaseModel):
    total_alerts: int
    by_severity: dict[str, int]
    by_type: dict[str, int]
    resolved_count: int
    average_resolution_time_ms: float


class AlertTrendResponse(BaseModel):
    daily_alerts: list[dict[str, Any]]
    direction: str


# ---------------------------------------------------------------------------
# Withdrawals
# ---------------------------------------------------------------------------


class WithdrawalCreateRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    currency: str = Field(min_length=1, max_length=16)
    destination_address: str = Field(min_length=1)
    device_id: str | None = None


class ApprovalSchema(_ORMResponse):
    approver_id: str
    approver_name: str
    timestamp: int
    signature: str
    comments: str | None = None


class WithdrawalResponse(_ORMResponse):
    id: str
    user_id: str
    amount: Decimal
    currency: str
    destination_address: str
    requested_at: int
    status: str
    required_approvals: int
    approvals: list[ApprovalSchema]
    cooling_off_until: int | None = None
    expires_at: int
    executed_at: int | None = None
    rejected_at: int | None = None
    rejection_reason: str | None = None
    cancelled_at: int | None = None


class WorkflowResponse(BaseModel):
    success: bool
    message: str
    request: WithdrawalResponse | None = None


class ApproveRequest(BaseModel):
    signature: str = Field(min_length=1)
    approver_name: str = ""
    comments: str | None = None


class RejectRequest(BaseModel):
    reason: str = Field(min_length=1)


class WhitelistAddRequest(BaseModel):
    address: str = Field(min_length=1)
    label: str = ""
    currency: str = Field(min_length=1, max_length=16)


class WhitelistedAddressResponse(_ORMResponse):
    address: str
    label: str
    currency: str
    added_at: int
    added_by: str
    verified: bool
    verified_at: int | None = None


class WithdrawalLimitSchema(_ORMResponse):
    daily_limit: Decimal = Field(gt=0)
    monthly_limit: Decimal = Field(gt=0)
    requires_approval_above: Decimal = Field(ge=0)
    multi_sig_threshold: Decimal = Field(ge=0)
