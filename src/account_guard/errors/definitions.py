"""Pre-defined error instances shared by the services and the API layer."""

from __future__ import annotations

from account_guard.errors.guard_errors import GuardError

# -- Authentication --------------------------------------------------------

ErrUnauthorized = GuardError("unauthorized", status_code=401, code="unauthorized")
ErrAdminRequired = GuardError("admin authentication required", status_code=403, code="admin-required")
ErrForbidden = GuardError("permission denied", status_code=403, code="forbidden")
ErrIPNotAllowed = GuardError(
    "request address is not in the key allow-list", status_code=403, code="ip-not-allowed"
)
ErrRateLimited = GuardError("rate limit exceeded", status_code=429, code="rate-limited")

# -- Validation ------------------------------------------------------------

ErrInvalidAllowList = GuardError(
    "invalid IP allow-list entry", status_code=400, code="invalid-allow-list"
)
ErrInvalidPermission = GuardError(
    "invalid permission scope", status_code=400, code="invalid-permission"
)
ErrInvalidSeverity = GuardError("invalid alert severity", status_code=400, code="invalid-severity")
ErrInvalidRateLimitRule = GuardError(
    "invalid rate limit rule", status_code=400, code="invalid-rate-limit-rule"
)

# -- Not Found -------------------------------------------------------------

ErrAPIKeyNotFound = GuardError("api key not found", status_code=404, code="api-key-not-found")
ErrDeviceNotFound = GuardError("device not found", status_code=404, code="device-not-found")
ErrAlertNotFound = GuardError("alert not found", status_code=404, code="alert-not-found")
ErrAuditEntryNotFound = GuardError(
    "audit entry not found", status_code=404, code="audit-entry-not-found"
)
ErrWithdrawalNotFound = GuardError(
    "withdrawal request not found", status_code=404, code="withdrawal-not-found"
)
ErrRateLimitRuleNotFound = GuardError(
    "rate limit rule not found", status_code=404, code="rate-limit-rule-not-found"
)

# -- Workflow --------------------------------------------------------------

ErrWorkflowRejected = GuardError(
    "withdrawal workflow rejected the operation", status_code=409, code="workflow-rejected"
)
