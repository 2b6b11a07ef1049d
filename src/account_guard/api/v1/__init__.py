"""V1 REST API routes.

Combines all sub-routers under the ``/api/v1`` prefix.
"""

from fastapi import APIRouter

from account_guard.api.v1.alerts import router as alerts_router
from account_guard.api.v1.api_keys import router as api_keys_router
from account_guard.api.v1.audit import router as audit_router
from account_guard.api.v1.devices import router as devices_router
from account_guard.api.v1.rate_limits import router as rate_limits_router
from account_guard.api.v1.withdrawals import router as withdrawals_router

v1_router = APIRouter(prefix="/api/v1")

v1_router.include_router(api_keys_router)
v1_router.include_router(rate_limits_router)
v1_router.include_router(devices_router)
v1_router.include_router(audit_router)
v1_router.include_router(alerts_router)
v1_router.include_router(withdrawals_router)

__all__ = ["v1_router"]
