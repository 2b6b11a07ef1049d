"""FastAPI dependency injection helpers.

Provides ``Depends()``-compatible callables for engine access and
authentication in route handlers.

Usage in a route::

    @router.get("/devices")
    async def list_devices(
        ctx: Annotated[CallerContext, Depends(require_scope("devices:read"))],
        engine: Annotated[GuardEngine, Depends(get_engine)],
    ) -> ...:
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, Header, Request

from account_guard.api.middleware.auth import (
    AUTH_HEADER_ADMIN_KEY,
    AUTH_HEADER_API_KEY,
    AUTH_HEADER_DEVICE_ID,
    CallerContext,
    authenticate_request,
)
from account_guard.api.middleware.auth import (
    require_admin as _require_admin,
)
from account_guard.api.middleware.auth import (
    require_scope as _require_scope,
)
from account_guard.engine.client import GuardEngine  # noqa: TC001
from account_guard.engine.services.audit_service import RequestContext
from account_guard.errors.definitions import ErrUnauthorized

if TYPE_CHECKING:
    from collections.abc import Callable

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def get_engine(request: Request) -> GuardEngine:
    """Retrieve the engine from ``app.state``.

    The engine is stored on ``app.state.engine`` during lifespan startup.

    Raises:
        ErrUnauthorized: If the engine is not initialized (should never happen
        after startup).
    """
    engine: GuardEngine | None = getattr(request.app.state, "engine", None)
    if engine is None:
        raise ErrUnauthorized
    return engine


def client_ip(request: Request) -> str:
    """Address of the calling client, or ``unknown``."""
    return request.client.host if request.client else "unknown"


# ---------------------------------------------------------------------------
# Auth context
# ---------------------------------------------------------------------------


async def get_caller_context(
    request: Request,
    engine: Annotated[GuardEngine, Depends(get_engine)],
    x_api_key: Annotated[str, Header(alias=AUTH_HEADER_API_KEY)] = "",
    x_admin_key: Annotated[str, Header(alias=AUTH_HEADER_ADMIN_KEY)] = "",
    x_device_id: Annotated[str, Header(alias=AUTH_HEADER_DEVICE_ID)] = "",
) -> CallerContext:
    """Resolve the authenticated caller from request headers.

    One of ``x-api-key`` or ``x-admin-key`` must be provided. The context
    is also kept on ``request.state.caller`` for usage recording.
    """
    ctx = await authenticate_request(
        engine,
        api_key_header=x_api_key,
        admin_key_header=x_admin_key,
        client_ip=client_ip(request),
        device_id_header=x_device_id,
    )
    request.state.caller = ctx
    return ctx


def require_admin(
    ctx: Annotated[CallerContext, Depends(get_caller_context)],
) -> CallerContext:
    """Dependency that requires admin authentication.

    Raises:
        GuardError: 403 if the caller is not an admin.
    """
    _require_admin(ctx)
    return ctx


def require_scope(scope: str) -> Callable[[CallerContext], CallerContext]:
    """Build a dependency that requires the permission *scope*."""

    def _dependency(
        ctx: Annotated[CallerContext, Depends(get_caller_context)],
    ) -> CallerContext:
        _require_scope(ctx, scope)
        return ctx

    return _dependency


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


def request_context(request: Request, status_code: int = 200) -> RequestContext:
    """HTTP details of *request* for an audit entry."""
    return RequestContext(
        method=request.method,
        endpoint=request.url.path,
        status_code=status_code,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent", "unknown"),
    )
