"""FastAPI application factory."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import CollectorRegistry, generate_latest
from starlette.responses import Response

from account_guard import __version__
from account_guard.api.middleware.cors import setup_cors
from account_guard.api.v1 import v1_router
from account_guard.api.v1.schemas import ErrorResponse
from account_guard.config.settings import AppConfig
from account_guard.engine.client import GuardEngine
from account_guard.errors.guard_errors import GuardError
from account_guard.metrics.collector import GuardMetrics
from account_guard.metrics.middleware import PrometheusMiddleware

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from account_guard.utils.clock import Clock

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup / shutdown lifecycle hooks.

    Initialises the engine (datastore, cache, services) on startup and
    gracefully shuts down on exit.
    """
    config: AppConfig = app.state.config
    engine = GuardEngine(config, clock=app.state.clock, metrics=app.state.metrics)

    try:
        await engine.initialize()
        app.state.engine = engine
        logger.info("Account guard engine initialized")
        yield
    finally:
        await engine.close()
        logger.info("Account guard engine shut down")


def create_app(*, config: AppConfig | None = None, clock: Clock | None = None) -> FastAPI:
    """Build and return the FastAPI application.

    Args:
        config: Optional AppConfig. If *None*, a default config is created
            from environment variables.
        clock: Optional time source handed to the engine.
    """
    if config is None:
        config = AppConfig()

    app = FastAPI(
        title="account-guard",
        version=__version__,
        description="Account security and risk controls for trading platforms",
        lifespan=_lifespan,
    )

    # Store config on app.state for lifespan access
    app.state.config = config
    app.state.clock = clock
    app.state.metrics = GuardMetrics() if config.metrics.enabled else None

    # -- Middleware --
    setup_cors(app)

    @app.middleware("http")
    async def _record_key_usage(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        """Record a usage row for every request authenticated by an API key."""
        start = time.perf_counter()
        response = await call_next(request)
        caller = getattr(request.state, "caller", None)
        engine: GuardEngine | None = getattr(request.app.state, "engine", None)
        if caller is not None and caller.key_id and engine is not None:
            await engine.credential_service.record_usage(
                caller.key_id,
                request.url.path,
                request.method,
                response.status_code,
                caller.ip_address,
                (time.perf_counter() - start) * 1000,
            )
        return response

    # -- Error handler --
    @app.exception_handler(GuardError)
    async def _guard_error_handler(request: Request, exc: GuardError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(code=exc.code, message=exc.message).model_dump(),
        )

    # -- Base routes --
    @app.get("/health", tags=["base"])
    async def health(request: Request) -> dict:
        engine: GuardEngine | None = getattr(request.app.state, "engine", None)
        components = await engine.health_check() if engine is not None else {}
        return {"status": "ok", "components": components}

    @app.get("/metrics", tags=["base"], include_in_schema=False)
    async def metrics_endpoint() -> Response:
        """Prometheus metrics endpoint."""
        metrics: GuardMetrics | None = app.state.metrics
        registry = metrics.registry if metrics is not None else CollectorRegistry()
        return Response(
            content=generate_latest(registry),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    # -- Prometheus request metrics middleware --
    if app.state.metrics is not None:
        app.add_middleware(PrometheusMiddleware, registry=app.state.metrics.registry)

    # -- Mount v1 API --
    app.include_router(v1_router)

    return app
