# =============================================================================
# Multi-Tenant Database Gateway — FastAPI Application
# =============================================================================
#
# LIFESPAN (startup → shutdown):
#   1. Create metadata tables (projects, query_history)
#   2. Build the components and put them on app.state:
#        registry     — PoolRegistry (one bounded pool per project)
#        provisioner  — PostgresProvisioner / SQLiteProvisioner
#        history      — HistoryRecorder (own sessions)
#        executor     — QueryExecutor
#        projects     — ProjectService (what the routers call)
#        rate_limiter — RateLimiter (None when disabled)
#        assistant    — LLMAssistant (None when no API key is configured)
#   3. Start the idle-pool pruner
#   4. On shutdown: stop the pruner, close every pool, the provisioner's
#      control engine, the limiter store and the metadata engine
#
# ERRORS: GatewayError subclasses map to their status code with
# {"detail": message}; RateLimitExceeded adds Retry-After. Anything else is
# logged with a traceback and answered with a generic 500.
#
# RUN:
#   uvicorn dbgateway.main:app --reload
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import math
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from dbgateway.api import admission, ai, history, projects, query
from dbgateway.config import Settings, get_settings
from dbgateway.db.engine import async_engine, async_session_factory, create_tables
from dbgateway.errors import GatewayError, RateLimitExceeded
from dbgateway.models.responses import HealthResponse
from dbgateway.services.assistant import LLMAssistant
from dbgateway.services.executor import QueryExecutor
from dbgateway.services.history import HistoryRecorder
from dbgateway.services.introspection import SchemaIntrospector
from dbgateway.services.llm import build_llm_provider
from dbgateway.services.pool_registry import PoolRegistry
from dbgateway.services.projects import ProjectService
from dbgateway.services.provisioning import build_provisioner
from dbgateway.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


async def _prune_idle_pools(registry: PoolRegistry, idle_ttl: float) -> None:
    """Evict idle tenant pools every quarter TTL, forever."""
    interval = max(1.0, idle_ttl / 4)
    while True:
        await asyncio.sleep(interval)
        evicted = await registry.prune_idle(idle_ttl)
        if evicted:
            logger.info("Pruned %d idle connection pools", len(evicted))


def _build_assistant(settings: Settings) -> LLMAssistant | None:
    try:
        return LLMAssistant(build_llm_provider(settings))
    except ValueError as e:
        logger.warning("AI assistant disabled: %s", e)
        return None


def create_app(settings: Settings | None = None) -> FastAPI:
    """Application factory."""
    settings = settings or get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.create_tables_on_startup:
            await create_tables()
            logger.info("Metadata tables ready")

        registry = PoolRegistry.from_settings(settings)
        provisioner = build_provisioner(settings, registry)
        recorder = HistoryRecorder(async_session_factory)
        introspector = SchemaIntrospector(registry)
        executor = QueryExecutor(
            registry,
            recorder,
            introspector,
            max_result_rows=settings.max_result_rows,
            max_export_rows=settings.max_export_rows,
        )

        app.state.registry = registry
        app.state.provisioner = provisioner
        app.state.history = recorder
        app.state.executor = executor
        app.state.projects = ProjectService(
            async_session_factory, registry, provisioner, executor, recorder, introspector,
        )
        app.state.rate_limiter = (
            RateLimiter.from_settings(settings) if settings.rate_limit_enabled else None
        )
        app.state.assistant = _build_assistant(settings)

        pruner = None
        if settings.tenant_pool_idle_ttl > 0:
            pruner = asyncio.create_task(
                _prune_idle_pools(registry, settings.tenant_pool_idle_ttl),
                name="prune-idle-pools",
            )

        logger.info(
            "%s v%s started (provisioning=%s, rate_limit=%s)",
            settings.app_name,
            settings.app_version,
            settings.provisioning_backend,
            settings.rate_limit_backend if settings.rate_limit_enabled else "off",
        )

        yield

        if pruner is not None:
            pruner.cancel()
            try:
                await pruner
            except asyncio.CancelledError:
                pass
        await registry.shutdown()
        await provisioner.close()
        if app.state.rate_limiter is not None:
            await app.state.rate_limiter.close()
        await async_engine.dispose()
        logger.info("Shutdown complete")

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "Provisions isolated databases per project, executes SQL against "
            "them through cached connection pools, introspects their schema "
            "and records every execution."
        ),
        lifespan=lifespan,
    )
    app.state.identity_user_header = settings.identity_user_header
    app.state.identity_email_header = settings.identity_email_header

    @app.exception_handler(GatewayError)
    async def _gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        headers = None
        if isinstance(exc, RateLimitExceeded):
            headers = {"Retry-After": str(max(1, math.ceil(exc.retry_after_ms / 1000)))}
        if exc.status_code >= 500:
            logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message},
            headers=headers,
        )

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    app.include_router(projects.router)
    app.include_router(query.router)
    app.include_router(history.router)
    app.include_router(ai.router)
    app.include_router(admission.router)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check(request: Request) -> HealthResponse:
        registry = getattr(request.app.state, "registry", None)
        return HealthResponse(
            version=settings.app_version,
            service=settings.app_name,
            pools=registry.stats()["pool_count"] if registry is not None else 0,
        )

    return app


app = create_app()
