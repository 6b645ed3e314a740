"""
FastAPI application factory.

``create_app()`` wires middleware, routers, error handlers, and
lifespan events into a single ``FastAPI`` instance.

Startup order (lifespan):
    1. Build the runtime from settings (unless one was injected)
    2. Load the persisted registry so ordinals survive restarts
    3. Optional startup rebuild; failure is logged and alerted, the
       process still starts and ``/health/ready`` stays 503
    4. Start the daily rebuild scheduler

Tags:
    datespine, api, app-factory, composition-root, FastAPI

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from datespine.api.deps import get_settings
from datespine.api.health import HealthCheck, create_health_router
from datespine.api.middleware.auth import AuthMiddleware
from datespine.api.middleware.errors import (
    datespine_error_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from datespine.api.middleware.request_id import RequestIDMiddleware
from datespine.api.middleware.timing import TimingMiddleware
from datespine.api.settings import DateSpineAPISettings
from datespine.core.errors import DateSpineError, NoGenerationAvailable, RebuildFailed
from datespine.core.logging import get_logger
from datespine.scheduling import DailyRebuildTrigger, DateSpineScheduler, ThreadSchedulerBackend
from datespine.service import Runtime, create_runtime

log = get_logger("datespine.api")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan — startup / shutdown hooks."""
    settings: DateSpineAPISettings = app.state.settings
    log.info("datespine API starting", version=app.version)

    runtime: Runtime | None = getattr(app.state, "runtime", None)
    if runtime is None:
        runtime = create_runtime(settings)
        app.state.runtime = runtime

    try:
        runtime.coordinator.load_registry()
    except (OSError, ValueError) as e:
        log.error("registry_load_failed", error=str(e))

    trigger = DailyRebuildTrigger(settings.rebuild_time())
    if settings.rebuild_on_startup and runtime.manager.current is None:
        try:
            await asyncio.to_thread(runtime.coordinator.rebuild, "startup")
            trigger.mark_ran_if_past()
        except RebuildFailed as e:
            log.error("startup_rebuild_failed", error=e.message)

    backend: ThreadSchedulerBackend | None = None
    if settings.scheduler_enabled:
        scheduler = DateSpineScheduler(
            trigger,
            rebuild=runtime.coordinator.rebuild,
            purge=runtime.resolver.purge_idle,
        )
        backend = ThreadSchedulerBackend()
        backend.start(scheduler.tick, interval_seconds=settings.scheduler_interval_seconds)
    app.state.scheduler = backend

    yield

    if backend is not None:
        backend.stop()
    log.info("datespine API shutting down")


def _health_checks(app: FastAPI) -> list[HealthCheck]:
    def generation_check() -> dict[str, Any]:
        runtime: Runtime | None = getattr(app.state, "runtime", None)
        current = runtime.manager.current if runtime is not None else None
        if current is None:
            raise NoGenerationAvailable("no generation published yet")
        return {"version": current.version, "securities": current.security_count}

    def scheduler_check() -> dict[str, Any]:
        backend: ThreadSchedulerBackend | None = getattr(app.state, "scheduler", None)
        if backend is None:
            return {"enabled": False}
        if not backend.is_running:
            raise RuntimeError("scheduler thread is not running")
        return backend.health()

    return [
        HealthCheck("generation", generation_check),
        HealthCheck("scheduler", scheduler_check, required=False),
    ]


def create_app(
    *,
    settings: DateSpineAPISettings | None = None,
    runtime: Runtime | None = None,
) -> FastAPI:
    """Build and return a fully-configured FastAPI application.

    Parameters
    ----------
    settings : DateSpineAPISettings | None
        Override settings (useful for testing).  When ``None`` the cached
        singleton from :func:`get_settings` is used.
    runtime : Runtime | None
        Pre-built runtime (tests inject one with in-memory sources).  When
        ``None`` the lifespan builds one from *settings*.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        lifespan=lifespan,
        docs_url=f"{settings.api_prefix}/docs",
        redoc_url=f"{settings.api_prefix}/redoc",
        openapi_url=f"{settings.api_prefix}/openapi.json",
    )

    # Stash settings on app state for middleware access
    app.state.settings = settings
    app.state.runtime = runtime
    app.state.scheduler = None

    # Override DI so endpoints use the provided settings
    app.dependency_overrides[get_settings] = lambda: settings

    # ── Middleware (outermost → innermost) ────────────────────────────
    app.add_middleware(TimingMiddleware, slow_request_ms=settings.slow_request_ms)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(AuthMiddleware, api_key=settings.api_key, admin_api_key=settings.admin_api_key)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Exception handlers ───────────────────────────────────────────
    app.add_exception_handler(DateSpineError, datespine_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # ── Routers ──────────────────────────────────────────────────────
    from datespine.api.routers import admin, reporting_dates

    prefix = settings.api_prefix

    # Health endpoints at root level (no prefix) for container healthchecks
    app.include_router(
        create_health_router("datespine", version=settings.api_version, checks=_health_checks(app)),
        tags=["health"],
    )

    app.include_router(reporting_dates.router, prefix=prefix, tags=["reporting-dates"])
    app.include_router(admin.router, prefix=prefix, tags=["admin"])

    return app
