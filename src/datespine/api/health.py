"""Health endpoints for the datespine API.

``/health`` and ``/health/ready`` evaluate every registered check and
answer 503 while a required one is failing; ``/health/live`` only says the
process is up. The ``generation`` check is required, so a replica reports
ready only once it has a published generation to serve from. Optional
checks (the scheduler) can only degrade the status.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Literal, NamedTuple

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from datespine.core.logging import get_logger

log = get_logger(__name__)

Status = Literal["healthy", "degraded", "unhealthy"]

_START_TIME = time.monotonic()


class CheckResult(BaseModel):
    status: Status
    error: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    status: Status
    service: str
    version: str
    uptime_s: float
    timestamp: str
    checks: dict[str, CheckResult]


class HealthCheck(NamedTuple):
    """One named check; ``fn`` returns details or raises when unhealthy."""

    name: str
    fn: Callable[[], dict[str, Any]]
    required: bool = True


def evaluate(checks: list[HealthCheck]) -> tuple[Status, dict[str, CheckResult]]:
    results: dict[str, CheckResult] = {}
    status: Status = "healthy"
    for check in checks:
        try:
            results[check.name] = CheckResult(status="healthy", details=check.fn() or {})
        except Exception as exc:
            log.warning("health_check_failed", check=check.name, error=str(exc))
            results[check.name] = CheckResult(status="unhealthy", error=str(exc)[:200])
            if check.required:
                status = "unhealthy"
            elif status == "healthy":
                status = "degraded"
    return status, results


def create_health_router(service_name: str, version: str, checks: list[HealthCheck]) -> APIRouter:
    router = APIRouter(tags=["health"])

    def report() -> JSONResponse:
        status, results = evaluate(checks)
        body = HealthResponse(
            status=status,
            service=service_name,
            version=version,
            uptime_s=round(time.monotonic() - _START_TIME, 1),
            timestamp=datetime.now(UTC).isoformat(),
            checks=results,
        )
        return JSONResponse(content=body.model_dump(), status_code=503 if status == "unhealthy" else 200)

    router.add_api_route("/health", report, methods=["GET"], response_model=HealthResponse)
    router.add_api_route("/health/ready", report, methods=["GET"], response_model=HealthResponse)

    @router.get("/health/live")
    def liveness() -> dict[str, str]:
        return {"status": "alive"}

    return router
