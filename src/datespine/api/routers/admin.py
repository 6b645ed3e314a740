"""
Admin router — rebuild trigger, status, entitlement push invalidation.

Endpoints:
    POST /admin/rebuild                     Run a rebuild now (409 if one is running)
    GET  /admin/status                      Rebuild status, generations, cache stats
    POST /admin/entitlements/invalidate     Drop cached entitlements

Gated by ``X-Admin-Key`` when ``admin_api_key`` is configured
(see :mod:`datespine.api.middleware.auth`).

Tags:
    datespine, api, admin, rebuild, invalidation

Doc-Types: API_REFERENCE
"""

from __future__ import annotations

import asyncio
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, Field, model_validator

from datespine.api.deps import RuntimeDep
from datespine.api.schemas.common import ProblemDetail

router = APIRouter(prefix="/admin")


# ── Schemas ──────────────────────────────────────────────────────────


class RebuildResponse(BaseModel):
    version: int = Field(description="Version of the newly published generation")
    stats: dict[str, Any] = Field(default_factory=dict, description="Build counters")


class InvalidateRequest(BaseModel):
    """Either a list of user ids or ``{"all": true}``."""

    user_ids: list[str] = Field(default_factory=list)
    all: bool = False

    @model_validator(mode="after")
    def _require_target(self) -> InvalidateRequest:
        if not self.all and not self.user_ids:
            raise ValueError("provide user_ids or set all=true")
        return self


class InvalidateResponse(BaseModel):
    removed: int = Field(description="Cache entries dropped")


# ── Endpoints ────────────────────────────────────────────────────────


@router.post(
    "/rebuild",
    response_model=RebuildResponse,
    responses={409: {"model": ProblemDetail}, 500: {"model": ProblemDetail}},
)
async def trigger_rebuild(runtime: RuntimeDep) -> RebuildResponse:
    """Run a rebuild synchronously and publish it on success."""
    result = await asyncio.to_thread(runtime.coordinator.rebuild, "admin")
    return RebuildResponse(version=result.generation.version, stats=result.stats.to_dict())


@router.get("/status")
async def get_status(runtime: RuntimeDep) -> dict[str, Any]:
    return {
        "rebuild": runtime.coordinator.status(),
        "generations": runtime.manager.stats(),
        "entitlements": runtime.resolver.stats(),
    }


@router.post("/entitlements/invalidate", response_model=InvalidateResponse)
async def invalidate_entitlements(body: InvalidateRequest, runtime: RuntimeDep) -> InvalidateResponse:
    if body.all:
        return InvalidateResponse(removed=runtime.resolver.invalidate_all())
    removed = sum(1 for user_id in body.user_ids if runtime.resolver.invalidate(user_id))
    return InvalidateResponse(removed=removed)
