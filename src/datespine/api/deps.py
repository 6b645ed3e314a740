"""
FastAPI dependency injection — settings singleton and the process runtime.

Usage in routers::

    from datespine.api.deps import RuntimeDep, Settings

    @router.get("/things")
    def list_things(runtime: RuntimeDep, settings: Settings):
        ...

Tags:
    datespine, api, dependency-injection, singletons

Doc-Types:
    api-reference
"""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Request

from datespine.api.settings import DateSpineAPISettings
from datespine.core.errors import NoGenerationAvailable
from datespine.service import Runtime

# ── Settings (singleton) ─────────────────────────────────────────────────


@lru_cache(maxsize=1)
def get_settings() -> DateSpineAPISettings:
    """Cached settings — loaded once per process."""
    return DateSpineAPISettings()


# ── Runtime (created by the app lifespan) ────────────────────────────────


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise NoGenerationAvailable("service is still starting", retry_after=5)
    return runtime


# ── Convenience type aliases ─────────────────────────────────────────────

Settings = Annotated[DateSpineAPISettings, Depends(get_settings)]
RuntimeDep = Annotated[Runtime, Depends(get_runtime)]
