"""
API-specific settings.

Extends :class:`~datespine.core.settings.DateSpineSettings` with parameters
that govern the REST transport (prefix, CORS, auth).

All values can be overridden via environment variables prefixed with
``DATESPINE_`` (e.g. ``DATESPINE_API_PREFIX``, ``DATESPINE_ADMIN_API_KEY``).
"""

from __future__ import annotations

from pydantic import Field

from datespine.core.settings import DateSpineSettings


class DateSpineAPISettings(DateSpineSettings):
    """Settings for the datespine REST API.

    Order of precedence (highest → lowest):
        1. Environment variables (``DATESPINE_API_PREFIX``, etc.)
        2. ``.env`` file
        3. Defaults below
    """

    # ── API ──────────────────────────────────────────────────────────────
    api_prefix: str = Field(default="/api/v1", description="URL prefix for all endpoints")
    api_title: str = Field(default="datespine API", description="OpenAPI title")
    api_version: str = Field(default="0.1.0", description="OpenAPI version string")

    # ── CORS ─────────────────────────────────────────────────────────────
    cors_origins: list[str] = Field(default=["*"], description="Allowed CORS origins")

    # ── Latency ──────────────────────────────────────────────────────────
    slow_request_ms: float | None = Field(
        default=250.0, description="Log a slow_request warning above this many milliseconds"
    )

    # ── Auth ─────────────────────────────────────────────────────────────
    api_key: str | None = Field(default=None, description="Optional API key for gating access")
    admin_api_key: str | None = Field(
        default=None, description="Key required in X-Admin-Key for /admin endpoints"
    )
