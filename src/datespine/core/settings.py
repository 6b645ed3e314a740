"""Service settings for datespine.

One settings object describes where the fact table and the entitlement
source live, how aggressively entitlements are cached, when the nightly
rebuild fires, and what counts as an implausible rebuild.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.

    - **Pydantic validation:** Type-checked at startup, not at 06:00 on rebuild day
    - **Environment-driven:** Reads from ``DATESPINE_*`` env vars and ``.env``
    - **Sensible defaults:** Works out of the box against a local SQLite file

Examples:
    >>> from datespine.core.settings import DateSpineSettings
    >>> s = DateSpineSettings(entitlement_ttl_seconds=60)
    >>> s.rebuild_time()
    datetime.time(6, 0)

Tags:
    settings, configuration, pydantic, environment, datespine

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from datetime import time
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DateSpineSettings(BaseSettings):
    """Settings shared by the API process, the CLI and the rebuild job.

    Fields
    ──────
    fact_*            : Fact table location and the fixed risk-engine filter
    entitlement_*     : Entitlement source backend, cache TTLs, retry/timeout
    min_security_*    : Plausibility guard for rebuilds
    rebuild_* / scheduler_* : Daily trigger
    data_dir          : Registry persistence directory
    """

    model_config = SettingsConfigDict(
        env_prefix="DATESPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Network ──────────────────────────────────────────────────
    host: str = "0.0.0.0"
    port: int = 12100

    # ── Observability ────────────────────────────────────────────
    debug: bool = False
    log_level: str = "INFO"
    log_json: bool | None = None

    # ── Storage ──────────────────────────────────────────────────
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".datespine",
        description="Directory holding the persisted date registry",
    )
    persist_registry: bool = True

    # ── Fact source ──────────────────────────────────────────────
    fact_database_url: str = "sqlite:///facts.db"
    fact_table: str = "risk_position_fact"
    security_column: str = "parent_security_key"
    date_column: str = "reporting_date"
    risk_engine_column: str = "risk_engine_id"
    risk_engine_id: int = 1
    scan_batch_size: int = Field(default=10_000, ge=1)

    # ── Entitlement source ───────────────────────────────────────
    entitlement_backend: Literal["static", "sql", "http"] = "static"
    entitlement_database_url: str | None = None
    entitlement_table: str = "map_client_fund"
    entitlement_user_column: str = "user_id"
    entitlement_security_column: str = "parent_security_key"
    entitlement_flag_column: str = "show_positions"
    entitlement_url: str | None = None
    entitlement_file: Path | None = None

    # ── Entitlement cache ────────────────────────────────────────
    entitlement_ttl_seconds: float = Field(default=900.0, gt=0)
    entitlement_stale_ceiling_seconds: float = Field(default=14_400.0, gt=0)
    entitlement_cache_max_users: int = Field(default=50_000, ge=1)
    entitlement_idle_eviction_seconds: float = Field(default=86_400.0, gt=0)
    entitlement_timeout_seconds: float = Field(default=2.0, gt=0)
    entitlement_max_retries: int = Field(default=2, ge=0)
    entitlement_retry_base_delay: float = Field(default=0.1, ge=0)

    # ── Rebuild ──────────────────────────────────────────────────
    min_security_ratio: float = Field(default=0.5, ge=0, le=1)
    min_securities: int = Field(default=1, ge=0)
    rebuild_time_utc: str = "06:00"
    rebuild_on_startup: bool = True
    scheduler_enabled: bool = True
    scheduler_interval_seconds: float = Field(default=30.0, gt=0)

    # ── Requests ─────────────────────────────────────────────────
    request_timeout_seconds: float = Field(default=5.0, gt=0)

    @field_validator("rebuild_time_utc")
    @classmethod
    def _check_rebuild_time(cls, value: str) -> str:
        time.fromisoformat(value)
        return value

    @model_validator(mode="after")
    def _check_staleness(self) -> DateSpineSettings:
        if self.entitlement_stale_ceiling_seconds < self.entitlement_ttl_seconds:
            raise ValueError("entitlement_stale_ceiling_seconds must be >= entitlement_ttl_seconds")
        return self

    def rebuild_time(self) -> time:
        """Daily rebuild wall-clock time (UTC)."""
        return time.fromisoformat(self.rebuild_time_utc)

    @property
    def registry_path(self) -> Path:
        return Path(self.data_dir).expanduser() / "registry.json"
