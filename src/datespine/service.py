"""
Service layer — wires registry, builder, generations, entitlements and queries.

``AvailabilityService`` is the transport-free core of the API layer:
resolve the user's entitlements, bind to the current generation, run the
union, release the handle. ``RebuildCoordinator`` is the single writer:
it runs at most one rebuild at a time, publishes on success, persists the
registry, and alerts on failure without disturbing live traffic.
``create_runtime`` assembles both from ``DateSpineSettings``.

Manifesto:
    - **Read path never waits on the write path:** Rebuilds work on a fresh
      generation and become visible through one publish
    - **Handles always released:** ``with handle`` even on cancellation
    - **Failures isolated:** A failed rebuild is an alert, not an outage

Architecture:
    ::

        Request ─► AvailabilityService.get_visible_dates(user)
                     ├─ EntitlementResolver.resolve(user)    (cached, stale-tolerant)
                     ├─ GenerationManager.acquire_current()  (refcount++)
                     ├─ QueryEngine.visible_dates(...)
                     └─ handle.release()                     (refcount--)

        Trigger (daily / admin) ─► RebuildCoordinator.rebuild()
                     ├─ non-blocking single-writer lock ─► RebuildInProgress
                     ├─ SecurityDateIndexBuilder.build()
                     ├─ GenerationManager.publish()
                     ├─ RegistryStore.save()
                     └─ on failure: status + AlertSink.send("rebuild_failed")

Tags:
    service, orchestration, rebuild, single-writer, alerting, datespine

Doc-Types:
    - API Reference
    - Technical Design
"""

from __future__ import annotations

import re
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any, Protocol

from datespine.builder import BuildResult, SecurityDateIndexBuilder
from datespine.core.errors import (
    ConfigError,
    EntitlementSourceError,
    InvalidRequest,
    RebuildFailed,
    RebuildInProgress,
)
from datespine.core.logging import get_logger
from datespine.core.retry import ExponentialBackoff, NoRetry, RetryContext
from datespine.core.settings import DateSpineSettings
from datespine.core.timeout import TimeoutExpired, run_with_timeout
from datespine.entitlements import (
    EntitlementResolver,
    EntitlementSet,
    EntitlementSource,
    HttpEntitlementSource,
    SqlEntitlementSource,
    StaticEntitlementSource,
)
from datespine.generation import Generation, GenerationManager
from datespine.query import CancelToken, QueryEngine, QueryStats
from datespine.registry import RegistrySnapshot, RegistryStore
from datespine.sources import FactSource, SqlFactSource

log = get_logger(__name__)

USER_ID_PATTERN = re.compile(r"[A-Za-z0-9._@\\-]{1,128}")


def utcnow() -> datetime:
    return datetime.now(UTC)


# ── Alerts ───────────────────────────────────────────────────────────────


class AlertSink(Protocol):
    def send(self, event: str, payload: dict[str, Any]) -> None: ...


class LoggingAlertSink:
    """Emit alerts as error-level structured log events."""

    def send(self, event: str, payload: dict[str, Any]) -> None:
        log.error(event, alert=True, **payload)


# ── Rebuild coordination ─────────────────────────────────────────────────


@dataclass
class RebuildStatus:
    running: bool = False
    last_trigger: str | None = None
    last_attempt_at: datetime | None = None
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    last_error: str | None = None
    consecutive_failures: int = 0
    total_failures: int = 0
    last_stats: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        def _iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "running": self.running,
            "last_trigger": self.last_trigger,
            "last_attempt_at": _iso(self.last_attempt_at),
            "last_success_at": _iso(self.last_success_at),
            "last_failure_at": _iso(self.last_failure_at),
            "last_error": self.last_error,
            "consecutive_failures": self.consecutive_failures,
            "total_failures": self.total_failures,
            "last_stats": dict(self.last_stats),
        }


class RebuildCoordinator:
    """Single-writer front door for rebuilds.

    Both the daily trigger and the admin trigger call :meth:`rebuild`.
    A call that arrives while a rebuild is running is rejected with
    ``RebuildInProgress`` rather than queued.
    """

    def __init__(
        self,
        builder: SecurityDateIndexBuilder,
        manager: GenerationManager,
        *,
        store: RegistryStore | None = None,
        alert_sinks: Sequence[AlertSink] = (),
    ):
        self.builder = builder
        self.manager = manager
        self.store = store
        self.alert_sinks = list(alert_sinks) or [LoggingAlertSink()]
        self._lock = threading.Lock()
        self._status = RebuildStatus()
        self._status_lock = threading.Lock()
        self._base_registry: RegistrySnapshot | None = None
        self._baseline_securities: int | None = None

    def load_registry(self) -> RegistrySnapshot:
        """Seed ordinals from the persisted registry (startup)."""
        if self.store is None:
            return RegistrySnapshot()
        self._base_registry = self.store.load()
        self._baseline_securities = self.store.baseline_securities
        return self._base_registry

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def rebuild(self, trigger: str = "manual") -> BuildResult:
        """Run one rebuild and publish it.

        Raises:
            RebuildInProgress: Another rebuild holds the writer lock.
            RebuildFailed: The rebuild failed; the previous generation stays current.
        """
        if not self._lock.acquire(blocking=False):
            log.info("rebuild_coalesced", trigger=trigger)
            raise RebuildInProgress("a rebuild is already running")
        try:
            self._mark_attempt(trigger)
            try:
                result = self.builder.build(
                    previous=self.manager.current,
                    version=self.manager.next_version(),
                    base_registry=self._base_registry,
                    baseline_securities=self._baseline_securities,
                )
            except RebuildFailed as e:
                self._record_failure(e, trigger)
                raise
            except Exception as e:
                failure = RebuildFailed(f"unexpected rebuild error: {e}", cause=e)
                self._record_failure(failure, trigger)
                raise failure from e

            self.manager.publish(result.generation)
            self._base_registry = None
            self._baseline_securities = None
            self._persist(result.generation)
            self._record_success(result)
            return result
        finally:
            self._lock.release()

    def status(self) -> dict[str, Any]:
        with self._status_lock:
            payload = self._status.to_dict()
        payload["running"] = self.running
        current = self.manager.current
        payload["generation"] = current.summary() if current is not None else None
        return payload

    # ── Internals ────────────────────────────────────────────────

    def _persist(self, generation: Generation) -> None:
        if self.store is None:
            return
        try:
            self.store.save(generation.registry, securities=generation.security_count)
        except OSError as e:
            # Ordinals survive in memory; next successful save catches up
            log.error("registry_persist_failed", path=str(self.store.path), error=str(e))

    def _mark_attempt(self, trigger: str) -> None:
        with self._status_lock:
            self._status.last_trigger = trigger
            self._status.last_attempt_at = utcnow()

    def _record_success(self, result: BuildResult) -> None:
        with self._status_lock:
            self._status.last_success_at = utcnow()
            self._status.last_error = None
            self._status.consecutive_failures = 0
            self._status.last_stats = {"version": result.generation.version, **result.stats.to_dict()}

    def _record_failure(self, error: RebuildFailed, trigger: str) -> None:
        with self._status_lock:
            self._status.last_failure_at = utcnow()
            self._status.last_error = error.message
            self._status.consecutive_failures += 1
            self._status.total_failures += 1
            failures = self._status.consecutive_failures

        current = self.manager.current
        payload = {
            "trigger": trigger,
            "consecutive_failures": failures,
            "serving_version": current.version if current is not None else None,
            **error.to_dict(),
        }
        for sink in self.alert_sinks:
            try:
                sink.send("rebuild_failed", payload)
            except Exception as e:  # noqa: BLE001
                log.warning("alert_sink_failed", sink=type(sink).__name__, error=str(e))


# ── Read path ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AvailabilityResult:
    user_id: str
    dates: list[date]
    generation: int
    stale: bool = False
    entitlement_age_seconds: float = 0.0
    stats: QueryStats | None = None


def validate_user_id(user_id: str | None) -> str:
    if user_id is None or not user_id.strip():
        raise InvalidRequest("user_id is required", field="user_id")
    if not USER_ID_PATTERN.fullmatch(user_id):
        raise InvalidRequest("user_id is malformed", field="user_id")
    return user_id


class AvailabilityService:
    """Answers "which reporting dates can this user see?"."""

    def __init__(
        self,
        resolver: EntitlementResolver,
        manager: GenerationManager,
        engine: QueryEngine | None = None,
    ):
        self.resolver = resolver
        self.manager = manager
        self.engine = engine or QueryEngine()

    def get_visible_dates(self, user_id: str | None, cancel: CancelToken | None = None) -> AvailabilityResult:
        """Resolve, bind, union, release.

        Raises:
            InvalidRequest: Malformed user id.
            EntitlementUnavailable: No usable entitlement set.
            NoGenerationAvailable: Nothing published yet.
            QueryCancelled: *cancel* was set mid-query.
        """
        user_id = validate_user_id(user_id)
        entitlement = self.resolver.resolve(user_id)

        with self.manager.acquire_current() as generation:
            result = self.engine.visible_dates(entitlement.securities, generation, cancel)

        if result.stats is not None and result.stats.unknown:
            log.debug("unknown_securities_skipped", user_id=user_id, unknown=result.stats.unknown)
        return AvailabilityResult(
            user_id=user_id,
            dates=result.dates,
            generation=result.generation,
            stale=entitlement.stale,
            entitlement_age_seconds=entitlement.age_seconds,
            stats=result.stats,
        )


def build_entitlement_fetch(
    source: EntitlementSource,
    *,
    timeout_seconds: float,
    max_retries: int,
    base_delay: float,
) -> Callable[[str], EntitlementSet]:
    """Wrap ``source.lookup`` with a per-attempt timeout and retry/backoff."""
    strategy = (
        ExponentialBackoff(max_retries=max_retries, base_delay=base_delay, max_delay=max(base_delay, 1.0))
        if max_retries > 0
        else NoRetry()
    )

    def _attempt(user_id: str) -> EntitlementSet:
        try:
            return run_with_timeout(
                source.lookup, timeout_seconds, operation="entitlement_lookup", args=(user_id,)
            )
        except TimeoutExpired as e:
            raise EntitlementSourceError(str(e), retryable=False, cause=e).with_context(
                user_id=user_id, source_name=getattr(source, "name", None)
            ) from e

    def _on_retry(attempt: int, error: Exception, delay: float) -> None:
        log.warning("entitlement_lookup_retry", attempt=attempt, delay=round(delay, 3), error=str(error))

    def fetch(user_id: str) -> EntitlementSet:
        return RetryContext(strategy, on_retry=_on_retry).run(_attempt, user_id)

    return fetch


# ── Composition ──────────────────────────────────────────────────────────


@dataclass
class Runtime:
    """Everything a process needs to serve and rebuild."""

    settings: DateSpineSettings
    manager: GenerationManager
    resolver: EntitlementResolver
    coordinator: RebuildCoordinator
    service: AvailabilityService


def create_entitlement_source(settings: DateSpineSettings) -> EntitlementSource:
    backend = settings.entitlement_backend
    if backend == "static":
        if settings.entitlement_file is not None:
            return StaticEntitlementSource.from_file(settings.entitlement_file)
        return StaticEntitlementSource()
    if backend == "sql":
        url = settings.entitlement_database_url or settings.fact_database_url
        return SqlEntitlementSource(
            url,
            table=settings.entitlement_table,
            user_column=settings.entitlement_user_column,
            security_column=settings.entitlement_security_column,
            flag_column=settings.entitlement_flag_column,
        )
    if backend == "http":
        if not settings.entitlement_url:
            raise ConfigError("entitlement_url is required for the http entitlement backend")
        return HttpEntitlementSource(settings.entitlement_url, timeout=settings.entitlement_timeout_seconds)
    raise ConfigError(f"unknown entitlement backend: {backend!r}")


def create_fact_source(settings: DateSpineSettings) -> FactSource:
    return SqlFactSource(
        settings.fact_database_url,
        table=settings.fact_table,
        security_column=settings.security_column,
        date_column=settings.date_column,
        risk_engine_column=settings.risk_engine_column,
        risk_engine_id=settings.risk_engine_id,
        batch_size=settings.scan_batch_size,
    )


def create_runtime(
    settings: DateSpineSettings,
    *,
    fact_source: FactSource | None = None,
    entitlement_source: EntitlementSource | None = None,
    alert_sinks: Sequence[AlertSink] = (),
) -> Runtime:
    """Assemble a runtime from settings; sources may be injected."""
    fact_source = fact_source or create_fact_source(settings)
    entitlement_source = entitlement_source or create_entitlement_source(settings)

    manager = GenerationManager()
    resolver = EntitlementResolver(
        entitlement_source,
        ttl_seconds=settings.entitlement_ttl_seconds,
        stale_ceiling_seconds=settings.entitlement_stale_ceiling_seconds,
        max_users=settings.entitlement_cache_max_users,
        idle_eviction_seconds=settings.entitlement_idle_eviction_seconds,
        fetch=build_entitlement_fetch(
            entitlement_source,
            timeout_seconds=settings.entitlement_timeout_seconds,
            max_retries=settings.entitlement_max_retries,
            base_delay=settings.entitlement_retry_base_delay,
        ),
    )
    builder = SecurityDateIndexBuilder(
        fact_source,
        min_security_ratio=settings.min_security_ratio,
        min_securities=settings.min_securities,
    )
    store = RegistryStore(settings.registry_path) if settings.persist_registry else None
    coordinator = RebuildCoordinator(builder, manager, store=store, alert_sinks=alert_sinks)
    service = AvailabilityService(resolver, manager)
    return Runtime(
        settings=settings,
        manager=manager,
        resolver=resolver,
        coordinator=coordinator,
        service=service,
    )


__all__ = [
    "AlertSink",
    "LoggingAlertSink",
    "RebuildStatus",
    "RebuildCoordinator",
    "AvailabilityResult",
    "AvailabilityService",
    "validate_user_id",
    "build_entitlement_fetch",
    "Runtime",
    "create_entitlement_source",
    "create_fact_source",
    "create_runtime",
]
