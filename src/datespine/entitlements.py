"""
Entitlement Resolver & Cache — user identity to visible security keys.

The external entitlement source (the security mapping that flags
``show_positions = 1`` per user and parent security) is slow and
occasionally unreachable, while entitlements rarely change intraday. The
resolver caches each user's set with a fresh TTL, falls back to a stale
entry within a bounded ceiling when the source fails, and drops entries on
explicit push invalidation, LRU pressure, or prolonged inactivity.

Manifesto:
    - **Per-key synchronisation:** A miss for one user never blocks a hit for
      another; concurrent misses for the same user share one lookup
    - **Bounded staleness:** Stale is better than failing, up to a ceiling
    - **Explicit degradation:** Stale serves are flagged, never silent
    - **Unknown user ≠ error:** An unknown user simply has no securities

Architecture:
    ::

        resolve(user)
          │
          ├─ fresh entry ───────────────────────────► hit
          │
          └─ per-user lock ─► fetch(user)  (retry + timeout wired by API layer)
                 │ ok      ─► store, LRU-evict ────► fresh
                 │ failure ─► entry age ≤ ceiling ─► stale (flagged)
                 │           otherwise ───────────► EntitlementUnavailable

        EntitlementSource (Protocol)
        ├── StaticEntitlementSource  — dict / JSON file
        ├── SqlEntitlementSource     — SELECT … WHERE flag = 1 (SQLAlchemy)
        └── HttpEntitlementSource    — GET {base}/users/{id}/securities (httpx)

Examples:
    >>> source = StaticEntitlementSource({"alice": {"S1", "S2"}})
    >>> resolver = EntitlementResolver(source, ttl_seconds=60, stale_ceiling_seconds=600)
    >>> resolver.resolve("alice").securities
    frozenset({'S1', 'S2'})

Tags:
    entitlements, cache, ttl, lru, staleness, single-flight, datespine

Doc-Types:
    - API Reference
    - Technical Design
"""

from __future__ import annotations

import json
import threading
import time
import weakref
from collections import OrderedDict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable
from urllib.parse import quote

import httpx
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from datespine.core.errors import EntitlementSourceError, EntitlementUnavailable
from datespine.core.logging import get_logger
from datespine.sources import check_identifier

log = get_logger(__name__)

EntitlementSet = frozenset[str]


# ── Sources ──────────────────────────────────────────────────────────────


@runtime_checkable
class EntitlementSource(Protocol):
    """External lookup: user identity → security keys with visibility enabled."""

    name: str

    def lookup(self, user_id: str) -> EntitlementSet:
        """Return the user's visible securities (empty for unknown users).

        Raises:
            EntitlementSourceError: The source could not answer.
        """
        ...


class StaticEntitlementSource:
    """In-process mapping, loadable from a JSON file of ``{user: [keys]}``."""

    name = "static_entitlements"

    def __init__(self, mapping: Mapping[str, Iterable[str]] | None = None):
        self._lock = threading.Lock()
        self._mapping: dict[str, EntitlementSet] = {
            user: frozenset(keys) for user, keys in (mapping or {}).items()
        }

    @classmethod
    def from_file(cls, path: str | Path) -> StaticEntitlementSource:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError(f"entitlement file {path} must contain a JSON object")
        return cls(payload)

    def lookup(self, user_id: str) -> EntitlementSet:
        with self._lock:
            return self._mapping.get(user_id, frozenset())

    def set(self, user_id: str, securities: Iterable[str]) -> None:
        with self._lock:
            self._mapping[user_id] = frozenset(securities)


class SqlEntitlementSource:
    """Query the security mapping table directly.

    Equivalent to::

        SELECT DISTINCT parent_security_key FROM map_client_fund
        WHERE user_id = :user_id AND show_positions = 1
    """

    name = "sql_entitlements"

    def __init__(
        self,
        engine_or_url: Engine | str,
        *,
        table: str = "map_client_fund",
        user_column: str = "user_id",
        security_column: str = "parent_security_key",
        flag_column: str = "show_positions",
    ):
        self._engine = (
            create_engine(engine_or_url) if isinstance(engine_or_url, str) else engine_or_url
        )
        table = check_identifier("table", table)
        user_column = check_identifier("column", user_column)
        security_column = check_identifier("column", security_column)
        flag_column = check_identifier("column", flag_column)
        self.query = (
            f"SELECT DISTINCT {security_column} FROM {table} "
            f"WHERE {user_column} = :user_id AND {flag_column} = 1"
        )

    def lookup(self, user_id: str) -> EntitlementSet:
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(text(self.query), {"user_id": user_id})
                return frozenset(str(row[0]) for row in rows)
        except SQLAlchemyError as e:
            raise EntitlementSourceError(f"entitlement query failed: {e}", cause=e).with_context(
                user_id=user_id, source_name=self.name
            ) from e


class HttpEntitlementSource:
    """Entitlement service reached over HTTP.

    ``GET {base_url}/users/{user_id}/securities`` must answer
    ``{"securities": ["S1", ...]}``; ``404`` means an unknown user.
    """

    name = "http_entitlements"

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 2.0,
        client: httpx.Client | None = None,
    ):
        self._client = client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    def lookup(self, user_id: str) -> EntitlementSet:
        path = f"/users/{quote(user_id, safe='')}/securities"
        try:
            resp = self._client.get(path)
        except httpx.HTTPError as e:
            raise EntitlementSourceError(f"entitlement service unreachable: {e}", cause=e).with_context(
                user_id=user_id, source_name=self.name
            ) from e

        if resp.status_code == 404:
            return frozenset()
        if resp.status_code >= 400:
            raise EntitlementSourceError(
                f"entitlement service returned {resp.status_code}",
                retryable=resp.status_code >= 500 or resp.status_code == 429,
            ).with_context(user_id=user_id, source_name=self.name, http_status=resp.status_code)

        try:
            securities = resp.json()["securities"]
        except (ValueError, KeyError, TypeError) as e:
            raise EntitlementSourceError(
                "malformed entitlement response", retryable=False, cause=e
            ).with_context(user_id=user_id, source_name=self.name) from e
        return frozenset(str(s) for s in securities)

    def close(self) -> None:
        self._client.close()


# ── Resolver ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ResolvedEntitlement:
    """A user's entitlement set plus how trustworthy it is.

    ``stale`` marks a degraded serve: the fresh TTL had passed and the
    source could not be reached, so an older cached set was returned.
    """

    user_id: str
    securities: EntitlementSet
    age_seconds: float
    stale: bool = False
    from_cache: bool = False


class _KeyLock:
    """Weak-referenceable per-user lock."""

    __slots__ = ("_lock", "__weakref__")

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def __enter__(self) -> _KeyLock:
        self._lock.acquire()
        return self

    def __exit__(self, *args: Any) -> None:
        self._lock.release()


@dataclass
class _Entry:
    securities: EntitlementSet
    fetched_at: float
    last_access: float


class EntitlementResolver:
    """Cache in front of an entitlement source.

    Parameters
    ----------
    source:
        The external entitlement source.
    ttl_seconds:
        Age below which a cached set is served without a lookup.
    stale_ceiling_seconds:
        Oldest cached set that may be served when the source fails.
    max_users:
        LRU capacity.
    idle_eviction_seconds:
        Entries not accessed for this long are dropped by ``purge_idle``.
    fetch:
        Callable used instead of ``source.lookup`` (the API layer passes one
        wrapped with retry and timeout).
    clock:
        Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        source: EntitlementSource,
        *,
        ttl_seconds: float = 900.0,
        stale_ceiling_seconds: float = 14_400.0,
        max_users: int = 50_000,
        idle_eviction_seconds: float = 86_400.0,
        fetch: Callable[[str], EntitlementSet] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if stale_ceiling_seconds < ttl_seconds:
            raise ValueError("stale_ceiling_seconds must be >= ttl_seconds")
        self.source = source
        self.ttl_seconds = ttl_seconds
        self.stale_ceiling_seconds = stale_ceiling_seconds
        self.max_users = max_users
        self.idle_eviction_seconds = idle_eviction_seconds
        self._fetch = fetch or source.lookup
        self._clock = clock

        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._map_lock = threading.Lock()
        self._key_locks: weakref.WeakValueDictionary[str, _KeyLock] = weakref.WeakValueDictionary()
        self._invalidation_seq = 0

        self._hits = 0
        self._misses = 0
        self._refreshes = 0
        self._stale_serves = 0
        self._failures = 0
        self._evictions = 0

    def resolve(self, user_id: str) -> ResolvedEntitlement:
        """Return the user's entitlement set, from cache when fresh.

        Raises:
            EntitlementUnavailable: Source failed and no cached set within
                the staleness ceiling exists.
        """
        now = self._clock()
        hit = self._fresh_hit(user_id, now)
        if hit is not None:
            return hit

        with self._lock_for(user_id):
            # Another request may have refreshed while we waited
            now = self._clock()
            hit = self._fresh_hit(user_id, now)
            if hit is not None:
                return hit

            with self._map_lock:
                self._misses += 1
                seq = self._invalidation_seq
                cached = self._entries.get(user_id)

            try:
                securities = frozenset(self._fetch(user_id))
            except Exception as e:
                return self._fallback(user_id, cached, e)

            now = self._clock()
            with self._map_lock:
                self._refreshes += 1
                if seq == self._invalidation_seq:
                    self._store_locked(user_id, _Entry(securities, now, now))
            return ResolvedEntitlement(user_id, securities, age_seconds=0.0)

    def invalidate(self, user_id: str) -> bool:
        """Drop one user's entry (push notification from the source)."""
        with self._map_lock:
            self._invalidation_seq += 1
            removed = self._entries.pop(user_id, None) is not None
        log.info("entitlement_invalidated", user_id=user_id, removed=removed)
        return removed

    def invalidate_all(self) -> int:
        with self._map_lock:
            self._invalidation_seq += 1
            count = len(self._entries)
            self._entries.clear()
        log.info("entitlement_cache_cleared", removed=count)
        return count

    def purge_idle(self) -> int:
        """Evict entries not accessed within ``idle_eviction_seconds``."""
        cutoff = self._clock() - self.idle_eviction_seconds
        with self._map_lock:
            idle = [u for u, e in self._entries.items() if e.last_access < cutoff]
            for user_id in idle:
                del self._entries[user_id]
            self._evictions += len(idle)
        if idle:
            log.info("entitlement_idle_purged", removed=len(idle))
        return len(idle)

    def size(self) -> int:
        with self._map_lock:
            return len(self._entries)

    def stats(self) -> dict[str, Any]:
        with self._map_lock:
            return {
                "size": len(self._entries),
                "max_users": self.max_users,
                "hits": self._hits,
                "misses": self._misses,
                "refreshes": self._refreshes,
                "stale_serves": self._stale_serves,
                "failures": self._failures,
                "evictions": self._evictions,
            }

    # ── Internals ────────────────────────────────────────────────

    def _lock_for(self, user_id: str) -> _KeyLock:
        with self._map_lock:
            lock = self._key_locks.get(user_id)
            if lock is None:
                lock = _KeyLock()
                self._key_locks[user_id] = lock
            return lock

    def _fresh_hit(self, user_id: str, now: float) -> ResolvedEntitlement | None:
        with self._map_lock:
            entry = self._entries.get(user_id)
            if entry is None:
                return None
            age = now - entry.fetched_at
            if age >= self.ttl_seconds:
                return None
            entry.last_access = now
            self._entries.move_to_end(user_id)
            self._hits += 1
            return ResolvedEntitlement(user_id, entry.securities, age_seconds=age, from_cache=True)

    def _store_locked(self, user_id: str, entry: _Entry) -> None:
        self._entries[user_id] = entry
        self._entries.move_to_end(user_id)
        while len(self._entries) > self.max_users:
            self._entries.popitem(last=False)
            self._evictions += 1

    def _fallback(self, user_id: str, cached: _Entry | None, error: Exception) -> ResolvedEntitlement:
        now = self._clock()
        with self._map_lock:
            self._failures += 1
            # Re-read: the entry may have been invalidated while we fetched
            current = self._entries.get(user_id)
            usable = current is not None and current is cached
            age = now - current.fetched_at if usable else None
            if usable and age <= self.stale_ceiling_seconds:
                current.last_access = now
                self._stale_serves += 1
                securities = current.securities
            else:
                usable = False

        if not usable:
            log.error("entitlement_unavailable", user_id=user_id, error=str(error))
            raise EntitlementUnavailable(
                f"entitlement source unavailable for user {user_id!r} and no usable cached entitlement",
                cause=error,
            ).with_context(user_id=user_id, source_name=getattr(self.source, "name", None)) from error

        log.warning("entitlement_stale_served", user_id=user_id, age_seconds=round(age, 1), error=str(error))
        return ResolvedEntitlement(user_id, securities, age_seconds=age, stale=True, from_cache=True)


__all__ = [
    "EntitlementSet",
    "EntitlementSource",
    "StaticEntitlementSource",
    "SqlEntitlementSource",
    "HttpEntitlementSource",
    "ResolvedEntitlement",
    "EntitlementResolver",
]
