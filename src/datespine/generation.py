"""
Generations — immutable, versioned snapshots with reference-counted reclamation.

A ``Generation`` pairs a frozen registry snapshot with the bitmap of every
security observed by one rebuild. The ``GenerationManager`` holds the single
"current" pointer, hands out reference-counted handles to readers, and
frees a superseded generation only once its last reader lets go.

Manifesto:
    - **Immutable snapshots:** A published generation never changes
    - **Single atomic swap:** ``publish`` replaces one pointer under a lock
      held for a handful of instructions
    - **Point-in-time reads:** A handle stays valid and consistent across a
      publish boundary; readers never see a torn generation
    - **Safe reclamation:** Freed only when unreferenced and not current

Architecture:
    ::

        Index Builder ──publish(gen N+1)──► GenerationManager
                                             │ current ──► gen N+1
                                             │ live: {N: refs=2, N+1: refs=0}
        request A ──acquire_current()──► handle(gen N)   (acquired pre-publish)
        request B ──acquire_current()──► handle(gen N+1)
        request A ──release()──► refs(N)=1
        ...last release of N ──► reclaimed, on_reclaim(gen N)

Examples:
    >>> manager = GenerationManager()
    >>> manager.publish(generation)
    >>> with manager.acquire_current() as gen:
    ...     gen.bitmap("S1")

Tags:
    generation, snapshot, double-buffering, reference-counting, datespine

Doc-Types:
    - API Reference
    - Technical Design
"""

from __future__ import annotations

import hashlib
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

from datespine.bitmap import DateBitmap
from datespine.core.errors import NoGenerationAvailable
from datespine.core.logging import get_logger
from datespine.registry import RegistrySnapshot

log = get_logger(__name__)


@dataclass(frozen=True)
class Generation:
    """Immutable pair of a registry snapshot and the per-security bitmaps.

    Every bitmap's capacity is at least ``registry.size()``.
    """

    version: int
    registry: RegistrySnapshot
    bitmaps: Mapping[str, DateBitmap]
    built_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    source_rows: int = 0

    def __post_init__(self) -> None:
        size = self.registry.size()
        for key, bm in self.bitmaps.items():
            if bm.capacity < size:
                raise ValueError(
                    f"bitmap for {key!r} has capacity {bm.capacity} < registry size {size}"
                )
        if not isinstance(self.bitmaps, MappingProxyType):
            object.__setattr__(self, "bitmaps", MappingProxyType(dict(self.bitmaps)))

    def bitmap(self, security_key: str) -> DateBitmap | None:
        """Bitmap for *security_key*, ``None`` if the security is unknown."""
        return self.bitmaps.get(security_key)

    @property
    def security_count(self) -> int:
        return len(self.bitmaps)

    @property
    def date_count(self) -> int:
        return self.registry.size()

    def fingerprint(self) -> str:
        """SHA-256 over registry dates and every bitmap, in key order."""
        h = hashlib.sha256()
        for d in self.registry.dates:
            h.update(d.isoformat().encode())
        for key in sorted(self.bitmaps):
            bm = self.bitmaps[key]
            h.update(key.encode())
            h.update(bm.capacity.to_bytes(4, "little"))
            h.update(bm.to_bytes())
        return h.hexdigest()

    def summary(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "securities": self.security_count,
            "dates": self.date_count,
            "first_date": self.registry.dates[0].isoformat() if self.date_count else None,
            "last_date": self.registry.last_date.isoformat() if self.date_count else None,
            "source_rows": self.source_rows,
            "built_at": self.built_at.isoformat(),
        }


class GenerationHandle:
    """A reader's reference to one generation.

    Must be released exactly once; ``release()`` is idempotent and the
    handle is a context manager so ``with`` guarantees the release even
    when the request is cancelled mid-query.
    """

    __slots__ = ("_generation", "_manager", "_released")

    def __init__(self, generation: Generation, manager: GenerationManager):
        self._generation = generation
        self._manager = manager
        self._released = False

    @property
    def generation(self) -> Generation:
        if self._released:
            raise RuntimeError("generation handle used after release")
        return self._generation

    @property
    def version(self) -> int:
        return self._generation.version

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        self._manager.release(self)

    def __enter__(self) -> Generation:
        return self.generation

    def __exit__(self, *args: Any) -> None:
        self.release()

    def __repr__(self) -> str:
        state = "released" if self._released else "held"
        return f"GenerationHandle(version={self._generation.version}, {state})"


class GenerationManager:
    """Holds the current generation and tracks reader references.

    Parameters
    ----------
    on_reclaim:
        Optional callback invoked (outside the lock) with each generation
        as it is freed.
    """

    def __init__(self, on_reclaim: Callable[[Generation], None] | None = None):
        self._lock = threading.Lock()
        self._current: Generation | None = None
        self._live: dict[int, Generation] = {}
        self._refcounts: dict[int, int] = {}
        self._on_reclaim = on_reclaim
        self._published_total = 0
        self._reclaimed_total = 0

    # ── Read path ────────────────────────────────────────────────

    def acquire_current(self) -> GenerationHandle:
        """Reference the current generation.

        Raises:
            NoGenerationAvailable: Nothing has been published yet.
        """
        with self._lock:
            gen = self._current
            if gen is None:
                raise NoGenerationAvailable("no reporting-date generation has been published yet")
            self._refcounts[gen.version] += 1
        return GenerationHandle(gen, self)

    def release(self, handle: GenerationHandle) -> None:
        reclaimed: Generation | None = None
        with self._lock:
            if handle._released:
                return
            handle._released = True
            version = handle._generation.version
            self._refcounts[version] -= 1
            if self._refcounts[version] == 0 and (
                self._current is None or self._current.version != version
            ):
                reclaimed = self._reclaim_locked(version)
        if reclaimed is not None:
            self._notify_reclaimed(reclaimed)

    # ── Write path ───────────────────────────────────────────────

    def publish(self, generation: Generation) -> Generation | None:
        """Make *generation* current; returns the generation it replaced.

        Raises:
            ValueError: *generation* is not newer than the current one.
        """
        reclaimed: Generation | None = None
        with self._lock:
            previous = self._current
            if previous is not None and generation.version <= previous.version:
                raise ValueError(
                    f"generation {generation.version} is not newer than current {previous.version}"
                )
            self._live[generation.version] = generation
            self._refcounts[generation.version] = 0
            self._current = generation
            self._published_total += 1
            if previous is not None and self._refcounts[previous.version] == 0:
                reclaimed = self._reclaim_locked(previous.version)

        log.info(
            "generation_published",
            version=generation.version,
            previous=previous.version if previous else None,
            securities=generation.security_count,
            dates=generation.date_count,
        )
        if reclaimed is not None:
            self._notify_reclaimed(reclaimed)
        return previous

    # ── Introspection ────────────────────────────────────────────

    @property
    def current(self) -> Generation | None:
        """Peek at the current generation without taking a reference."""
        return self._current

    def next_version(self) -> int:
        current = self._current
        return current.version + 1 if current is not None else 1

    def refcount(self, version: int) -> int:
        with self._lock:
            return self._refcounts.get(version, 0)

    def live_versions(self) -> list[int]:
        with self._lock:
            return sorted(self._live)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "current_version": self._current.version if self._current else None,
                "live": {str(v): self._refcounts[v] for v in sorted(self._live)},
                "published_total": self._published_total,
                "reclaimed_total": self._reclaimed_total,
            }

    # ── Internals ────────────────────────────────────────────────

    def _reclaim_locked(self, version: int) -> Generation:
        gen = self._live.pop(version)
        del self._refcounts[version]
        self._reclaimed_total += 1
        return gen

    def _notify_reclaimed(self, gen: Generation) -> None:
        log.info("generation_reclaimed", version=gen.version)
        if self._on_reclaim is not None:
            self._on_reclaim(gen)


__all__ = ["Generation", "GenerationHandle", "GenerationManager"]
