"""
Security Date Index Builder — one scan of the fact table into a new Generation.

The builder streams distinct ``(security_key, reporting_date)`` pairs in
security-then-date order, accumulating one bitmap per security as its rows
go by. Dates already in the registry set their bit immediately; dates seen
for the first time are staged and registered together, in chronological
order, once the scan is complete, so ordinals stay dense and
order-preserving even though new dates arrive interleaved across
securities.

Manifesto:
    - **One pass:** No materialisation of the fact rows, only of the result
    - **Never publish a degraded index:** Scan errors and implausible
      results raise ``RebuildFailed``; the previous generation stays current
    - **Idempotent:** Building twice from the same source yields identical
      bitmaps; a previously published generation is never touched

Architecture:
    ::

        FactSource.scan()  ──►  per-security BitmapBuilder
              │                    known date  → set(ordinal)
              │                    unseen date → staged
              ▼
        end of scan:
            staged dates sorted → registry.extend()  (append-only)
            staged bits patched in
            bitmaps frozen at capacity = registry.size()
              ▼
        plausibility guard (vs previous security count)
              ▼
        Generation(version, registry.snapshot(), bitmaps)

Examples:
    >>> builder = SecurityDateIndexBuilder(InMemoryFactSource(rows))
    >>> result = builder.build(previous=None, version=1)
    >>> result.generation.security_count
    2

Tags:
    index-builder, batch, bitmap, rebuild, plausibility, datespine

Doc-Types:
    - API Reference
    - Technical Design
"""

from __future__ import annotations

import time
from contextlib import closing
from dataclasses import dataclass
from datetime import date
from typing import Any

from datespine.bitmap import BitmapBuilder, DateBitmap
from datespine.core.errors import (
    DateSpineError,
    ImplausibleRebuild,
    RebuildFailed,
    SourceOrderingError,
)
from datespine.core.logging import get_logger
from datespine.generation import Generation
from datespine.registry import OrdinalOrderError, RegistrySnapshot
from datespine.sources import FactSource

log = get_logger(__name__)


@dataclass(frozen=True)
class BuildStats:
    """Counters describing one rebuild."""

    rows: int
    securities: int
    dates: int
    new_dates: int
    duration_seconds: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows": self.rows,
            "securities": self.securities,
            "dates": self.dates,
            "new_dates": self.new_dates,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass(frozen=True)
class BuildResult:
    generation: Generation
    stats: BuildStats


class _SecurityAccumulator:
    __slots__ = ("bits", "staged")

    def __init__(self) -> None:
        self.bits = BitmapBuilder()
        self.staged: set[date] | None = None

    def stage(self, value: date) -> None:
        if self.staged is None:
            self.staged = set()
        self.staged.add(value)


class SecurityDateIndexBuilder:
    """Builds complete generations from a ``FactSource``.

    Parameters
    ----------
    source:
        Fact source streaming security-then-date ordered pairs.
    min_security_ratio:
        Fraction of the previous generation's security count below which a
        result is treated as a partial load. ``0`` disables the check.
    min_securities:
        Absolute floor on the number of securities in a result.
    """

    def __init__(
        self,
        source: FactSource,
        *,
        min_security_ratio: float = 0.5,
        min_securities: int = 1,
    ):
        if not 0 <= min_security_ratio <= 1:
            raise ValueError("min_security_ratio must be within [0, 1]")
        self.source = source
        self.min_security_ratio = min_security_ratio
        self.min_securities = min_securities

    def build(
        self,
        *,
        previous: Generation | None,
        version: int,
        base_registry: RegistrySnapshot | None = None,
        baseline_securities: int | None = None,
    ) -> BuildResult:
        """Scan the source and produce a complete new generation.

        Args:
            previous: Currently published generation (plausibility baseline,
                and source of the registry to extend).
            version: Version number for the new generation.
            base_registry: Registry to extend when it is newer than
                ``previous.registry`` (e.g. loaded from disk at startup).
            baseline_securities: Security count of the last published generation
                of an earlier process; the ratio guard uses it when there is no
                ``previous``.

        Raises:
            RebuildFailed: The scan failed, broke ordering, or looked partial.
        """
        started = time.monotonic()
        registry = self._base_registry(previous, base_registry).thaw()
        known_before = registry.size()

        accumulators: dict[str, _SecurityAccumulator] = {}
        staged_dates: set[date] = set()
        rows = 0
        current_key: str | None = None
        current: _SecurityAccumulator | None = None
        last_date: date | None = None

        log.info("rebuild_started", version=version, source=self.source.name, known_dates=known_before)
        try:
            with closing(self.source.scan()) as scan:
                for security_key, reporting_date in scan:
                    rows += 1
                    if security_key != current_key:
                        if security_key in accumulators:
                            raise SourceOrderingError(
                                f"security {security_key!r} re-appeared after its rows were complete; "
                                "source is not ordered by security key"
                            ).with_context(source_name=self.source.name, row=rows)
                        current_key = security_key
                        current = accumulators[security_key] = _SecurityAccumulator()
                        last_date = None
                    elif last_date is not None and reporting_date < last_date:
                        raise SourceOrderingError(
                            f"dates for {security_key!r} went backwards "
                            f"({reporting_date.isoformat()} after {last_date.isoformat()})"
                        ).with_context(source_name=self.source.name, row=rows)
                    last_date = reporting_date

                    ordinal = registry.lookup(reporting_date)
                    if ordinal is None:
                        current.stage(reporting_date)
                        staged_dates.add(reporting_date)
                    else:
                        current.bits.set(ordinal)
        except RebuildFailed:
            raise
        except DateSpineError as e:
            raise RebuildFailed(f"fact scan failed: {e.message}", cause=e).with_context(
                source_name=self.source.name, rows=rows
            ) from e
        except Exception as e:
            raise RebuildFailed(f"fact scan failed: {e}", cause=e).with_context(
                source_name=self.source.name, rows=rows
            ) from e

        try:
            registry.extend(staged_dates)
        except OrdinalOrderError as e:
            raise SourceOrderingError(
                f"backfilled reporting date {e.new_date.isoformat()} predates registry head "
                f"{e.last_date.isoformat()}; ordinals cannot be re-assigned",
                cause=e,
            ).with_context(source_name=self.source.name) from e

        capacity = registry.size()
        bitmaps: dict[str, DateBitmap] = {}
        for key, acc in accumulators.items():
            if acc.staged:
                for d in acc.staged:
                    acc.bits.set(registry.lookup(d))
            bitmaps[key] = acc.bits.freeze(capacity)

        self._check_plausible(len(bitmaps), previous, baseline_securities)

        generation = Generation(
            version=version,
            registry=registry.snapshot(),
            bitmaps=bitmaps,
            source_rows=rows,
        )
        stats = BuildStats(
            rows=rows,
            securities=len(bitmaps),
            dates=capacity,
            new_dates=capacity - known_before,
            duration_seconds=time.monotonic() - started,
        )
        log.info("rebuild_completed", version=version, **stats.to_dict())
        return BuildResult(generation=generation, stats=stats)

    @staticmethod
    def _base_registry(
        previous: Generation | None, base_registry: RegistrySnapshot | None
    ) -> RegistrySnapshot:
        prev_registry = previous.registry if previous is not None else RegistrySnapshot()
        if base_registry is None or base_registry.size() <= prev_registry.size():
            return prev_registry
        if base_registry.dates[: prev_registry.size()] != prev_registry.dates:
            raise RebuildFailed("persisted registry diverges from the published generation")
        return base_registry

    def _check_plausible(
        self,
        securities: int,
        previous: Generation | None,
        baseline_securities: int | None = None,
    ) -> None:
        if previous is not None:
            baseline, where = previous.security_count, f"generation {previous.version}"
        else:
            baseline, where = baseline_securities or 0, "the persisted baseline"

        if securities < self.min_securities:
            raise ImplausibleRebuild(
                f"rebuild observed {securities} securities, below floor of {self.min_securities}",
                observed=securities,
                previous=baseline,
            )
        if not baseline or self.min_security_ratio == 0:
            return
        if securities < baseline * self.min_security_ratio:
            raise ImplausibleRebuild(
                f"rebuild observed {securities} securities vs {baseline} "
                f"in {where} (ratio floor {self.min_security_ratio})",
                observed=securities,
                previous=baseline,
            )


__all__ = ["BuildStats", "BuildResult", "SecurityDateIndexBuilder"]
