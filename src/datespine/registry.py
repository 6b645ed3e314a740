"""
Reporting-Date Registry — dense, stable ordinals for reporting dates.

Every reporting date ever observed gets an integer ordinal, assigned in
strictly increasing chronological order and never reused or removed. Bit
``i`` of every security bitmap means "ordinal ``i``", so an ordinal must
mean the same date for the lifetime of the registry, including across
rebuilds and process restarts.

Manifesto:
    - **Append-only:** The fact table only ever gains trading days
    - **Order-preserving:** ``a < b`` ⇔ ``ordinal(a) < ordinal(b)``
    - **Build-side mutable, read-side frozen:** Readers hold a
      ``RegistrySnapshot``; only the rebuild mutates a ``ReportingDateRegistry``
    - **Persisted:** ``RegistryStore`` survives restarts

Architecture:
    ::

        RegistrySnapshot (frozen, owned by a Generation)
              │ thaw()
              ▼
        ReportingDateRegistry (rebuild working copy)
              │ ordinal_of(date) → assigns on first sight
              │ snapshot()
              ▼
        RegistrySnapshot (next Generation)
              │
              ▼
        RegistryStore.save() → registry.json

Examples:
    >>> from datetime import date
    >>> reg = ReportingDateRegistry()
    >>> reg.ordinal_of(date(2025, 8, 5))
    0
    >>> reg.ordinal_of(date(2025, 8, 6))
    1
    >>> reg.snapshot().date_of(1)
    datetime.date(2025, 8, 6)

Tags:
    registry, ordinal, bijection, append-only, datespine

Doc-Types:
    - API Reference
    - Technical Design
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from collections.abc import Iterable, Iterator
from datetime import date
from pathlib import Path
from types import MappingProxyType
from typing import Any

from datespine.core.logging import get_logger

log = get_logger(__name__)

REGISTRY_FORMAT_VERSION = 1


class OrdinalOrderError(ValueError):
    """A new date would land before an already-registered date."""

    def __init__(self, new_date: date, last_date: date):
        self.new_date = new_date
        self.last_date = last_date
        super().__init__(
            f"date {new_date.isoformat()} is older than registry head {last_date.isoformat()}; "
            "ordinals are append-only"
        )


class RegistrySnapshot:
    """Immutable view of the registry at one point in time.

    Lookups never assign ordinals. ``date_of`` and ``ordinal_of`` are O(1).
    """

    __slots__ = ("_dates", "_ordinals")

    def __init__(self, dates: Iterable[date] = ()):
        dates = tuple(dates)
        for prev, cur in zip(dates, dates[1:]):
            if cur <= prev:
                raise OrdinalOrderError(cur, prev)
        self._dates: tuple[date, ...] = dates
        self._ordinals = MappingProxyType({d: i for i, d in enumerate(dates)})

    def ordinal_of(self, value: date) -> int | None:
        """Ordinal for *value*, or ``None`` if the date is unknown."""
        return self._ordinals.get(value)

    def date_of(self, ordinal: int) -> date:
        """Calendar date for *ordinal*; raises ``IndexError`` if unassigned."""
        if ordinal < 0:
            raise IndexError(f"ordinal {ordinal} is negative")
        return self._dates[ordinal]

    def size(self) -> int:
        return len(self._dates)

    @property
    def dates(self) -> tuple[date, ...]:
        return self._dates

    @property
    def last_date(self) -> date | None:
        return self._dates[-1] if self._dates else None

    def thaw(self) -> ReportingDateRegistry:
        """Mutable working copy seeded with this snapshot's ordinals."""
        return ReportingDateRegistry(self._dates)

    def __len__(self) -> int:
        return len(self._dates)

    def __contains__(self, value: object) -> bool:
        return value in self._ordinals

    def __iter__(self) -> Iterator[date]:
        return iter(self._dates)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RegistrySnapshot):
            return NotImplemented
        return self._dates == other._dates

    def __hash__(self) -> int:
        return hash(self._dates)

    def __repr__(self) -> str:
        head = self.last_date.isoformat() if self._dates else None
        return f"RegistrySnapshot(size={len(self._dates)}, last={head})"


class ReportingDateRegistry:
    """Build-side registry that assigns ordinals to unseen dates.

    Used only by the index builder. Thread-safe, though in practice a
    single rebuild owns each instance.
    """

    def __init__(self, dates: Iterable[date] = ()):
        self._lock = threading.Lock()
        self._dates: list[date] = []
        self._ordinals: dict[date, int] = {}
        for d in dates:
            self.ordinal_of(d)

    def ordinal_of(self, value: date) -> int:
        """Return the ordinal of *value*, assigning the next one if unseen.

        Raises:
            OrdinalOrderError: *value* is unseen and older than the newest date.
        """
        with self._lock:
            existing = self._ordinals.get(value)
            if existing is not None:
                return existing
            if self._dates and value < self._dates[-1]:
                raise OrdinalOrderError(value, self._dates[-1])
            ordinal = len(self._dates)
            self._dates.append(value)
            self._ordinals[value] = ordinal
            return ordinal

    def extend(self, dates: Iterable[date]) -> list[int]:
        """Register *dates* in chronological order; returns their ordinals."""
        return [self.ordinal_of(d) for d in sorted(set(dates))]

    def lookup(self, value: date) -> int | None:
        with self._lock:
            return self._ordinals.get(value)

    def date_of(self, ordinal: int) -> date:
        with self._lock:
            if ordinal < 0:
                raise IndexError(f"ordinal {ordinal} is negative")
            return self._dates[ordinal]

    def size(self) -> int:
        with self._lock:
            return len(self._dates)

    @property
    def last_date(self) -> date | None:
        with self._lock:
            return self._dates[-1] if self._dates else None

    def snapshot(self) -> RegistrySnapshot:
        with self._lock:
            return RegistrySnapshot(self._dates)

    def __len__(self) -> int:
        return self.size()


class RegistryStore:
    """JSON persistence for the registry's ordered date list.

    File layout::

        {"version": 1, "dates": ["2023-01-03", "2023-01-04", ...], "securities": 41250}

    ``securities`` is the security count of the generation that was saved;
    after a restart it stands in for the previous generation as the
    baseline of the plausibility guard. It is available as
    ``baseline_securities`` once ``load()`` has run.

    Writes go to a temp file in the same directory and are moved into
    place with ``os.replace`` so a crash never leaves a torn file.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()
        self.baseline_securities: int | None = None

    def load(self) -> RegistrySnapshot:
        """Load the persisted registry; an absent file yields an empty one."""
        if not self.path.exists():
            log.info("registry_store_empty", path=str(self.path))
            return RegistrySnapshot()

        payload: Any = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError(f"registry file {self.path} must contain a JSON object")
        version = payload.get("version")
        if version != REGISTRY_FORMAT_VERSION:
            raise ValueError(f"unsupported registry format version: {version!r}")
        dates = payload.get("dates", [])
        if not isinstance(dates, list) or not all(isinstance(d, str) for d in dates):
            raise ValueError(f"registry file {self.path}: \"dates\" must be a list of ISO dates")
        securities = payload.get("securities")
        if securities is not None and (type(securities) is not int or securities < 0):
            raise ValueError(f"registry file {self.path}: \"securities\" must be a non-negative integer")

        snapshot = RegistrySnapshot(date.fromisoformat(d) for d in dates)
        self.baseline_securities = securities
        log.info("registry_loaded", path=str(self.path), size=snapshot.size())
        return snapshot

    def save(self, snapshot: RegistrySnapshot, *, securities: int | None = None) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload: dict[str, Any] = {
            "version": REGISTRY_FORMAT_VERSION,
            "dates": [d.isoformat() for d in snapshot.dates],
        }
        if securities is not None:
            payload["securities"] = securities
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".registry-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        log.debug("registry_saved", path=str(self.path), size=snapshot.size())
        if securities is not None:
            self.baseline_securities = securities


__all__ = [
    "OrdinalOrderError",
    "RegistrySnapshot",
    "ReportingDateRegistry",
    "RegistryStore",
]
