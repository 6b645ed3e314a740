"""
Query Engine — union of entitled securities' bitmaps, translated to dates.

Cost is O(E·W): E entitled securities, W machine words covering the date
range. The fact table's row count never enters the picture.

Output is ascending by date. Because ordinals are assigned in
chronological order, scanning set bits from the lowest ordinal up yields
that order directly.

Examples:
    >>> engine = QueryEngine()
    >>> engine.visible_dates({"S1", "S2"}, generation).dates
    [datetime.date(2025, 8, 5), datetime.date(2025, 8, 6)]
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date
from typing import Protocol

from datespine.bitmap import WORD_BITS, iter_set_bits
from datespine.core.errors import QueryCancelled
from datespine.generation import Generation


class CancelToken(Protocol):
    def is_set(self) -> bool: ...


@dataclass(frozen=True)
class QueryStats:
    entitled: int
    matched: int
    unknown: int
    words: int


@dataclass(frozen=True)
class QueryResult:
    dates: list[date] = field(default_factory=list)
    generation: int = 0
    stats: QueryStats | None = None


class QueryEngine:
    """Stateless; safe to share across request workers.

    Parameters
    ----------
    cancel_check_interval:
        How many securities to OR between checks of the cancel token.
    """

    def __init__(self, cancel_check_interval: int = 256):
        if cancel_check_interval < 1:
            raise ValueError("cancel_check_interval must be >= 1")
        self.cancel_check_interval = cancel_check_interval

    def union(
        self,
        securities: Iterable[str],
        generation: Generation,
        cancel: CancelToken | None = None,
    ) -> tuple[int, QueryStats]:
        """OR together the bitmaps of *securities*; unknown keys contribute nothing."""
        acc = 0
        entitled = matched = unknown = 0
        bitmaps = generation.bitmaps
        interval = self.cancel_check_interval

        for security_key in securities:
            entitled += 1
            if cancel is not None and entitled % interval == 0 and cancel.is_set():
                raise QueryCancelled(
                    f"query cancelled after {entitled} of the entitled securities"
                ).with_context(generation=generation.version)
            bm = bitmaps.get(security_key)
            if bm is None:
                unknown += 1
                continue
            matched += 1
            acc |= bm.bits

        size = generation.registry.size()
        stats = QueryStats(
            entitled=entitled,
            matched=matched,
            unknown=unknown,
            words=-(-size // WORD_BITS),
        )
        return acc, stats

    def visible_dates(
        self,
        securities: Iterable[str],
        generation: Generation,
        cancel: CancelToken | None = None,
    ) -> QueryResult:
        """Sorted (ascending) reporting dates visible through *securities*."""
        bits, stats = self.union(securities, generation, cancel)
        if cancel is not None and cancel.is_set():
            raise QueryCancelled("query cancelled before result translation").with_context(
                generation=generation.version
            )
        registry = generation.registry
        dates = [registry.date_of(ordinal) for ordinal in iter_set_bits(bits)]
        return QueryResult(dates=dates, generation=generation.version, stats=stats)


__all__ = ["CancelToken", "QueryEngine", "QueryResult", "QueryStats"]
