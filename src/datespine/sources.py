"""
Fact data sources for the nightly rebuild.

The rebuild needs exactly one thing from the ~300M-row fact table: the
distinct ``(security_key, reporting_date)`` pairs for the fixed risk
engine, streamed in security-then-date order (the table's physical index
order). ``FactSource`` captures that contract; ``SqlFactSource`` fulfils it
with a single server-side-cursor query through SQLAlchemy.

Architecture:
    ::

        FactSource (Protocol)
        ├── SqlFactSource       — SELECT DISTINCT … ORDER BY security, date
        └── InMemoryFactSource  — fixtures, CLI demos

        scan() → Generator[(security_key: str, reporting_date: date)]

Examples:
    >>> src = InMemoryFactSource([("S1", date(2025, 8, 5))])
    >>> list(src.scan())
    [('S1', datetime.date(2025, 8, 5))]

Tags:
    fact-source, sqlalchemy, streaming, rebuild, datespine

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import re
from collections.abc import Generator, Iterable
from datetime import date, datetime
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from datespine.core.errors import ConfigError, SourceError
from datespine.core.logging import get_logger

log = get_logger(__name__)

FactRow = tuple[str, date]

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


@runtime_checkable
class FactSource(Protocol):
    """Bulk-readable fact source, filtered to the fixed risk engine."""

    name: str

    def scan(self) -> Generator[FactRow, None, None]:
        """Yield distinct (security_key, reporting_date) pairs.

        Ordered by security key, then reporting date. May raise
        ``SourceError`` at any point during iteration. The builder closes
        the generator when it stops early, so cleanup belongs in ``finally``.
        """
        ...


def coerce_date(value: Any) -> date:
    """Normalise driver date values (``date``, ``datetime``, ISO string)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    raise TypeError(f"unsupported reporting date value: {value!r}")


def check_identifier(kind: str, value: str) -> str:
    if not _IDENTIFIER.match(value):
        raise ConfigError(f"invalid {kind} identifier: {value!r}")
    return value


class SqlFactSource:
    """Stream the distinct security/date pairs with one ordered query.

    Parameters
    ----------
    engine_or_url:
        SQLAlchemy ``Engine`` or database URL.
    table, security_column, date_column, risk_engine_column:
        Physical names in the fact schema (validated as SQL identifiers).
    risk_engine_id:
        Fixed risk-engine filter baked into the aggregation.
    batch_size:
        Rows fetched per round trip from the server-side cursor.
    """

    name = "sql_fact_source"

    def __init__(
        self,
        engine_or_url: Engine | str,
        *,
        table: str = "risk_position_fact",
        security_column: str = "parent_security_key",
        date_column: str = "reporting_date",
        risk_engine_column: str = "risk_engine_id",
        risk_engine_id: int = 1,
        batch_size: int = 10_000,
    ):
        self._engine = (
            create_engine(engine_or_url) if isinstance(engine_or_url, str) else engine_or_url
        )
        self.table = check_identifier("table", table)
        self.security_column = check_identifier("column", security_column)
        self.date_column = check_identifier("column", date_column)
        self.risk_engine_column = check_identifier("column", risk_engine_column)
        self.risk_engine_id = risk_engine_id
        self.batch_size = batch_size

    @property
    def query(self) -> str:
        sec, dt = self.security_column, self.date_column
        return (
            f"SELECT DISTINCT {sec}, {dt} FROM {self.table} "
            f"WHERE {self.risk_engine_column} = :risk_engine_id "
            f"ORDER BY {sec}, {dt}"
        )

    def scan(self) -> Generator[FactRow, None, None]:
        log.info("fact_scan_started", table=self.table, risk_engine_id=self.risk_engine_id)
        rows = 0
        try:
            with self._engine.connect() as conn:
                result = conn.execution_options(
                    stream_results=True, yield_per=self.batch_size
                ).execute(text(self.query), {"risk_engine_id": self.risk_engine_id})
                for security_key, reporting_date in result:
                    rows += 1
                    yield str(security_key), coerce_date(reporting_date)
        except SQLAlchemyError as e:
            raise SourceError(
                f"fact scan failed after {rows} rows: {e}", cause=e
            ).with_context(source_name=self.name, rows=rows) from e
        except (TypeError, ValueError) as e:
            raise SourceError(
                f"unparseable reporting date after {rows} rows: {e}", retryable=False, cause=e
            ).with_context(source_name=self.name, rows=rows) from e
        log.info("fact_scan_finished", table=self.table, rows=rows)


class InMemoryFactSource:
    """Fact source backed by a list of pairs.

    With ``ordered=True`` (default) the pairs are de-duplicated and sorted
    the way the SQL query would return them; ``ordered=False`` replays them
    verbatim.
    """

    name = "memory_fact_source"

    def __init__(self, rows: Iterable[tuple[str, date]] = (), *, ordered: bool = True):
        rows = list(rows)
        self.rows: list[FactRow] = sorted(set(rows)) if ordered else rows

    def scan(self) -> Generator[FactRow, None, None]:
        yield from self.rows


__all__ = [
    "FactRow",
    "FactSource",
    "SqlFactSource",
    "InMemoryFactSource",
    "coerce_date",
]
