"""
CLI utility helpers — settings, runtime construction and output formatting.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from datespine.core.errors import DateSpineError
from datespine.core.settings import DateSpineSettings

console = Console()
err_console = Console(stderr=True)


# ── Settings helper ──────────────────────────────────────────────────────


def load_settings(
    *,
    database_url: str | None = None,
    entitlement_file: Path | None = None,
    data_dir: Path | None = None,
) -> DateSpineSettings:
    """Environment-driven settings with command-line overrides applied."""
    overrides: dict[str, Any] = {}
    if database_url:
        overrides["fact_database_url"] = database_url
    if entitlement_file:
        overrides["entitlement_backend"] = "static"
        overrides["entitlement_file"] = entitlement_file
    if data_dir:
        overrides["data_dir"] = data_dir
    return DateSpineSettings(**overrides)


@contextmanager
def exit_on_error() -> Iterator[None]:
    """Render a ``DateSpineError`` and exit non-zero instead of a traceback."""
    try:
        yield
    except DateSpineError as e:
        err_console.print(f"[bold red]Error[/bold red] ({type(e).__name__}): {e.message}")
        raise typer.Exit(code=1) from e


# ── Output helpers ───────────────────────────────────────────────────────


def output_json(payload: Any) -> None:
    console.print_json(json.dumps(payload, default=str))


def print_table(rows: list[dict[str, Any]], *, title: str = "") -> None:
    """Render a list of dicts as a Rich table."""
    if not rows:
        console.print("[dim]No items.[/dim]")
        return
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in rows[0]:
        table.add_column(col, overflow="fold")
    for row in rows:
        table.add_row(*(str(v) for v in row.values()))
    console.print(table)


def print_dict(data: dict[str, Any], *, title: str = "") -> None:
    """Render a single dict as key-value pairs."""
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        console.print(f"  [cyan]{k}[/cyan]: {v}")
