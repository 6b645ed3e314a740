"""
Root Typer application for the datespine CLI.

Commands:
    serve             Start the API server
    rebuild           Run one rebuild against the configured fact source
    query USER        Rebuild once, then print the dates USER can see
    registry show     Inspect the persisted date registry
"""

from __future__ import annotations

from pathlib import Path

import typer
from typer import Typer

from datespine.cli.registry import app as registry_app
from datespine.cli.serve import serve
from datespine.cli.utils import (
    console,
    exit_on_error,
    load_settings,
    output_json,
    print_dict,
    print_table,
)
from datespine.core.logging import configure_logging
from datespine.service import create_runtime

app = Typer(
    name="datespine",
    help="datespine — reporting-date availability cache.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("datespine")
        except PackageNotFoundError:
            v = "0.1.0"
        typer.echo(f"datespine {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at INFO instead of WARNING."),
) -> None:
    """datespine CLI — rebuild, query and serve reporting-date availability."""
    configure_logging(level="INFO" if verbose else "WARNING", json_format=False)


# ── Commands ─────────────────────────────────────────────────────────────


@app.command("rebuild")
def rebuild(
    database_url: str | None = typer.Option(None, "--database-url", help="Fact database URL"),
    data_dir: Path | None = typer.Option(None, "--data-dir", help="Registry directory"),
    as_json: bool = typer.Option(False, "--json", help="Print stats as JSON"),
) -> None:
    """Scan the fact table once and persist the registry."""
    settings = load_settings(database_url=database_url, data_dir=data_dir)
    runtime = create_runtime(settings)
    with exit_on_error():
        runtime.coordinator.load_registry()
        result = runtime.coordinator.rebuild("cli")

    payload = {"version": result.generation.version, **result.stats.to_dict()}
    if as_json:
        output_json(payload)
    else:
        print_dict(payload, title="Rebuild complete")


@app.command("query")
def query(
    user: str = typer.Argument(..., help="User identity"),
    database_url: str | None = typer.Option(None, "--database-url", help="Fact database URL"),
    entitlements: Path | None = typer.Option(
        None, "--entitlements", help="JSON file mapping users to security keys"
    ),
    data_dir: Path | None = typer.Option(None, "--data-dir", help="Registry directory"),
    as_json: bool = typer.Option(False, "--json", help="Print the API envelope as JSON"),
) -> None:
    """Rebuild once, then list the reporting dates USER can see."""
    settings = load_settings(
        database_url=database_url, entitlement_file=entitlements, data_dir=data_dir
    )
    runtime = create_runtime(settings)
    with exit_on_error():
        runtime.coordinator.load_registry()
        runtime.coordinator.rebuild("cli")
        result = runtime.service.get_visible_dates(user)

    records = [
        {"reportingDate": d.isoformat(), "verified": "Y", "charDate": d.isoformat()}
        for d in result.dates
    ]
    if as_json:
        output_json(
            {
                "data": records,
                "generation": result.generation,
                "stale": result.stale,
                "entitlementAgeSeconds": result.entitlement_age_seconds,
            }
        )
        return
    print_table(records, title=f"Reporting dates for {user}")
    console.print(f"\n[dim]{len(records)} dates, generation {result.generation}[/dim]")


app.command("serve")(serve)
app.add_typer(registry_app, name="registry", help="Registry inspection.")
