"""
CLI: ``datespine registry`` — inspect the persisted date registry.
"""

from __future__ import annotations

from pathlib import Path

import typer

from datespine.cli.utils import console, err_console, load_settings, output_json, print_dict
from datespine.registry import RegistryStore

app = typer.Typer(no_args_is_help=True)


@app.command("show")
def show(
    data_dir: Path | None = typer.Option(None, "--data-dir", help="Directory holding registry.json"),
    tail: int = typer.Option(10, "--tail", "-n", help="Show the last N dates"),
    as_json: bool = typer.Option(False, "--json", help="Print the full registry as JSON"),
) -> None:
    """Show the persisted reporting-date registry."""
    settings = load_settings(data_dir=data_dir)
    store = RegistryStore(settings.registry_path)
    try:
        snapshot = store.load()
    except ValueError as e:
        err_console.print(f"[bold red]Error[/bold red]: cannot read {store.path}: {e}")
        raise typer.Exit(code=1) from e

    if as_json:
        output_json(
            {
                "path": str(store.path),
                "dates": [d.isoformat() for d in snapshot.dates],
                "securities": store.baseline_securities,
            }
        )
        return

    print_dict(
        {
            "path": store.path,
            "dates": snapshot.size(),
            "first": snapshot.dates[0].isoformat() if snapshot.size() else "-",
            "last": snapshot.last_date.isoformat() if snapshot.size() else "-",
            "securities": store.baseline_securities if store.baseline_securities is not None else "-",
        },
        title="Registry",
    )
    if snapshot.size() and tail > 0:
        console.print("[bold]Latest ordinals[/bold]")
        start = max(0, snapshot.size() - tail)
        for ordinal in range(start, snapshot.size()):
            console.print(f"  {ordinal:>6}  {snapshot.date_of(ordinal).isoformat()}")
