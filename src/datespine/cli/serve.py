"""
CLI: ``datespine serve`` — start the API server.
"""

from __future__ import annotations

import typer

from datespine.cli.utils import console
from datespine.core.logging import configure_logging


def serve(
    host: str | None = typer.Option(None, "--host", "-h", help="Bind address"),
    port: int | None = typer.Option(None, "--port", "-p", help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Auto-reload on changes"),
    log_level: str | None = typer.Option(None, "--log-level", help="Defaults to DATESPINE_LOG_LEVEL"),
) -> None:
    """Start the datespine REST API server."""
    import uvicorn

    from datespine.api.deps import get_settings

    settings = get_settings()
    host = host or settings.host
    port = port or settings.port
    log_level = (log_level or settings.log_level).lower()
    configure_logging(level=log_level, json_format=settings.log_json)

    console.print(f"[bold green]Starting datespine API[/bold green] on {host}:{port}")
    uvicorn.run(
        "datespine.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )
