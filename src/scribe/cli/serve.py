"""scribe serve: run the HTTP API with uvicorn."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
import uvicorn
from rich.console import Console

from scribe.cli.context import load_cli_config, open_db, resolve_db
from scribe.server.app import create_app
from scribe.services import build_services

console = Console()


def serve_cmd(
    host: Annotated[
        str | None, typer.Option("--host", help="Bind address (default from config).")
    ] = None,
    port: Annotated[
        int | None, typer.Option("--port", help="Port (default from config).")
    ] = None,
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to .scribe.db (created if missing)."),
    ] = None,
) -> None:
    """Serve retrieval, drafting and draft storage over HTTP."""
    cfg = load_cli_config()
    conn = open_db(resolve_db(cfg, db), create=True)
    try:
        app = create_app(build_services(cfg, conn))
        bind_host = host or cfg.server.host
        bind_port = port or cfg.server.port
        console.print(f"[bold]Scribe API[/] on http://{bind_host}:{bind_port}")
        uvicorn.run(app, host=bind_host, port=bind_port, log_config=None)
    finally:
        conn.close()
