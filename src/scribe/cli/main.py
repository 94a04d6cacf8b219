"""Scribe CLI entry point."""

from __future__ import annotations

import importlib.metadata
import logging
from typing import Annotated

import typer
from rich.logging import RichHandler

from scribe.cli.draft import draft_cmd
from scribe.cli.ingest import ingest_cmd
from scribe.cli.init import init_cmd
from scribe.cli.query import query_cmd
from scribe.cli.serve import serve_cmd
from scribe.cli.status import status_cmd


def _version() -> str:
    try:
        return importlib.metadata.version("scribe")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"scribe {_version()}")
        raise typer.Exit()


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=verbose, show_path=verbose)],
        force=True,
    )
    # LiteLLM is chatty at INFO; keep it quiet unless asked.
    logging.getLogger("LiteLLM").setLevel(logging.DEBUG if verbose else logging.WARNING)


app = typer.Typer(
    name="scribe",
    help=(
        "Scribe: retrieval-augmented thesis drafting.\n\n"
        "  scribe ingest   Build the evidence store from PDFs, web pages and text.\n"
        "  scribe draft    Stream a grounded section draft and save it."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log debug output."),
    ] = False,
) -> None:
    """Scribe: retrieval-augmented thesis drafting."""
    _setup_logging(verbose)


app.command("init")(init_cmd)
app.command("ingest")(ingest_cmd)
app.command("query")(query_cmd)
app.command("draft")(draft_cmd)
app.command("status")(status_cmd)
app.command("serve")(serve_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed Scribe version."""
    typer.echo(f"scribe {_version()}")


if __name__ == "__main__":
    app()
