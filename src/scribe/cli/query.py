"""scribe query: show the evidence retrieved for a question."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from scribe.cli.context import (
    load_cli_config,
    open_db,
    resolve_db,
    resolve_project,
)
from scribe.cli.errors import err_pipeline
from scribe.db.models import RetrievalQuery
from scribe.errors import ScribeError
from scribe.services import build_services

console = Console()

_PREVIEW_CHARS = 160


def query_cmd(
    query: Annotated[str, typer.Argument(help="Question or topic to retrieve evidence for.")],
    project: Annotated[
        str | None,
        typer.Option("--project", "-p", help="Project id (defaults to project.name)."),
    ] = None,
    section: Annotated[
        str,
        typer.Option("--section", help="Section id the query is for."),
    ] = "",
    limit: Annotated[
        int | None,
        typer.Option("--limit", "-k", help="Maximum chunks to return (1-100)."),
    ] = None,
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to .scribe.db."),
    ] = None,
) -> None:
    """Retrieve the chunks most relevant to QUERY."""
    cfg = load_cli_config()
    project_id = resolve_project(cfg, project)
    conn = open_db(resolve_db(cfg, db))
    try:
        services = build_services(cfg, conn)
        request = RetrievalQuery(
            project_id=project_id,
            section_id=section,
            query=query,
            limit=limit if limit is not None else cfg.retrieval.default_limit,
        )
        try:
            result = asyncio.run(services.retriever.retrieve(request))
        except ScribeError as exc:
            console.print(err_pipeline(exc))
            raise typer.Exit(1)
    finally:
        conn.close()

    if not result.chunks:
        console.print(f"[yellow]No evidence stored for project '{project_id}'.[/]")
        return

    table = Table(title=f"Evidence for: {query}", show_lines=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Score", justify="right")
    table.add_column("Citation")
    table.add_column("Chunk")
    table.add_column("Text")
    for i, item in enumerate(result.chunks, start=1):
        text = item.chunk.text.replace("\n", " ")
        if len(text) > _PREVIEW_CHARS:
            text = text[:_PREVIEW_CHARS] + "…"
        table.add_row(str(i), f"{item.score:.3f}", item.citation, item.chunk.id, text)
    console.print(table)
    if result.degraded:
        console.print(
            "[yellow]⚠[/] No embeddings stored; results are in stored order, not ranked."
        )

