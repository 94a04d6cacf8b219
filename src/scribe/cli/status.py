"""scribe status: project overview: config, evidence store and drafts."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel

from scribe.cli.context import load_cli_config, open_db, resolve_db, resolve_project
from scribe.config import ScribeConfig
from scribe.db.repository import Repository

console = Console()


def status_cmd(
    project: Annotated[
        str | None,
        typer.Option("--project", "-p", help="Project id (defaults to project.name)."),
    ] = None,
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to .scribe.db."),
    ] = None,
) -> None:
    """Show project status: models, evidence store and drafts."""
    cfg = load_cli_config()
    db_path = resolve_db(cfg, db)
    project_id = resolve_project(cfg, project)

    _show_project_panel(db_path, cfg, project_id)

    if not db_path.exists():
        console.print(
            Panel(
                "[yellow]No database found.[/]\n"
                "  Run:  scribe init",
                title="[bold]Evidence[/]",
                expand=False,
            )
        )
        return

    conn = open_db(db_path)
    try:
        _show_evidence_panel(conn, project_id)
        _show_drafts_panel(conn, project_id)
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Panel renderers
# ---------------------------------------------------------------------------


def _show_project_panel(db: Path, cfg: ScribeConfig, project_id: str) -> None:
    db_info = f"{db}"
    if db.exists():
        size_mb = db.stat().st_size / (1024 * 1024)
        db_info = f"{db} ({size_mb:.1f} MB)"
    lines = [
        f"Project:     [bold]{project_id}[/]",
        f"Database:    {db_info}",
        f"Embedding:   {cfg.embedding.model}",
        f"Generation:  {cfg.generation.model}",
    ]
    console.print(Panel("\n".join(lines), title="[bold]Project[/]", expand=False))


def _show_evidence_panel(conn: sqlite3.Connection, project_id: str) -> None:
    repo = Repository(conn)
    sources = repo.list_sources(project_id)
    total, embedded = conn.execute(
        """
        SELECT COUNT(*), COALESCE(SUM(embedding IS NOT NULL), 0)
        FROM source_chunks WHERE project_id = ?
        """,
        (project_id,),
    ).fetchone()

    lines = [f"Sources: [bold]{len(sources)}[/]  |  Chunks: [bold]{total:,}[/]  |  Embedded: [bold]{embedded:,}[/]"]
    for src in sources[:10]:
        n = repo.count_chunks_by_source(src.id)
        lines.append(f"  [dim]{src.kind:<8}[/] {src.title}  [dim]({n} chunks)[/]")
    if len(sources) > 10:
        lines.append(f"  [dim]… and {len(sources) - 10} more[/]")
    if total and embedded < total:
        lines.append("[yellow]⚠[/] Some chunks have no embedding; retrieval ranks embedded chunks only.")
    console.print(Panel("\n".join(lines), title="[bold]Evidence[/]", expand=False))


def _show_drafts_panel(conn: sqlite3.Connection, project_id: str) -> None:
    rows = conn.execute(
        """
        SELECT section_id, version, updated_at FROM drafts
        WHERE project_id = ? ORDER BY section_id
        """,
        (project_id,),
    ).fetchall()
    if not rows:
        body = "[dim]No drafts yet.[/]  Run:  scribe draft --section <id> ..."
    else:
        body = "\n".join(
            f"  {r['section_id']:<20} v{r['version']:<4} [dim]{r['updated_at']}[/]" for r in rows
        )
    console.print(Panel(body, title="[bold]Drafts[/]", expand=False))
