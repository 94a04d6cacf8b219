"""scribe ingest: extract, chunk, embed and store sources.

Source dispatch by extension / URL scheme:
  https:// / http://        → web page (SSRF-guarded fetch)
  .pdf                      → pypdf text extraction
  .txt .md .rst .text       → plain text
  directory                 → expanded to supported files (--recursive for subdirs)
"""

from __future__ import annotations

import asyncio
import fnmatch
from pathlib import Path
from typing import Annotated

import typer
from pypdf.errors import PyPdfError
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn

from scribe.cli.context import (
    load_cli_config,
    open_db,
    require_api_key,
    resolve_db,
    resolve_project,
)
from scribe.cli.errors import err_ssrf_blocked
from scribe.ingest.chunker import chunk_text
from scribe.ingest.extract import ExtractedDocument, SsrfError, extract_file, fetch_web_page
from scribe.services import build_services

console = Console()

_FILE_EXTS = {".pdf", ".txt", ".md", ".rst", ".text"}


def ingest_cmd(
    source: Annotated[
        list[str] | None,
        typer.Option("--source", "-s", help="Source path or URL (repeatable)."),
    ] = None,
    project: Annotated[
        str | None,
        typer.Option("--project", "-p", help="Project id (defaults to project.name)."),
    ] = None,
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to .scribe.db (created if missing)."),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Show what would be ingested without writing."),
    ] = False,
    recursive: Annotated[
        bool,
        typer.Option("--recursive", help="Recurse into subdirectories (max 10 levels)."),
    ] = False,
    exclude: Annotated[
        list[str] | None,
        typer.Option("--exclude", help="Glob pattern to exclude (repeatable)."),
    ] = None,
) -> None:
    """Ingest one or more sources into the project's evidence store."""
    sources = source or []
    if not sources:
        console.print("[red]Error:[/] No --source specified. Use --source PATH_OR_URL.")
        raise typer.Exit(1)

    all_sources = _expand_sources(sources, recursive=recursive, exclude=exclude or [])
    if not all_sources:
        console.print("[yellow]No sources found to ingest.[/]")
        raise typer.Exit(0)

    cfg = load_cli_config()
    project_id = resolve_project(cfg, project)

    docs: list[ExtractedDocument] = []
    for src in all_sources:
        console.print(f"\n[bold]→ {src}[/]")
        doc = _extract(src)
        if doc is None:
            continue
        if not doc.text.strip():
            console.print("  [yellow]✗ No text extracted (empty source)[/]")
            continue
        n = len(chunk_text(doc.text, cfg.chunker.max_tokens, cfg.chunker.overlap_tokens))
        console.print(f"  [green]✓[/] {doc.word_count:,} words → {n} chunks")
        docs.append(doc)

    if dry_run:
        console.print("\n[dim]Dry run: nothing written to DB[/]")
        return
    if not docs:
        raise typer.Exit(1)

    require_api_key(cfg.embedding.model)
    conn = open_db(resolve_db(cfg, db), create=True)
    try:
        services = build_services(cfg, conn)
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
            console=console,
        ) as prog:
            task = prog.add_task(f"Embedding and storing 0/{len(docs)}…", total=len(docs))

            def _on_progress(done: int, total: int) -> None:
                prog.update(task, completed=done, description=f"Embedding and storing {done}/{total}…")

            results = asyncio.run(
                services.pipeline.ingest_many(project_id, docs, on_progress=_on_progress)
            )
    finally:
        conn.close()

    for result in results:
        console.print(f"  [green]✓[/] {result.source_id}: {result.chunk_count} chunks stored")
    failed = len(docs) - len(results)
    if failed:
        console.print(f"[red]✗ {failed} source(s) failed.[/] Run with --verbose for details.")
        raise typer.Exit(1)
    console.print(f"\n[bold green]✓ Ingested {len(results)} source(s) into '{project_id}'.[/]")


def _extract(src: str) -> ExtractedDocument | None:
    """Extract one source, printing a rich error and returning None on failure."""
    try:
        if src.startswith(("https://", "http://")):
            return fetch_web_page(src)
        return extract_file(src)
    except SsrfError:
        console.print(err_ssrf_blocked(src))
    except (ValueError, RuntimeError, OSError, PyPdfError) as exc:
        console.print(f"  [red]✗ Error:[/] {exc}")
    return None


# ------------------------------------------------------------------
# Directory expansion
# ------------------------------------------------------------------


def _expand_sources(sources: list[str], recursive: bool, exclude: list[str]) -> list[str]:
    """Expand directories to individual files; leave URLs and files as-is."""
    result: list[str] = []
    for src in sources:
        if src.startswith(("https://", "http://")):
            result.append(src)
            continue
        p = Path(src)
        if p.is_dir():
            files = _scan_dir(p, recursive=recursive, exclude=exclude, depth=0)
            if not files:
                console.print(f"[yellow]No supported files found in directory:[/] {src}")
            result.extend(str(f) for f in files)
        else:
            result.append(src)
    return result


def _scan_dir(
    directory: Path,
    recursive: bool,
    exclude: list[str],
    depth: int,
    max_depth: int = 10,
) -> list[Path]:
    """Return supported files in *directory* (optionally recursive)."""
    if depth > max_depth:
        return []
    files: list[Path] = []
    try:
        entries = sorted(directory.iterdir())
    except PermissionError:
        return []
    for entry in entries:
        if any(fnmatch.fnmatch(entry.name, pat) for pat in exclude):
            continue
        if entry.is_file() and entry.suffix.lower() in _FILE_EXTS:
            files.append(entry)
        elif entry.is_dir() and recursive and depth < max_depth:
            files.extend(_scan_dir(entry, recursive=recursive, exclude=exclude, depth=depth + 1))
    return files
