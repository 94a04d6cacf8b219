"""scribe draft: retrieve evidence, stream a section draft, save it.

Pipeline:
  1. Retrieve evidence for the section (query defaults to the objective)
  2. Stream the draft token by token into a draft session
  3. Save the session (optimistic version check) and report the new version
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from scribe.cli.context import (
    load_cli_config,
    open_db,
    require_api_key,
    resolve_db,
    resolve_project,
)
from scribe.cli.errors import err_no_evidence, err_pipeline
from scribe.config import ScribeConfig
from scribe.db.models import RetrievalQuery
from scribe.drafts.session import SaveReason
from scribe.errors import ScribeError
from scribe.generate.drafter import extract_citation_ids
from scribe.generate.prompts import EvidenceItem, SectionDraftRequest, ThesisSummary
from scribe.generate.streaming import ErrorEvent, GenerationState, StreamEvent, TokenEvent
from scribe.services import Services, build_services

console = Console()


def draft_cmd(
    section: Annotated[str, typer.Option("--section", help="Section id to draft.")],
    title: Annotated[str, typer.Option("--title", help="Section title.")],
    objective: Annotated[str, typer.Option("--objective", help="What the section must achieve.")],
    query: Annotated[
        str | None,
        typer.Option("--query", "-q", help="Retrieval query (defaults to the objective)."),
    ] = None,
    project: Annotated[
        str | None,
        typer.Option("--project", "-p", help="Project id (defaults to project.name)."),
    ] = None,
    limit: Annotated[
        int | None,
        typer.Option("--limit", "-k", help="Evidence chunks to use (1-100)."),
    ] = None,
    citation_style: Annotated[
        str | None,
        typer.Option("--citation-style", help="Preferred citation style (default from config)."),
    ] = None,
    scope: Annotated[str | None, typer.Option("--scope", help="Thesis scope.")] = None,
    argument: Annotated[
        str | None, typer.Option("--argument", help="Core argument of the thesis.")
    ] = None,
    tone: Annotated[str | None, typer.Option("--tone", help="Tone guidelines.")] = None,
    author: Annotated[
        str | None, typer.Option("--author", help="Recorded as the draft's last editor.")
    ] = None,
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to .scribe.db."),
    ] = None,
) -> None:
    """Draft a thesis section from the stored evidence."""
    cfg = load_cli_config()
    require_api_key(cfg.generation.model)
    project_id = resolve_project(cfg, project)

    conn = open_db(resolve_db(cfg, db))
    try:
        services = build_services(cfg, conn)
        request_args = dict(
            project_id=project_id,
            section_id=section,
            title=title,
            objective=objective,
            thesis_summary=ThesisSummary(
                scope=scope, core_argument=argument, tone_guidelines=tone
            ),
            citation_style=citation_style or cfg.generation.citation_style,
            max_tokens=cfg.generation.max_tokens,
        )
        try:
            ok = asyncio.run(
                _draft(
                    services,
                    cfg,
                    request_args,
                    query=query or objective,
                    limit=limit if limit is not None else cfg.retrieval.default_limit,
                    author=author,
                )
            )
        except ScribeError as exc:
            console.print(err_pipeline(exc))
            raise typer.Exit(1)
    finally:
        conn.close()

    if not ok:
        raise typer.Exit(1)


async def _draft(
    services: Services,
    cfg: ScribeConfig,
    request_args: dict,
    query: str,
    limit: int,
    author: str | None,
) -> bool:
    project_id = request_args["project_id"]
    section_id = request_args["section_id"]

    result = await services.retriever.retrieve(
        RetrievalQuery(project_id=project_id, section_id=section_id, query=query, limit=limit)
    )
    if not result.chunks:
        console.print(err_no_evidence(project_id))
        return False
    if result.degraded:
        console.print("[yellow]⚠[/] No embeddings stored; using evidence in stored order.")

    request = SectionDraftRequest(
        chunks=[EvidenceItem.from_chunk(c) for c in result.chunks], **request_args
    )

    draft = services.draft_session(project_id, section_id, author=author)
    await draft.load()
    try:
        generation = services.generator.start(request)
        state = await draft.apply_generation(generation, listener=_print_event)
        console.print()
        if state is not GenerationState.COMPLETED:
            return False

        snapshot = await draft.persist(SaveReason.MANUAL)
        used = extract_citation_ids(draft.generated_text, {c.id for c in request.chunks})
        console.print(
            f"\n[bold green]✓ Saved draft {project_id}/{section_id}[/] "
            f"(version {snapshot.version if snapshot else draft.version}, "
            f"{len(used)} evidence chunk(s) cited)"
        )
        return True
    finally:
        await draft.close()


def _print_event(event: StreamEvent) -> None:
    if isinstance(event, TokenEvent):
        console.print(event.content, end="", markup=False, highlight=False, soft_wrap=True)
    elif isinstance(event, ErrorEvent):
        console.print(f"\n[red]Error:[/] Generation failed: {event.message}")
