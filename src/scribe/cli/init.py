"""scribe init: create a project scaffold.

Creates:
  .scribe.db               empty evidence store with schema
  scribe.yaml              project config
  ~/.scribe/config.yaml    global model config (created once, mode 0o600)
and adds .scribe.db to an existing .gitignore.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from scribe.config import ensure_global_config
from scribe.db.connection import Database
from scribe.db.schema import initialize

console = Console()

_DEFAULT_PROJECT_DIR = Path(".")


def init_cmd(
    project_dir: Annotated[
        Path,
        typer.Argument(help="Directory to initialize. Defaults to current directory."),
    ] = _DEFAULT_PROJECT_DIR,
    name: Annotated[
        str | None,
        typer.Option("--name", "-n", help="Project name (prompted if omitted)."),
    ] = None,
) -> None:
    """Initialize a new Scribe project."""
    project_dir = project_dir.resolve()
    project_dir.mkdir(parents=True, exist_ok=True)

    if (project_dir / ".scribe.db").exists():
        console.print(f"[yellow]⚠[/]  {project_dir / '.scribe.db'} already exists.")
        if not typer.confirm("Re-initialize? Existing data is preserved.", default=False):
            console.print("[dim]Cancelled.[/]")
            raise typer.Exit(0)

    project_name = (name or typer.prompt("Project name")).strip()

    console.print(f"\n[bold]Creating scaffold in {project_dir} …[/]\n")
    _create_database(project_dir)
    _create_scribe_yaml(project_dir, project_name)
    _update_gitignore(project_dir)

    cfg_path = ensure_global_config()
    console.print(f"  [green]✓[/] {cfg_path} (global config)")

    console.print(f"\n[bold green]✓ Project '{project_name}' initialized.[/]")
    console.print("\nNext steps:")
    console.print("  1. scribe ingest --source <file-or-url>      (build the evidence base)")
    console.print('  2. scribe query "your question"              (check retrieval)')
    console.print("  3. scribe draft --section <id> --title ...   (draft a section)")


def _create_database(project_dir: Path) -> None:
    conn = Database(project_dir / ".scribe.db").connect()
    initialize(conn)
    conn.close()
    console.print("  [green]✓[/] .scribe.db")


def _create_scribe_yaml(project_dir: Path, project_name: str) -> None:
    target = project_dir / "scribe.yaml"
    if target.exists():
        console.print("  [dim]↷ scribe.yaml exists, kept[/]")
        return
    content = (
        f"project:\n"
        f'  name: "{project_name}"\n'
        f"\n"
        f"generation:\n"
        f"  citation_style: APA\n"
        f"  max_tokens: 2048\n"
        f"\n"
        f"retrieval:\n"
        f"  default_limit: 8\n"
        f"\n"
        f"autosave:\n"
        f"  delay_seconds: 2.0\n"
    )
    target.write_text(content, encoding="utf-8")
    console.print("  [green]✓[/] scribe.yaml")


def _update_gitignore(project_dir: Path) -> None:
    """Add Scribe entries to .gitignore if it already exists."""
    gitignore = project_dir / ".gitignore"
    entries = [".scribe.db"]

    if gitignore.exists():
        existing = gitignore.read_text(encoding="utf-8")
        to_add = [e for e in entries if e not in existing]
        if to_add:
            with gitignore.open("a", encoding="utf-8") as f:
                f.write("\n# Scribe\n")
                for entry in to_add:
                    f.write(f"{entry}\n")
            console.print("  [green]✓[/] .gitignore (updated with Scribe entries)")
