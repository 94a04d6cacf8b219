"""Shared helpers for CLI commands: config, database, project id."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import typer
from rich.console import Console

from scribe.cli.errors import err_config, err_no_api_key, err_no_db
from scribe.config import ConfigError, ScribeConfig, load_config
from scribe.db.connection import Database
from scribe.db.schema import initialize
from scribe.rag.llm_client import validate_api_key

console = Console()

DEFAULT_PROJECT = "default"


def load_cli_config() -> ScribeConfig:
    """Load config, turning ConfigError into a rich error + exit 1."""
    try:
        return load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1)


def resolve_db(cfg: ScribeConfig, db: Path | None) -> Path:
    return db if db is not None else Path(cfg.project.db)


def resolve_project(cfg: ScribeConfig, project: str | None) -> str:
    return project or cfg.project.name or DEFAULT_PROJECT


def open_db(db: Path, *, create: bool = False) -> sqlite3.Connection:
    """Open *db* with the schema initialised; exit 1 if missing and not *create*."""
    if not create and not db.exists():
        console.print(err_no_db(str(db)))
        raise typer.Exit(1)
    conn = Database(db).connect()
    initialize(conn)
    return conn


def require_api_key(model: str) -> None:
    try:
        validate_api_key(model)
    except EnvironmentError:
        provider = model.split("/")[0] if "/" in model else "openai"
        console.print(err_no_api_key(provider))
        raise typer.Exit(1)
