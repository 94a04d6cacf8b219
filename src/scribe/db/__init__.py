"""Scribe database layer."""

from scribe.db.connection import Database
from scribe.db.migrations import MIGRATIONS, run_migrations
from scribe.db.repository import Repository
from scribe.db.schema import initialize
from scribe.db.store import EvidenceStore, SqliteEvidenceStore

__all__ = [
    "Database",
    "EvidenceStore",
    "MIGRATIONS",
    "Repository",
    "SqliteEvidenceStore",
    "initialize",
    "run_migrations",
]
