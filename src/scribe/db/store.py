"""Async evidence store adapter.

``EvidenceStore`` is the interface the retriever, ingestion pipeline and
draft sessions depend on. ``SqliteEvidenceStore`` implements it on top of
the synchronous :class:`~scribe.db.repository.Repository`, running each call
in a worker thread. A single lock serialises access to the connection.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from typing import Any, Callable, Protocol, Sequence, TypeVar

from scribe.db.models import DraftContent, DraftSnapshot, DraftVersion, Source, SourceChunk
from scribe.db.repository import DEFAULT_BATCH_LIMIT, Repository
from scribe.errors import StoreWriteFailed

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EvidenceStore(Protocol):
    async def add_source(self, source: Source) -> None: ...

    async def list_sources(self, project_id: str) -> list[Source]: ...

    async def put_chunks(self, chunks: Sequence[SourceChunk]) -> int: ...

    async def delete_stale_chunks(self, source_id: str, keep: int) -> int: ...

    async def get_chunks_for_project(self, project_id: str) -> list[SourceChunk]: ...

    async def get_draft(self, project_id: str, section_id: str) -> DraftSnapshot | None: ...

    async def save_draft(
        self,
        project_id: str,
        section_id: str,
        content: DraftContent,
        expected_version: int,
        saved_by: str | None = None,
    ) -> DraftSnapshot: ...

    async def list_draft_versions(
        self, project_id: str, section_id: str
    ) -> list[DraftVersion]: ...

    async def restore_draft_version(
        self,
        project_id: str,
        section_id: str,
        version_id: str,
        restored_by: str | None = None,
    ) -> DraftSnapshot: ...


class SqliteEvidenceStore:
    """EvidenceStore backed by the project SQLite database."""

    def __init__(
        self, conn: sqlite3.Connection, batch_limit: int = DEFAULT_BATCH_LIMIT
    ) -> None:
        """Args:
            conn: Open connection created with ``check_same_thread=False``.
            batch_limit: Maximum chunks per write transaction.
        """
        self._repo = Repository(conn)
        self._batch_limit = batch_limit
        self._lock = threading.Lock()

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        def call() -> T:
            with self._lock:
                return fn(*args)

        return await asyncio.to_thread(call)

    # ------------------------------------------------------------------
    # Evidence
    # ------------------------------------------------------------------

    async def add_source(self, source: Source) -> None:
        try:
            await self._run(self._repo.add_source, source)
        except sqlite3.Error as exc:
            raise StoreWriteFailed(
                f"Failed to register source: {exc}",
                context={"source_id": source.id, "project_id": source.project_id},
                cause=exc,
            ) from exc

    async def list_sources(self, project_id: str) -> list[Source]:
        return await self._run(self._repo.list_sources, project_id)

    async def put_chunks(self, chunks: Sequence[SourceChunk]) -> int:
        written = await self._run(self._repo.put_chunks, list(chunks), self._batch_limit)
        logger.debug("Wrote %d chunk(s)", written)
        return written

    async def delete_stale_chunks(self, source_id: str, keep: int) -> int:
        try:
            return await self._run(self._repo.delete_stale_chunks, source_id, keep)
        except sqlite3.Error as exc:
            raise StoreWriteFailed(
                f"Failed to delete chunks: {exc}",
                context={"source_id": source_id, "keep": keep},
                cause=exc,
            ) from exc

    async def get_chunks_for_project(self, project_id: str) -> list[SourceChunk]:
        return await self._run(self._repo.get_chunks_for_project, project_id)

    # ------------------------------------------------------------------
    # Drafts
    # ------------------------------------------------------------------

    async def get_draft(self, project_id: str, section_id: str) -> DraftSnapshot | None:
        return await self._run(self._repo.get_draft, project_id, section_id)

    async def save_draft(
        self,
        project_id: str,
        section_id: str,
        content: DraftContent,
        expected_version: int,
        saved_by: str | None = None,
    ) -> DraftSnapshot:
        return await self._run(
            self._repo.save_draft,
            project_id,
            section_id,
            content,
            expected_version,
            saved_by,
        )

    async def list_draft_versions(
        self, project_id: str, section_id: str
    ) -> list[DraftVersion]:
        return await self._run(self._repo.list_draft_versions, project_id, section_id)

    async def restore_draft_version(
        self,
        project_id: str,
        section_id: str,
        version_id: str,
        restored_by: str | None = None,
    ) -> DraftSnapshot:
        return await self._run(
            self._repo.restore_draft_version,
            project_id,
            section_id,
            version_id,
            restored_by,
        )
