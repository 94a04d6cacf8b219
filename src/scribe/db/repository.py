"""Repository pattern for all Scribe database operations.

Single interface for: sources, source chunks (with embedding blobs), live
draft snapshots and their version history. The repository is synchronous;
``scribe.db.store`` adapts it for async callers.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Iterable

import numpy as np
import sqlite_vec

from scribe.db.models import (
    INITIAL_DRAFT_VERSION,
    DraftAnnotation,
    DraftCitation,
    DraftContent,
    DraftSnapshot,
    DraftVersion,
    Source,
    SourceChunk,
)
from scribe.errors import NotFound, StoreWriteFailed, VersionConflict

VERSION_HISTORY_LIMIT = 10
DEFAULT_BATCH_LIMIT = 500

_SOURCE_COLUMNS = (
    "id, project_id, kind, title, path, author, url, year, content_hash, created_at"
)
_CHUNK_COLUMNS = (
    "c.id, c.source_id, c.project_id, c.position, c.text, c.token_count, "
    "c.start_offset, c.end_offset, c.embedding, c.metadata, c.created_at"
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Repository:
    """Data access layer for all Scribe database entities.

    Wraps an open sqlite3.Connection. The connection is owned by the caller
    and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with sqlite-vec loaded and schema
                initialised (see scribe.db.schema.initialize).
        """
        self._conn = conn

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def add_source(self, source: Source) -> None:
        """Insert a source, or update its descriptive fields if the id exists.

        Updating in place keeps the row (and its chunks) attached.
        """
        self._conn.execute(
            """
            INSERT INTO sources (id, project_id, kind, title, path, author, url, year, content_hash)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                kind = excluded.kind,
                title = excluded.title,
                path = excluded.path,
                author = excluded.author,
                url = excluded.url,
                year = excluded.year,
                content_hash = excluded.content_hash
            """,
            (
                source.id,
                source.project_id,
                source.kind,
                source.title,
                source.path,
                source.author,
                source.url,
                source.year,
                source.content_hash,
            ),
        )
        self._conn.commit()

    def get_source(self, source_id: str) -> Source | None:
        row = self._conn.execute(
            f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE id = ?", (source_id,)
        ).fetchone()
        return _row_to_source(row) if row else None

    def list_sources(self, project_id: str) -> list[Source]:
        """Return a project's sources in insertion order."""
        rows = self._conn.execute(
            f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE project_id = ? ORDER BY rowid",
            (project_id,),
        ).fetchall()
        return [_row_to_source(r) for r in rows]

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def put_chunks(
        self, chunks: Iterable[SourceChunk], batch_limit: int = DEFAULT_BATCH_LIMIT
    ) -> int:
        """Write chunks in groups of at most *batch_limit*, one transaction per group.

        Rows with an existing id are replaced, so rewriting a source's chunks
        is idempotent.

        Args:
            chunks: Chunks to write; their source rows must already exist.
            batch_limit: Maximum rows per transaction.

        Returns:
            Number of chunks written.

        Raises:
            StoreWriteFailed: When a group fails. Earlier groups stay
                committed; ``context["committed"]`` counts their rows.
        """
        if batch_limit < 1:
            raise ValueError("batch_limit must be >= 1")

        items = list(chunks)
        committed = 0
        for start in range(0, len(items), batch_limit):
            group = items[start : start + batch_limit]
            try:
                with self._conn:
                    self._conn.executemany(
                        """
                        INSERT OR REPLACE INTO source_chunks
                            (id, source_id, project_id, position, text, token_count,
                             start_offset, end_offset, embedding, metadata)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        [_chunk_params(c) for c in group],
                    )
            except sqlite3.Error as exc:
                raise StoreWriteFailed(
                    f"Failed to write chunk group {start}-{start + len(group)}: {exc}",
                    context={
                        "committed": committed,
                        "group_start": start,
                        "group_size": len(group),
                    },
                    cause=exc,
                ) from exc
            committed += len(group)
        return committed

    def get_chunks_for_project(self, project_id: str) -> list[SourceChunk]:
        """Return all chunks of a project in stored order.

        Stored order is source insertion order, then chunk position.
        """
        rows = self._conn.execute(
            f"""
            SELECT {_CHUNK_COLUMNS}
            FROM source_chunks c JOIN sources s ON s.id = c.source_id
            WHERE c.project_id = ?
            ORDER BY s.rowid, c.position
            """,
            (project_id,),
        ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def count_chunks_by_source(self, source_id: str) -> int:
        return self._conn.execute(
            "SELECT COUNT(*) FROM source_chunks WHERE source_id = ?", (source_id,)
        ).fetchone()[0]

    def delete_stale_chunks(self, source_id: str, keep: int) -> int:
        """Delete chunks of a source at position *keep* or later.

        Returns the number of rows removed.
        """
        cur = self._conn.execute(
            "DELETE FROM source_chunks WHERE source_id = ? AND position >= ?",
            (source_id, keep),
        )
        self._conn.commit()
        return cur.rowcount

    # ------------------------------------------------------------------
    # Drafts
    # ------------------------------------------------------------------

    def get_draft(self, project_id: str, section_id: str) -> DraftSnapshot | None:
        row = self._conn.execute(
            """
            SELECT project_id, section_id, html, citations, annotations, version,
                   created_at, updated_at, last_saved_by
            FROM drafts WHERE project_id = ? AND section_id = ?
            """,
            (project_id, section_id),
        ).fetchone()
        return _row_to_draft(row) if row else None

    def save_draft(
        self,
        project_id: str,
        section_id: str,
        content: DraftContent,
        expected_version: int,
        saved_by: str | None = None,
    ) -> DraftSnapshot:
        """Write a draft if the stored version still equals *expected_version*.

        A section with no stored row is at the implicit version 1. Saving
        content identical to the stored content is a no-op and returns the
        stored snapshot unchanged. Otherwise the previous state is pushed
        onto the version history (newest 10 kept) and the version is bumped.

        Raises:
            VersionConflict: The stored version differs from *expected_version*.
            StoreWriteFailed: The write itself failed.
        """
        try:
            with self._conn:
                existing = self.get_draft(project_id, section_id)
                stored_version = existing.version if existing else INITIAL_DRAFT_VERSION
                if stored_version != expected_version:
                    raise VersionConflict(
                        expected_version,
                        stored_version,
                        context={"project_id": project_id, "section_id": section_id},
                    )
                if existing is not None and existing.content == content:
                    return existing

                now = _now()
                if existing is not None:
                    self._push_version(existing)
                snapshot = DraftSnapshot(
                    project_id=project_id,
                    section_id=section_id,
                    content=content,
                    version=stored_version + 1,
                    created_at=existing.created_at if existing else now,
                    updated_at=now,
                    last_saved_by=saved_by,
                )
                self._write_draft(snapshot, existing.version if existing else None)
                return snapshot
        except sqlite3.Error as exc:
            raise StoreWriteFailed(
                f"Failed to save draft: {exc}",
                context={"project_id": project_id, "section_id": section_id},
                cause=exc,
            ) from exc

    def list_draft_versions(self, project_id: str, section_id: str) -> list[DraftVersion]:
        """Return the version history, newest first."""
        rows = self._conn.execute(
            """
            SELECT id, html, created_at, created_by, summary
            FROM draft_versions
            WHERE project_id = ? AND section_id = ?
            ORDER BY seq DESC
            """,
            (project_id, section_id),
        ).fetchall()
        return [
            DraftVersion(
                id=r["id"],
                html=r["html"],
                created_at=r["created_at"],
                created_by=r["created_by"],
                summary=r["summary"],
            )
            for r in rows
        ]

    def restore_draft_version(
        self,
        project_id: str,
        section_id: str,
        version_id: str,
        restored_by: str | None = None,
    ) -> DraftSnapshot:
        """Make a history entry's html the live draft.

        The current state is pushed onto the history first, and the version
        is bumped like any other write. Citations and annotations are kept.

        Raises:
            NotFound: No stored draft, or no history entry with *version_id*.
        """
        ctx = {"project_id": project_id, "section_id": section_id, "version_id": version_id}
        try:
            with self._conn:
                existing = self.get_draft(project_id, section_id)
                if existing is None:
                    raise NotFound("Draft not found", context=ctx)
                row = self._conn.execute(
                    """
                    SELECT html FROM draft_versions
                    WHERE id = ? AND project_id = ? AND section_id = ?
                    """,
                    (version_id, project_id, section_id),
                ).fetchone()
                if row is None:
                    raise NotFound("Version not found", context=ctx)

                self._push_version(existing)
                snapshot = DraftSnapshot(
                    project_id=project_id,
                    section_id=section_id,
                    content=DraftContent(
                        html=row["html"],
                        citations=existing.content.citations,
                        annotations=existing.content.annotations,
                    ),
                    version=existing.version + 1,
                    created_at=existing.created_at,
                    updated_at=_now(),
                    last_saved_by=restored_by,
                )
                self._write_draft(snapshot, existing.version)
                return snapshot
        except sqlite3.Error as exc:
            raise StoreWriteFailed(
                f"Failed to restore draft version: {exc}", context=ctx, cause=exc
            ) from exc

    # ------------------------------------------------------------------
    # Internals (run inside the caller's transaction)
    # ------------------------------------------------------------------

    def _write_draft(self, snapshot: DraftSnapshot, previous_version: int | None) -> None:
        """Write *snapshot* only if the stored row is still at *previous_version*.

        ``previous_version`` of None means no row existed when it was read.
        A write from another connection in between raises VersionConflict.
        """
        content = snapshot.content
        values = (
            content.html,
            json.dumps([asdict(c) for c in content.citations]),
            json.dumps([asdict(a) for a in content.annotations]),
            snapshot.version,
            snapshot.updated_at,
            snapshot.last_saved_by,
        )
        if previous_version is None:
            try:
                self._conn.execute(
                    """
                    INSERT INTO drafts
                        (html, citations, annotations, version, updated_at,
                         last_saved_by, project_id, section_id, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    values + (snapshot.project_id, snapshot.section_id, snapshot.created_at),
                )
                return
            except sqlite3.IntegrityError:
                expected = INITIAL_DRAFT_VERSION
        else:
            cur = self._conn.execute(
                """
                UPDATE drafts
                SET html = ?, citations = ?, annotations = ?, version = ?,
                    updated_at = ?, last_saved_by = ?
                WHERE project_id = ? AND section_id = ? AND version = ?
                """,
                values + (snapshot.project_id, snapshot.section_id, previous_version),
            )
            if cur.rowcount == 1:
                return
            expected = previous_version
        raise VersionConflict(
            expected,
            self._stored_version(snapshot.project_id, snapshot.section_id),
            context={"project_id": snapshot.project_id, "section_id": snapshot.section_id},
        )

    def _stored_version(self, project_id: str, section_id: str) -> int:
        row = self._conn.execute(
            "SELECT version FROM drafts WHERE project_id = ? AND section_id = ?",
            (project_id, section_id),
        ).fetchone()
        return row["version"] if row else INITIAL_DRAFT_VERSION

    def _push_version(self, previous: DraftSnapshot) -> None:
        """Record *previous* as the newest history entry and prune to the limit."""
        n = len(previous.content.citations)
        summary = f"Saved with {n} citation{'s' if n > 1 else ''}" if n else ""
        seq = self._conn.execute(
            "SELECT COALESCE(MAX(seq), 0) + 1 FROM draft_versions WHERE project_id = ? AND section_id = ?",
            (previous.project_id, previous.section_id),
        ).fetchone()[0]
        self._conn.execute(
            """
            INSERT INTO draft_versions
                (id, project_id, section_id, html, created_by, summary, seq, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                uuid.uuid4().hex,
                previous.project_id,
                previous.section_id,
                previous.content.html,
                previous.last_saved_by,
                summary,
                seq,
                previous.updated_at or _now(),
            ),
        )
        self._conn.execute(
            """
            DELETE FROM draft_versions
            WHERE project_id = ? AND section_id = ? AND seq <= ?
            """,
            (previous.project_id, previous.section_id, seq - VERSION_HISTORY_LIMIT),
        )


# ------------------------------------------------------------------
# Row mappers
# ------------------------------------------------------------------


def _chunk_params(chunk: SourceChunk) -> tuple:
    blob = sqlite_vec.serialize_float32(chunk.embedding) if chunk.embedding else None
    return (
        chunk.id,
        chunk.source_id,
        chunk.project_id,
        chunk.position,
        chunk.text,
        chunk.token_count,
        chunk.start_offset,
        chunk.end_offset,
        blob,
        json.dumps(chunk.metadata),
    )


def _row_to_source(row: sqlite3.Row) -> Source:
    return Source(
        id=row["id"],
        project_id=row["project_id"],
        kind=row["kind"],
        title=row["title"],
        path=row["path"],
        author=row["author"],
        url=row["url"],
        year=row["year"],
        content_hash=row["content_hash"],
        created_at=row["created_at"],
    )


def _row_to_chunk(row: sqlite3.Row) -> SourceChunk:
    blob = row["embedding"]
    embedding = np.frombuffer(blob, dtype=np.float32).tolist() if blob else None
    return SourceChunk(
        id=row["id"],
        source_id=row["source_id"],
        project_id=row["project_id"],
        text=row["text"],
        position=row["position"],
        token_count=row["token_count"],
        start_offset=row["start_offset"],
        end_offset=row["end_offset"],
        embedding=embedding,
        metadata=json.loads(row["metadata"]),
        created_at=row["created_at"],
    )


def _row_to_draft(row: sqlite3.Row) -> DraftSnapshot:
    content = DraftContent(
        html=row["html"],
        citations=tuple(DraftCitation.from_dict(c) for c in json.loads(row["citations"])),
        annotations=tuple(
            DraftAnnotation.from_dict(a) for a in json.loads(row["annotations"])
        ),
    )
    return DraftSnapshot(
        project_id=row["project_id"],
        section_id=row["section_id"],
        content=content,
        version=row["version"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        last_saved_by=row["last_saved_by"],
    )
