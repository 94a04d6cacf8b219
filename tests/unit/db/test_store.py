"""Tests for the async SqliteEvidenceStore adapter."""

from __future__ import annotations

import asyncio
import sqlite3
from unittest.mock import MagicMock

import pytest

from scribe.db.models import DraftContent, Source, SourceChunk, chunk_id
from scribe.db.store import SqliteEvidenceStore
from scribe.errors import StoreWriteFailed, VersionConflict


def _source(id="s1", project_id="p1"):
    return Source(id=id, project_id=project_id, kind="text", title=f"Title {id}")


def _chunks(source_id="s1", n=3, project_id="p1"):
    return [
        SourceChunk(
            id=chunk_id(source_id, i),
            source_id=source_id,
            project_id=project_id,
            text=f"chunk {i}",
            position=i,
            token_count=2,
            embedding=[float(i), 1.0],
        )
        for i in range(n)
    ]


@pytest.mark.asyncio
async def test_put_and_get_chunks(store):
    await store.add_source(_source())
    written = await store.put_chunks(_chunks())
    assert written == 3

    chunks = await store.get_chunks_for_project("p1")
    assert [c.id for c in chunks] == ["s1_chunk_0", "s1_chunk_1", "s1_chunk_2"]
    assert chunks[2].embedding == [2.0, 1.0]
    assert await store.get_chunks_for_project("unknown") == []


@pytest.mark.asyncio
async def test_list_sources(store):
    await store.add_source(_source("a"))
    await store.add_source(_source("b"))
    assert [s.id for s in await store.list_sources("p1")] == ["a", "b"]


@pytest.mark.asyncio
async def test_batch_limit_applied(tmp_db):
    store = SqliteEvidenceStore(tmp_db, batch_limit=2)
    await store.add_source(_source())
    orphan = _chunks(source_id="ghost", n=1)

    with pytest.raises(StoreWriteFailed) as info:
        await store.put_chunks(_chunks(n=3) + orphan)
    # Groups [0,1] and [2, ghost]: only the first group commits.
    assert info.value.context["committed"] == 2


@pytest.mark.asyncio
async def test_add_source_wraps_sqlite_error():
    conn = MagicMock()
    conn.execute.side_effect = sqlite3.OperationalError("disk I/O error")
    store = SqliteEvidenceStore(conn)

    with pytest.raises(StoreWriteFailed) as info:
        await store.add_source(_source())
    assert info.value.context["source_id"] == "s1"


@pytest.mark.asyncio
async def test_draft_roundtrip_and_conflict(store):
    assert await store.get_draft("p1", "intro") is None

    snap = await store.save_draft("p1", "intro", DraftContent(html="<p>a</p>"), 1)
    assert snap.version == 2
    assert (await store.get_draft("p1", "intro")).content.html == "<p>a</p>"

    with pytest.raises(VersionConflict):
        await store.save_draft("p1", "intro", DraftContent(html="<p>b</p>"), 1)


@pytest.mark.asyncio
async def test_concurrent_saves_one_wins(store):
    results = await asyncio.gather(
        store.save_draft("p1", "intro", DraftContent(html="<p>a</p>"), 1),
        store.save_draft("p1", "intro", DraftContent(html="<p>b</p>"), 1),
        return_exceptions=True,
    )
    conflicts = [r for r in results if isinstance(r, VersionConflict)]
    saved = [r for r in results if not isinstance(r, Exception)]
    assert len(conflicts) == 1
    assert len(saved) == 1
    assert (await store.get_draft("p1", "intro")).version == 2


@pytest.mark.asyncio
async def test_versions_and_restore(store):
    await store.save_draft("p1", "intro", DraftContent(html="<p>a</p>"), 1)
    await store.save_draft("p1", "intro", DraftContent(html="<p>b</p>"), 2)

    versions = await store.list_draft_versions("p1", "intro")
    assert [v.html for v in versions] == ["<p>a</p>"]

    restored = await store.restore_draft_version("p1", "intro", versions[0].id, "ada")
    assert restored.content.html == "<p>a</p>"
    assert restored.version == 4
    assert restored.last_saved_by == "ada"
