"""Tests for the Repository: sources, chunks, drafts and version history."""

from __future__ import annotations

import sqlite3

import pytest

from scribe.db.connection import Database
from scribe.db.models import (
    DraftAnnotation,
    DraftCitation,
    DraftContent,
    Source,
    SourceChunk,
    chunk_id,
)
from scribe.db.repository import VERSION_HISTORY_LIMIT, Repository
from scribe.db.schema import initialize
from scribe.errors import NotFound, StoreWriteFailed, VersionConflict


@pytest.fixture
def repo(tmp_db):
    return Repository(tmp_db)


def _source(id="src-1", project_id="p1", title="Deep Learning", kind="pdf"):
    return Source(id=id, project_id=project_id, kind=kind, title=title, path=f"{id}.pdf")


def _chunk(source_id="src-1", position=0, text="hello world", project_id="p1", embedding=None):
    return SourceChunk(
        id=chunk_id(source_id, position),
        source_id=source_id,
        project_id=project_id,
        text=text,
        position=position,
        token_count=3,
        start_offset=0,
        end_offset=len(text),
        embedding=embedding,
        metadata={"source_title": "Deep Learning"},
    )


def _content(html="<p>Draft</p>", n_citations=0):
    return DraftContent(
        html=html,
        citations=tuple(
            DraftCitation(placeholder=f"[{i}]", source_id="src-1", source_title="Deep Learning")
            for i in range(n_citations)
        ),
    )


# ------------------------------------------------------------------
# Sources
# ------------------------------------------------------------------

def test_add_and_get_source(repo):
    repo.add_source(_source())
    result = repo.get_source("src-1")
    assert result is not None
    assert result.title == "Deep Learning"
    assert result.kind == "pdf"
    assert result.created_at is not None


def test_get_source_not_found(repo):
    assert repo.get_source("nonexistent") is None


def test_add_source_updates_in_place(repo):
    repo.add_source(_source())
    repo.put_chunks([_chunk()])
    repo.add_source(_source(title="Deep Learning, 2nd ed."))

    assert repo.get_source("src-1").title == "Deep Learning, 2nd ed."
    assert repo.count_chunks_by_source("src-1") == 1


def test_list_sources_scoped_and_ordered(repo):
    repo.add_source(_source(id="b"))
    repo.add_source(_source(id="a"))
    repo.add_source(_source(id="other", project_id="p2"))
    assert [s.id for s in repo.list_sources("p1")] == ["b", "a"]


# ------------------------------------------------------------------
# Chunks
# ------------------------------------------------------------------

def test_put_chunks_roundtrips_embedding_and_metadata(repo):
    repo.add_source(_source())
    repo.put_chunks([_chunk(embedding=[0.5, -0.25, 1.0])])

    (stored,) = repo.get_chunks_for_project("p1")
    assert stored.embedding == [0.5, -0.25, 1.0]
    assert stored.metadata == {"source_title": "Deep Learning"}
    assert stored.has_embedding


def test_put_chunks_without_embedding(repo):
    repo.add_source(_source())
    repo.put_chunks([_chunk()])
    (stored,) = repo.get_chunks_for_project("p1")
    assert stored.embedding is None
    assert not stored.has_embedding


def test_put_chunks_is_idempotent_for_same_ids(repo):
    repo.add_source(_source())
    repo.put_chunks([_chunk(text="v1")])
    repo.put_chunks([_chunk(text="v2")])
    chunks = repo.get_chunks_for_project("p1")
    assert [c.text for c in chunks] == ["v2"]


def test_get_chunks_stored_order(repo):
    repo.add_source(_source(id="s2"))
    repo.add_source(_source(id="s1"))
    repo.put_chunks([_chunk("s1", 1), _chunk("s1", 0), _chunk("s2", 0)])
    ids = [c.id for c in repo.get_chunks_for_project("p1")]
    assert ids == ["s2_chunk_0", "s1_chunk_0", "s1_chunk_1"]


def test_get_chunks_scoped_to_project(repo):
    repo.add_source(_source())
    repo.add_source(_source(id="x", project_id="p2"))
    repo.put_chunks([_chunk(), _chunk("x", 0, project_id="p2")])
    assert [c.id for c in repo.get_chunks_for_project("p2")] == ["x_chunk_0"]


def test_put_chunks_batches_commit_independently(repo):
    repo.add_source(_source())
    good = [_chunk(position=i) for i in range(4)]
    orphan = _chunk(source_id="missing", position=0)

    with pytest.raises(StoreWriteFailed) as info:
        repo.put_chunks(good + [orphan], batch_limit=2)

    assert info.value.context["committed"] == 4
    assert info.value.context["group_start"] == 4
    assert repo.count_chunks_by_source("src-1") == 4


def test_put_chunks_rejects_bad_batch_limit(repo):
    with pytest.raises(ValueError):
        repo.put_chunks([], batch_limit=0)


def test_delete_stale_chunks_keeps_leading_positions(repo):
    repo.add_source(_source())
    repo.put_chunks([_chunk(position=i) for i in range(3)])
    assert repo.delete_stale_chunks("src-1", keep=1) == 2
    assert [c.position for c in repo.get_chunks_for_project("p1")] == [0]


# ------------------------------------------------------------------
# Drafts
# ------------------------------------------------------------------

def test_get_draft_missing(repo):
    assert repo.get_draft("p1", "intro") is None


def test_first_save_from_implicit_version_one(repo):
    snap = repo.save_draft("p1", "intro", _content(), expected_version=1, saved_by="ada")
    assert snap.version == 2
    stored = repo.get_draft("p1", "intro")
    assert stored.content == _content()
    assert stored.last_saved_by == "ada"


def test_save_draft_roundtrips_citations_and_annotations(repo):
    content = DraftContent(
        html="<p>x</p>",
        citations=(DraftCitation(placeholder="[1]", source_id="s", snippet="quote"),),
        annotations=(
            DraftAnnotation(id="a1", type="COMMENT", payload={"text": "check"}, created_at="t"),
        ),
    )
    repo.save_draft("p1", "intro", content, expected_version=1)
    assert repo.get_draft("p1", "intro").content == content


def test_save_draft_version_conflict(repo):
    repo.save_draft("p1", "intro", _content("<p>a</p>"), expected_version=1)
    with pytest.raises(VersionConflict) as info:
        repo.save_draft("p1", "intro", _content("<p>b</p>"), expected_version=1)
    assert info.value.expected == 1
    assert info.value.actual == 2
    assert repo.get_draft("p1", "intro").content.html == "<p>a</p>"


def test_save_draft_unchanged_content_is_noop(repo):
    first = repo.save_draft("p1", "intro", _content(), expected_version=1)
    again = repo.save_draft("p1", "intro", _content(), expected_version=2)
    assert again.version == first.version == 2
    assert repo.list_draft_versions("p1", "intro") == []


def test_save_pushes_previous_state_to_history(repo):
    repo.save_draft("p1", "intro", _content("<p>one</p>", n_citations=2), expected_version=1)
    repo.save_draft("p1", "intro", _content("<p>two</p>"), expected_version=2)

    (entry,) = repo.list_draft_versions("p1", "intro")
    assert entry.html == "<p>one</p>"
    assert entry.summary == "Saved with 2 citations"


def test_history_summary_empty_without_citations(repo):
    repo.save_draft("p1", "intro", _content("<p>one</p>"), expected_version=1)
    repo.save_draft("p1", "intro", _content("<p>two</p>"), expected_version=2)
    assert repo.list_draft_versions("p1", "intro")[0].summary == ""


def test_history_newest_first_and_capped(repo):
    version = 1
    for i in range(VERSION_HISTORY_LIMIT + 3):
        version = repo.save_draft("p1", "intro", _content(f"<p>{i}</p>"), version).version

    history = repo.list_draft_versions("p1", "intro")
    assert len(history) == VERSION_HISTORY_LIMIT
    assert history[0].html == f"<p>{VERSION_HISTORY_LIMIT + 1}</p>"


def test_restore_draft_version(repo):
    repo.save_draft("p1", "intro", _content("<p>old</p>", n_citations=1), expected_version=1)
    repo.save_draft("p1", "intro", _content("<p>new</p>", n_citations=1), expected_version=2)
    old = repo.list_draft_versions("p1", "intro")[0]

    snap = repo.restore_draft_version("p1", "intro", old.id, restored_by="ada")

    assert snap.version == 4
    assert snap.content.html == "<p>old</p>"
    assert len(snap.content.citations) == 1
    assert repo.list_draft_versions("p1", "intro")[0].html == "<p>new</p>"


def test_restore_unknown_version_raises(repo):
    repo.save_draft("p1", "intro", _content(), expected_version=1)
    with pytest.raises(NotFound, match="Version not found"):
        repo.restore_draft_version("p1", "intro", "nope")


def test_restore_without_draft_raises(repo):
    with pytest.raises(NotFound, match="Draft not found"):
        repo.restore_draft_version("p1", "intro", "nope")


def test_save_draft_wraps_sqlite_errors(repo, tmp_db):
    tmp_db.execute("DROP TABLE draft_versions")
    repo.save_draft("p1", "intro", _content("<p>a</p>"), expected_version=1)
    with pytest.raises(StoreWriteFailed) as info:
        repo.save_draft("p1", "intro", _content("<p>b</p>"), expected_version=2)
    assert isinstance(info.value.__cause__, sqlite3.Error)
    assert repo.get_draft("p1", "intro").version == 2


# ------------------------------------------------------------------
# Two connections to one database file
# ------------------------------------------------------------------

@pytest.fixture
def two_repos(tmp_path):
    """Two repositories over separate connections to the same file."""
    conn_a = Database(tmp_path / "shared.db").connect()
    initialize(conn_a)
    conn_b = Database(tmp_path / "shared.db").connect()
    yield Repository(conn_a), Repository(conn_b)
    conn_a.close()
    conn_b.close()


def _interleave(monkeypatch, reader, write):
    """Run *write* right after *reader* loads the current draft."""
    read = reader.get_draft

    def read_then_write(project_id, section_id):
        snapshot = read(project_id, section_id)
        write()
        return snapshot

    monkeypatch.setattr(reader, "get_draft", read_then_write)


def test_save_draft_rejects_write_from_other_connection(two_repos, monkeypatch):
    repo_a, repo_b = two_repos
    repo_a.save_draft("p1", "intro", _content("<p>base</p>"), expected_version=1)
    _interleave(
        monkeypatch,
        repo_a,
        lambda: repo_b.save_draft("p1", "intro", _content("<p>B</p>"), expected_version=2),
    )

    with pytest.raises(VersionConflict) as info:
        repo_a.save_draft("p1", "intro", _content("<p>A</p>"), expected_version=2)

    assert info.value.expected == 2
    assert info.value.actual == 3
    stored = repo_b.get_draft("p1", "intro")
    assert stored.version == 3
    assert stored.content.html == "<p>B</p>"
    assert [v.html for v in repo_b.list_draft_versions("p1", "intro")] == ["<p>base</p>"]


def test_first_save_rejects_insert_from_other_connection(two_repos, monkeypatch):
    repo_a, repo_b = two_repos
    _interleave(
        monkeypatch,
        repo_a,
        lambda: repo_b.save_draft("p1", "intro", _content("<p>B</p>"), expected_version=1),
    )

    with pytest.raises(VersionConflict) as info:
        repo_a.save_draft("p1", "intro", _content("<p>A</p>"), expected_version=1)

    assert info.value.expected == 1
    assert info.value.actual == 2
    assert repo_b.get_draft("p1", "intro").content.html == "<p>B</p>"


def test_restore_rejects_write_from_other_connection(two_repos, monkeypatch):
    repo_a, repo_b = two_repos
    repo_a.save_draft("p1", "intro", _content("<p>old</p>"), expected_version=1)
    repo_a.save_draft("p1", "intro", _content("<p>new</p>"), expected_version=2)
    old = repo_a.list_draft_versions("p1", "intro")[0]
    _interleave(
        monkeypatch,
        repo_a,
        lambda: repo_b.save_draft("p1", "intro", _content("<p>B</p>"), expected_version=3),
    )

    with pytest.raises(VersionConflict):
        repo_a.restore_draft_version("p1", "intro", old.id)

    stored = repo_b.get_draft("p1", "intro")
    assert stored.version == 4
    assert stored.content.html == "<p>B</p>"
