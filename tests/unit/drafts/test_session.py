"""Tests for DraftSession: dirty tracking, debounced autosave, versioning."""

from __future__ import annotations

import asyncio

import pytest

from conftest import FakeCompletionProvider
from scribe.db.models import EMPTY_DRAFT_HTML, DraftCitation
from scribe.drafts.session import DraftSession, SaveReason, render_generated_html
from scribe.errors import StoreWriteFailed, VersionConflict
from scribe.generate.prompts import EvidenceItem, SectionDraftRequest
from scribe.generate.streaming import GenerationSession, GenerationState, TokenEvent

_DELAY = 0.05


class RecordingStore:
    """Wraps a real store; records save calls and can fail or hold them."""

    def __init__(self, inner) -> None:
        self._inner = inner
        self.saves: list[tuple[str, int]] = []
        self.fail: Exception | None = None
        self.gate: asyncio.Event | None = None

    def __getattr__(self, name):
        return getattr(self._inner, name)

    async def save_draft(self, project_id, section_id, content, expected_version, saved_by=None):
        self.saves.append((content.html, expected_version))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail is not None:
            raise self.fail
        return await self._inner.save_draft(
            project_id, section_id, content, expected_version, saved_by
        )


@pytest.fixture
def recording(store):
    return RecordingStore(store)


async def _session(store, delay=_DELAY, author=None) -> DraftSession:
    session = DraftSession(store, "p1", "intro", autosave_delay=delay, author=author)
    await session.load()
    return session


async def _until(predicate, timeout=1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


def _generation(tokens, gate=None) -> GenerationSession:
    request = SectionDraftRequest(
        project_id="p1",
        section_id="intro",
        title="Introduction",
        objective="Motivate",
        chunks=[EvidenceItem(id="s1_chunk_0", source_id="s1", text="E.")],
    )
    return GenerationSession(request, FakeCompletionProvider(tokens, gate=gate))


# ------------------------------------------------------------------
# Loading and dirty tracking
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_load_missing_draft_starts_empty_at_version_one(recording):
    session = await _session(recording)
    assert session.content.html == EMPTY_DRAFT_HTML
    assert session.version == 1
    assert not session.dirty


@pytest.mark.asyncio
async def test_load_existing_draft(recording):
    writer = await _session(recording, author="ada")
    writer.update("<p>Saved</p>")
    await writer.persist()

    reader = await _session(recording)
    assert reader.content.html == "<p>Saved</p>"
    assert reader.version == 2
    assert reader.last_saved_at is not None


@pytest.mark.asyncio
async def test_updates_equal_to_baseline_never_persist(recording):
    session = await _session(recording)
    for _ in range(5):
        assert session.update(EMPTY_DRAFT_HTML) is False
    await asyncio.sleep(_DELAY * 3)

    assert recording.saves == []
    assert session.save_count == 0
    assert not session.autosave_pending


@pytest.mark.asyncio
async def test_reverting_edit_cancels_pending_autosave(recording):
    session = await _session(recording)
    assert session.update("<p>typo</p>") is True
    assert session.autosave_pending
    assert session.update(EMPTY_DRAFT_HTML) is False
    assert not session.autosave_pending

    await asyncio.sleep(_DELAY * 3)
    assert recording.saves == []


@pytest.mark.asyncio
async def test_citation_change_alone_makes_dirty(recording):
    session = await _session(recording, delay=10)
    citation = DraftCitation(placeholder="[1]", source_id="s1", source_title="Deep Learning")
    assert session.update(EMPTY_DRAFT_HTML, citations=[citation]) is True
    # None keeps the current citations.
    session.update("<p>x</p>")
    assert session.content.citations == (citation,)
    await session.close()


# ------------------------------------------------------------------
# Debounced autosave
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_burst_of_edits_saves_once_with_last_content(recording):
    session = await _session(recording)
    for text in ("<p>N</p>", "<p>Ne</p>", "<p>Neural</p>"):
        session.update(text)

    await _until(lambda: session.save_count == 1)
    await asyncio.sleep(_DELAY * 2)

    assert recording.saves == [("<p>Neural</p>", 1)]
    assert session.version == 2
    assert not session.dirty
    assert not session.autosave_pending


@pytest.mark.asyncio
async def test_versions_increase_by_one_per_save(recording):
    session = await _session(recording, delay=10)
    for i in range(4):
        session.update(f"<p>rev {i}</p>")
        snapshot = await session.persist(SaveReason.MANUAL)
        assert snapshot.version == 2 + i

    assert session.version == 5
    assert [v for _, v in recording.saves] == [1, 2, 3, 4]
    assert len(await recording.list_draft_versions("p1", "intro")) == 3


@pytest.mark.asyncio
async def test_autosave_without_changes_is_noop(recording):
    session = await _session(recording)
    assert await session.persist(SaveReason.AUTOSAVE) is None
    assert recording.saves == []


@pytest.mark.asyncio
async def test_manual_persist_cancels_pending_autosave(recording):
    session = await _session(recording)
    session.update("<p>now</p>")
    await session.persist(SaveReason.MANUAL)
    await asyncio.sleep(_DELAY * 3)
    assert len(recording.saves) == 1


@pytest.mark.asyncio
async def test_edit_during_inflight_save_stays_dirty(recording):
    session = await _session(recording, delay=10)
    recording.gate = asyncio.Event()
    session.update("<p>one</p>")

    save = asyncio.create_task(session.persist())
    await _until(lambda: recording.saves)
    session.update("<p>one two</p>")
    recording.gate.set()
    await save

    assert session.baseline.html == "<p>one</p>"
    assert session.dirty
    assert session.content.html == "<p>one two</p>"
    await session.close()


@pytest.mark.asyncio
async def test_autosave_waits_for_inflight_manual_save(recording):
    session = await _session(recording)
    recording.gate = asyncio.Event()
    session.update("<p>one</p>")

    manual = asyncio.create_task(session.persist(SaveReason.MANUAL))
    await _until(lambda: recording.saves)
    session.update("<p>one two</p>")
    # The debounce fires while the manual save is still held.
    await _until(lambda: not session.autosave_pending)
    await asyncio.sleep(_DELAY)
    assert recording.saves == [("<p>one</p>", 1)]

    recording.gate.set()
    await manual
    await _until(lambda: session.save_count == 2)

    assert recording.saves == [("<p>one</p>", 1), ("<p>one two</p>", 2)]
    assert session.version == 3
    assert session.last_error is None
    assert not session.dirty


# ------------------------------------------------------------------
# Failures and conflicts
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_failed_save_keeps_edits_dirty(recording):
    session = await _session(recording, delay=10)
    session.update("<p>unsaved</p>")
    recording.fail = StoreWriteFailed("disk full")

    with pytest.raises(StoreWriteFailed):
        await session.persist()

    assert session.dirty
    assert session.version == 1
    assert session.baseline.html == EMPTY_DRAFT_HTML
    assert session.last_error is recording.fail

    recording.fail = None
    await session.persist()
    assert not session.dirty
    assert session.last_error is None
    assert session.version == 2


@pytest.mark.asyncio
async def test_unexpected_error_wrapped(recording):
    session = await _session(recording, delay=10)
    session.update("<p>x</p>")
    recording.fail = OSError("socket closed")

    with pytest.raises(StoreWriteFailed) as info:
        await session.persist()
    assert isinstance(info.value.__cause__, OSError)
    assert session.dirty
    await session.close()


@pytest.mark.asyncio
async def test_autosave_failure_is_recorded_not_raised(recording):
    session = await _session(recording)
    recording.fail = StoreWriteFailed("locked")
    session.update("<p>x</p>")

    await _until(lambda: session.last_error is not None)
    assert session.dirty
    assert not session.autosave_pending


@pytest.mark.asyncio
async def test_conflict_then_resync_keeps_buffer(recording):
    mine = await _session(recording, delay=10)
    theirs = await _session(recording, delay=10)

    theirs.update("<p>theirs</p>")
    await theirs.persist()

    mine.update("<p>mine</p>")
    with pytest.raises(VersionConflict) as info:
        await mine.persist()
    assert (info.value.expected, info.value.actual) == (1, 2)
    assert mine.dirty

    await mine.resync()
    assert mine.version == 2
    assert mine.dirty
    assert mine.content.html == "<p>mine</p>"

    snapshot = await mine.persist()
    assert snapshot.version == 3
    assert (await recording.get_draft("p1", "intro")).content.html == "<p>mine</p>"


# ------------------------------------------------------------------
# Generation
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_apply_generation_renders_paragraphs(recording):
    session = await _session(recording, delay=10)
    seen = []

    state = await session.apply_generation(
        _generation(["Neural nets", " learn.\n\nThey", " generalise."]), listener=seen.append
    )

    assert state is GenerationState.COMPLETED
    assert session.generated_text == "Neural nets learn.\n\nThey generalise."
    assert session.content.html == "<p>Neural nets learn.</p><p>They generalise.</p>"
    assert session.dirty
    assert sum(isinstance(e, TokenEvent) for e in seen) == 3
    assert seen[-1].type == "done"
    await session.close(flush=True)
    assert (await recording.get_draft("p1", "intro")).version == 2


@pytest.mark.asyncio
async def test_cancel_generation_stops_applying_tokens(recording):
    session = await _session(recording, delay=10)
    gate = asyncio.Event()
    generation = _generation(["First.", " Second."], gate=gate)

    task = asyncio.create_task(session.apply_generation(generation))
    await _until(lambda: session.generated_text)
    assert session.cancel_generation()
    gate.set()

    assert await task is GenerationState.CANCELLED
    assert session.generated_text == "First."
    assert session.content.html == "<p>First.</p>"
    await session.close()


@pytest.mark.asyncio
async def test_new_generation_replaces_running_one(recording):
    session = await _session(recording, delay=10)
    gate = asyncio.Event()
    first = _generation(["old", " more"], gate=gate)

    first_task = asyncio.create_task(session.apply_generation(first))
    await _until(lambda: session.generated_text)
    state = await session.apply_generation(_generation(["new"]))
    gate.set()

    assert state is GenerationState.COMPLETED
    assert await first_task is GenerationState.CANCELLED
    # The second generation appends to the html present when it started.
    assert session.content.html == "<p>old</p><p>new</p>"
    assert session.generated_text == "new"
    await session.close()


# ------------------------------------------------------------------
# render_generated_html
# ------------------------------------------------------------------


def test_render_replaces_empty_base_and_escapes():
    html = render_generated_html(EMPTY_DRAFT_HTML, "a < b\nline two\n\n<script>")
    assert html == "<p>a &lt; b<br>line two</p><p>&lt;script&gt;</p>"


def test_render_appends_to_existing_content():
    assert render_generated_html("<p>Intro</p>", "More.") == "<p>Intro</p><p>More.</p>"


def test_render_empty_generation_keeps_empty_draft():
    assert render_generated_html(EMPTY_DRAFT_HTML, "  \n\n ") == EMPTY_DRAFT_HTML
