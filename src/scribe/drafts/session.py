"""Draft session: in-memory editor state with debounced autosave.

A session owns the buffered content of one (project, section) draft and the
last version it knows the store holds. Edits mark the session dirty and
(re)start a debounce timer; when the timer fires, the buffered content is
saved with the known version as ``expected_version``. Persists are strictly
serialised, and the baseline only moves on a successful write, so a failed
or conflicting save never loses buffered edits.
"""

from __future__ import annotations

import asyncio
import enum
import html
import logging
from typing import Callable, Iterable

from scribe.db.models import (
    EMPTY_DRAFT_HTML,
    INITIAL_DRAFT_VERSION,
    DraftAnnotation,
    DraftCitation,
    DraftContent,
    DraftSnapshot,
)
from scribe.db.store import EvidenceStore
from scribe.errors import ScribeError, StoreWriteFailed
from scribe.generate.streaming import (
    ErrorEvent,
    GenerationSession,
    GenerationState,
    StreamEvent,
    TokenEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_AUTOSAVE_DELAY = 2.0


class SaveReason(str, enum.Enum):
    MANUAL = "manual"
    AUTOSAVE = "autosave"


def render_generated_html(base_html: str, generated: str) -> str:
    """Append *generated* text to *base_html* as escaped ``<p>`` paragraphs.

    Blank lines separate paragraphs; single newlines become ``<br>``. An empty
    base (``<p></p>``) is replaced rather than appended to.
    """
    paragraphs = [p.strip() for p in generated.split("\n\n") if p.strip()]
    rendered = "".join(
        "<p>" + html.escape(p).replace("\n", "<br>") + "</p>" for p in paragraphs
    )
    if not base_html.strip() or base_html.strip() == EMPTY_DRAFT_HTML:
        return rendered or EMPTY_DRAFT_HTML
    return base_html + rendered


class DraftSession:
    """Buffered, autosaving editor state for one draft section.

    Args:
        store: Evidence store holding drafts.
        project_id: Owning project.
        section_id: Thesis section being edited.
        autosave_delay: Debounce delay in seconds.
        author: Recorded as ``last_saved_by`` on every save.
    """

    def __init__(
        self,
        store: EvidenceStore,
        project_id: str,
        section_id: str,
        autosave_delay: float = DEFAULT_AUTOSAVE_DELAY,
        author: str | None = None,
    ) -> None:
        self._store = store
        self.project_id = project_id
        self.section_id = section_id
        self.autosave_delay = autosave_delay
        self.author = author

        self._content = DraftContent()
        self._baseline = DraftContent()
        self.version = INITIAL_DRAFT_VERSION
        self.dirty = False
        self.last_error: ScribeError | None = None
        self.last_saved_at: str | None = None
        self.save_count = 0
        self.generated_text = ""

        self._timer: asyncio.Task[None] | None = None
        self._persist_lock = asyncio.Lock()
        self._generation: GenerationSession | None = None

    @property
    def content(self) -> DraftContent:
        return self._content

    @property
    def baseline(self) -> DraftContent:
        """Content of the last successful save (or load)."""
        return self._baseline

    @property
    def autosave_pending(self) -> bool:
        return self._timer is not None

    # ------------------------------------------------------------------
    # Loading and editing
    # ------------------------------------------------------------------

    async def load(self) -> DraftContent:
        """Read the stored draft, or start an empty one at version 1."""
        self._cancel_timer()
        snapshot = await self._store.get_draft(self.project_id, self.section_id)
        self._adopt(snapshot)
        self._content = self._baseline
        self.dirty = False
        logger.debug(
            "Loaded draft %s/%s at version %d", self.project_id, self.section_id, self.version
        )
        return self._content

    def update(
        self,
        html_content: str,
        citations: Iterable[DraftCitation] | None = None,
        annotations: Iterable[DraftAnnotation] | None = None,
    ) -> bool:
        """Replace the buffered content. Returns the new dirty flag.

        ``None`` keeps the current citations / annotations. Content equal to
        the baseline clears dirty and cancels a pending autosave; anything
        else sets dirty and restarts the debounce timer.
        """
        self._content = DraftContent(
            html=html_content,
            citations=self._content.citations if citations is None else tuple(citations),
            annotations=(
                self._content.annotations if annotations is None else tuple(annotations)
            ),
        )
        if self._content == self._baseline:
            self.dirty = False
            self._cancel_timer()
        else:
            self.dirty = True
            self._schedule_autosave()
        return self.dirty

    # ------------------------------------------------------------------
    # Persisting
    # ------------------------------------------------------------------

    async def persist(self, reason: SaveReason = SaveReason.MANUAL) -> DraftSnapshot | None:
        """Save the buffered content with the last known version.

        An autosave with nothing to save is a no-op and returns None.

        Raises:
            VersionConflict: The stored draft moved on; call ``resync()``.
            StoreWriteFailed: The write failed. The session stays dirty.
        """
        if reason is SaveReason.AUTOSAVE and not self.dirty:
            return None
        self._cancel_timer()

        async with self._persist_lock:
            if reason is SaveReason.AUTOSAVE and not self.dirty:
                return None
            sent = self._content
            try:
                snapshot = await self._store.save_draft(
                    self.project_id,
                    self.section_id,
                    sent,
                    expected_version=self.version,
                    saved_by=self.author,
                )
            except ScribeError as exc:
                self._record_failure(exc, reason)
                raise
            except Exception as exc:
                err = StoreWriteFailed(
                    f"Failed to save draft: {exc}",
                    context={"project_id": self.project_id, "section_id": self.section_id},
                    cause=exc,
                )
                self._record_failure(err, reason)
                raise err from exc

            self.version = snapshot.version
            self.last_saved_at = snapshot.updated_at
            self._baseline = sent
            self.dirty = self._content != self._baseline
            self.last_error = None
            self.save_count += 1
            logger.debug(
                "Saved draft %s/%s (%s) at version %d",
                self.project_id,
                self.section_id,
                reason.value,
                self.version,
            )
            return snapshot

    async def resync(self) -> None:
        """Re-read the stored version after a conflict, keeping buffered edits.

        The buffered content stays as it is, so the session remains dirty and
        the next ``persist()`` overwrites the stored draft deliberately.
        """
        async with self._persist_lock:
            snapshot = await self._store.get_draft(self.project_id, self.section_id)
            self._adopt(snapshot)
            self.dirty = self._content != self._baseline
            logger.info(
                "Resynced draft %s/%s to version %d (dirty=%s)",
                self.project_id,
                self.section_id,
                self.version,
                self.dirty,
            )

    def _adopt(self, snapshot: DraftSnapshot | None) -> None:
        if snapshot is None:
            self._baseline = DraftContent()
            self.version = INITIAL_DRAFT_VERSION
            self.last_saved_at = None
        else:
            self._baseline = snapshot.content
            self.version = snapshot.version
            self.last_saved_at = snapshot.updated_at

    def _record_failure(self, exc: ScribeError, reason: SaveReason) -> None:
        self.last_error = exc
        self.dirty = self._content != self._baseline
        logger.warning(
            "Draft save failed for %s/%s (%s): %s",
            self.project_id,
            self.section_id,
            reason.value,
            exc,
        )

    # ------------------------------------------------------------------
    # Debounce timer
    # ------------------------------------------------------------------

    def _schedule_autosave(self) -> None:
        self._cancel_timer()
        self._timer = asyncio.create_task(self._autosave_after_delay())

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _autosave_after_delay(self) -> None:
        await asyncio.sleep(self.autosave_delay)
        # Past this point the save may no longer be cancelled by an edit.
        self._timer = None
        try:
            await self.persist(SaveReason.AUTOSAVE)
        except ScribeError as exc:
            # Recorded in last_error; the next edit or manual save retries.
            logger.debug("Autosave failed: %s", exc.to_dict())

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def apply_generation(
        self,
        session: GenerationSession,
        listener: Callable[[StreamEvent], None] | None = None,
    ) -> GenerationState:
        """Stream *session*'s tokens into the draft until it ends.

        Generated paragraphs are appended to the html present when the
        generation started. Starting another generation, or calling
        ``cancel_generation()``, stops this one; no token is applied after
        that. *listener* sees every applied event. Returns the session's
        final state.
        """
        self.cancel_generation()
        self._generation = session
        base_html = self._content.html
        self.generated_text = ""
        try:
            async for event in session.events():
                if self._generation is not session or session.state is GenerationState.CANCELLED:
                    break
                if listener is not None:
                    listener(event)
                if isinstance(event, TokenEvent):
                    self.generated_text += event.content
                    self.update(render_generated_html(base_html, self.generated_text))
                elif isinstance(event, ErrorEvent) and session.error is not None:
                    self.last_error = session.error
        finally:
            if self._generation is session:
                self._generation = None
        return session.state

    def cancel_generation(self) -> bool:
        session, self._generation = self._generation, None
        return session.cancel() if session is not None else False

    async def close(self, flush: bool = False) -> None:
        """Cancel the active generation and pending autosave.

        With *flush*, unsaved edits are persisted first.
        """
        self.cancel_generation()
        self._cancel_timer()
        if flush and self.dirty:
            await self.persist(SaveReason.MANUAL)
