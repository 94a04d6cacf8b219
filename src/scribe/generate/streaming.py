"""Token streaming for section drafts.

A :class:`GenerationSession` drives one completion stream in a background
reader task and hands events to a single consumer through an
``asyncio.Queue``:

    IDLE → REQUESTING → STREAMING → COMPLETED | FAILED | CANCELLED

Tokens are delivered in arrival order, followed by exactly one terminal
event (``DoneEvent`` or ``ErrorEvent``). After ``cancel()`` no further event
is delivered and the provider stream is closed.

:class:`StreamingGenerator` keeps at most one active session per
(project, section).
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Union

from scribe.errors import AIServiceUnavailable, GenerationInProgress
from scribe.generate.prompts import SectionDraftRequest, build_messages
from scribe.rag.llm_client import CompletionProvider

logger = logging.getLogger(__name__)

ON_CONFLICT_REPLACE = "replace"
ON_CONFLICT_REJECT = "reject"


class GenerationState(str, enum.Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (
            GenerationState.COMPLETED,
            GenerationState.FAILED,
            GenerationState.CANCELLED,
        )


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenEvent:
    content: str
    type: str = field(default="token", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "content": self.content}


@dataclass(frozen=True)
class DoneEvent:
    text: str
    type: str = field(default="done", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type}


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    type: str = field(default="error", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "message": self.message}


StreamEvent = Union[TokenEvent, DoneEvent, ErrorEvent]

# Queued by cancel() to wake a consumer blocked on an empty queue.
_CANCELLED = object()


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class GenerationSession:
    """One streamed draft generation.

    Args:
        request: Validated drafting request.
        provider: Completion provider with an async ``stream()``.
        temperature: Sampling temperature.
        on_finish: Called once when the session reaches a terminal state.
    """

    def __init__(
        self,
        request: SectionDraftRequest,
        provider: CompletionProvider,
        temperature: float = 0.7,
        on_finish: Callable[[GenerationSession], None] | None = None,
    ) -> None:
        self.request = request
        self._provider = provider
        self._temperature = temperature
        self._on_finish = on_finish
        self._finished = False
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._parts: list[str] = []
        self._task: asyncio.Task[None] | None = None
        self._consumed = False
        self.state = GenerationState.IDLE
        self.error: Exception | None = None

    @property
    def text(self) -> str:
        """Concatenation of all tokens received so far."""
        return "".join(self._parts)

    def start(self) -> None:
        """Start the reader task. Must be called from a running event loop."""
        if self.state is not GenerationState.IDLE:
            raise RuntimeError(f"Session already started (state={self.state.value})")
        self.state = GenerationState.REQUESTING
        self._task = asyncio.create_task(self._read())

    def cancel(self) -> bool:
        """Stop the generation. Returns False if it had already finished."""
        if self.state.terminal:
            return False
        self.state = GenerationState.CANCELLED
        logger.info(
            "Draft generation cancelled: project=%s section=%s",
            self.request.project_id,
            self.request.section_id,
        )
        if self._task is not None:
            self._task.cancel()
        self._queue.put_nowait(_CANCELLED)
        self._finish()
        return True

    async def wait(self) -> str:
        """Wait for the reader task to end and return the text received."""
        if self._task is not None:
            try:
                await asyncio.shield(self._task)
            except asyncio.CancelledError:
                if not self._task.cancelled():
                    raise
        return self.text

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Yield events until the terminal event or cancellation.

        Only one consumer may iterate a session.
        """
        if self._consumed:
            raise RuntimeError("GenerationSession events can only be consumed once")
        self._consumed = True
        if self.state is GenerationState.IDLE:
            self.start()

        while self.state is not GenerationState.CANCELLED:
            item = await self._queue.get()
            if item is _CANCELLED or self.state is GenerationState.CANCELLED:
                return
            yield item
            if isinstance(item, (DoneEvent, ErrorEvent)):
                return

    async def relay(self, listener: Callable[[StreamEvent], Any]) -> None:
        """Pass every event to *listener*; awaits it when it returns an awaitable."""
        async for event in self.events():
            result = listener(event)
            if inspect.isawaitable(result):
                await result

    # ------------------------------------------------------------------
    # Reader task
    # ------------------------------------------------------------------

    async def _read(self) -> None:
        req = self.request
        stream = self._provider.stream(
            build_messages(req), max_tokens=req.max_tokens, temperature=self._temperature
        )
        logger.info(
            "Starting streaming draft generation: project=%s section=%s",
            req.project_id,
            req.section_id,
        )
        try:
            async for token in stream:
                if self.state is GenerationState.REQUESTING:
                    self.state = GenerationState.STREAMING
                self._parts.append(token)
                self._queue.put_nowait(TokenEvent(token))
            self.state = GenerationState.COMPLETED
            self._queue.put_nowait(DoneEvent(self.text))
            logger.info(
                "Completed streaming draft generation: project=%s section=%s chars=%d",
                req.project_id,
                req.section_id,
                len(self.text),
            )
        except asyncio.CancelledError:
            self.state = GenerationState.CANCELLED
            raise
        except Exception as exc:
            if self.state is GenerationState.CANCELLED:
                return
            self.state = GenerationState.FAILED
            self.error = AIServiceUnavailable(
                f"Draft generation failed: {exc}",
                context={"project_id": req.project_id, "section_id": req.section_id},
                cause=exc,
            )
            logger.error("Streaming draft generation failed: %s", exc)
            self._queue.put_nowait(ErrorEvent(str(exc)))
        finally:
            await _close_stream(stream)
            self._finish()

    def _finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        if self._on_finish is not None:
            self._on_finish(self)


async def _close_stream(stream: Any) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as exc:
        logger.warning("Error while closing completion stream: %s", exc)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class StreamingGenerator:
    """Starts generation sessions, at most one active per (project, section).

    Args:
        provider: Completion provider shared by all sessions.
        temperature: Sampling temperature.
        on_conflict: ``"replace"`` cancels the active session for the same
            section; ``"reject"`` raises :class:`GenerationInProgress`.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        temperature: float = 0.7,
        on_conflict: str = ON_CONFLICT_REPLACE,
    ) -> None:
        if on_conflict not in (ON_CONFLICT_REPLACE, ON_CONFLICT_REJECT):
            raise ValueError(f"on_conflict must be 'replace' or 'reject', got {on_conflict!r}")
        self._provider = provider
        self._temperature = temperature
        self._on_conflict = on_conflict
        self._active: dict[tuple[str, str], GenerationSession] = {}

    def start(self, request: SectionDraftRequest) -> GenerationSession:
        """Validate *request* and start streaming it.

        Raises:
            InvalidInput: The request is incomplete.
            GenerationInProgress: Policy is ``reject`` and the section is busy.
        """
        request.validate()
        existing = self._active.get(request.key)
        if existing is not None and not existing.state.terminal:
            if self._on_conflict == ON_CONFLICT_REJECT:
                raise GenerationInProgress(
                    "A draft is already being generated for this section",
                    context={"project_id": request.project_id, "section_id": request.section_id},
                )
            existing.cancel()

        session = GenerationSession(
            request, self._provider, self._temperature, on_finish=self._release
        )
        self._active[request.key] = session
        session.start()
        return session

    def active(self, project_id: str, section_id: str) -> GenerationSession | None:
        return self._active.get((project_id, section_id))

    def cancel(self, project_id: str, section_id: str) -> bool:
        session = self._active.get((project_id, section_id))
        return session.cancel() if session is not None else False

    def cancel_all(self) -> None:
        for session in list(self._active.values()):
            session.cancel()

    def _release(self, session: GenerationSession) -> None:
        if self._active.get(session.request.key) is session:
            del self._active[session.request.key]
