"""Token-bounded text chunker with sentence-boundary snapping.

Token counting uses a 4-chars-per-token approximation; no external
tokenizer dependency is required.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from scribe.db.models import SourceChunk, chunk_id

CHARS_PER_TOKEN = 4
# A boundary is only used when it keeps more than this share of the window.
_SNAP_THRESHOLD = 0.7
_BOUNDARY_CHARS = ".!?\n"


@dataclass(frozen=True)
class TextSpan:
    """One window of the input text.

    ``text`` is stripped; ``start_offset``/``end_offset`` delimit the
    untrimmed window in the original string (half-open).
    """

    text: str
    token_count: int
    start_offset: int
    end_offset: int


def count_tokens(text: str) -> int:
    """Approximate token count: 4 characters ≈ 1 token, rounded up."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _last_boundary(window: str) -> int:
    return max(window.rfind(ch) for ch in _BOUNDARY_CHARS)


def chunk_text(text: str, max_tokens: int = 800, overlap_tokens: int = 100) -> list[TextSpan]:
    """Split *text* into overlapping windows of at most *max_tokens* tokens.

    When a window ends before the end of the text, it is trimmed back to the
    last sentence terminator or newline, provided that boundary lies past 70%
    of the window. Each following window starts ``overlap_tokens`` before the
    previous window's end. Walking stops once a window reaches the end of the
    text, or when the overlap would keep the next window from moving forward.

    Args:
        text: Raw extracted text.
        max_tokens: Window size in approximate tokens.
        overlap_tokens: Overlap between consecutive windows, in ``[0, max_tokens)``.

    Returns:
        Ordered spans; empty for empty or whitespace-only input.

    Raises:
        ValueError: If *max_tokens* or *overlap_tokens* is out of range.
    """
    if max_tokens < 1:
        raise ValueError("max_tokens must be >= 1")
    if not 0 <= overlap_tokens < max_tokens:
        raise ValueError("overlap_tokens must be in [0, max_tokens)")
    if not text or not text.strip():
        return []

    max_chars = max_tokens * CHARS_PER_TOKEN
    overlap_chars = overlap_tokens * CHARS_PER_TOKEN
    length = len(text)

    spans: list[TextSpan] = []
    start = 0
    while start < length:
        end = min(start + max_chars, length)
        window = text[start:end]

        if end < length:
            boundary = _last_boundary(window)
            if boundary > len(window) * _SNAP_THRESHOLD:
                window = window[: boundary + 1]
                end = start + len(window)

        stripped = window.strip()
        if stripped:
            spans.append(
                TextSpan(
                    text=stripped,
                    token_count=count_tokens(window),
                    start_offset=start,
                    end_offset=end,
                )
            )

        if end >= length:
            break
        next_start = start + len(window) - overlap_chars
        if next_start <= start:
            break
        start = next_start

    return spans


class TextChunker:
    """Turns a source's text into ``SourceChunk`` records.

    Args:
        max_tokens: Window size in approximate tokens (default 800).
        overlap_tokens: Overlap between consecutive windows (default 100).
    """

    def __init__(self, max_tokens: int = 800, overlap_tokens: int = 100) -> None:
        if max_tokens < 1:
            raise ValueError("max_tokens must be >= 1")
        if not 0 <= overlap_tokens < max_tokens:
            raise ValueError("overlap_tokens must be in [0, max_tokens)")
        self.max_tokens = max_tokens
        self.overlap_tokens = overlap_tokens

    def chunk(
        self,
        source_id: str,
        project_id: str,
        text: str,
        metadata: dict[str, Any] | None = None,
    ) -> list[SourceChunk]:
        """Split *text* into chunks with deterministic ids and positions.

        *metadata* is copied onto every chunk.
        """
        spans = chunk_text(text, self.max_tokens, self.overlap_tokens)
        return [
            SourceChunk(
                id=chunk_id(source_id, i),
                source_id=source_id,
                project_id=project_id,
                text=span.text,
                position=i,
                token_count=span.token_count,
                start_offset=span.start_offset,
                end_offset=span.end_offset,
                metadata=dict(metadata or {}),
            )
            for i, span in enumerate(spans)
        ]
