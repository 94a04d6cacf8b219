"""Domain models for the Scribe database layer."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

EMPTY_DRAFT_HTML = "<p></p>"
INITIAL_DRAFT_VERSION = 1


def chunk_id(source_id: str, position: int) -> str:
    """Deterministic chunk id: re-ingesting a source rewrites the same rows."""
    return f"{source_id}_chunk_{position}"


# ---------------------------------------------------------------------------
# Evidence
# ---------------------------------------------------------------------------


@dataclass
class Source:
    id: str
    project_id: str
    kind: str
    title: str
    path: str = ""
    author: str | None = None
    url: str | None = None
    year: int | None = None
    content_hash: str = ""
    created_at: str | None = None


@dataclass(frozen=True)
class SourceChunk:
    """One immutable piece of a source's text, optionally embedded."""

    id: str
    source_id: str
    project_id: str
    text: str
    position: int
    token_count: int
    start_offset: int = 0
    end_offset: int = 0
    embedding: list[float] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str | None = None

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)


# ---------------------------------------------------------------------------
# Retrieval (transient, never stored)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetrievalQuery:
    project_id: str
    section_id: str
    query: str
    limit: int = 8


@dataclass(frozen=True)
class RetrievedChunk:
    chunk: SourceChunk
    score: float
    citation: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.chunk.id,
            "sourceId": self.chunk.source_id,
            "text": self.chunk.text,
            "score": self.score,
            "citation": self.citation,
            "metadata": self.chunk.metadata,
        }


@dataclass(frozen=True)
class RetrievalResult:
    query: str
    chunks: list[RetrievedChunk]
    degraded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "chunks": [c.to_dict() for c in self.chunks],
            "degraded": self.degraded,
        }


# ---------------------------------------------------------------------------
# Drafts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DraftCitation:
    placeholder: str
    source_id: str
    source_title: str = ""
    snippet: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DraftCitation:
        return cls(
            placeholder=data["placeholder"],
            source_id=data["source_id"],
            source_title=data.get("source_title", ""),
            snippet=data.get("snippet"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class DraftAnnotation:
    id: str
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    created_by: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DraftAnnotation:
        return cls(
            id=data["id"],
            type=data["type"],
            payload=dict(data.get("payload") or {}),
            created_at=data.get("created_at", ""),
            created_by=data.get("created_by"),
        )


@dataclass(frozen=True)
class DraftContent:
    """Structural snapshot of editor state used for dirty detection.

    Two contents are equal when html, citations and annotations are equal
    field by field.
    """

    html: str = EMPTY_DRAFT_HTML
    citations: tuple[DraftCitation, ...] = ()
    annotations: tuple[DraftAnnotation, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "html": self.html,
            "citations": [asdict(c) for c in self.citations],
            "annotations": [asdict(a) for a in self.annotations],
        }


@dataclass(frozen=True)
class DraftSnapshot:
    project_id: str
    section_id: str
    content: DraftContent
    version: int = INITIAL_DRAFT_VERSION
    created_at: str | None = None
    updated_at: str | None = None
    last_saved_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "projectId": self.project_id,
            "sectionId": self.section_id,
            **self.content.to_dict(),
            "version": self.version,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "lastSavedBy": self.last_saved_by,
        }


@dataclass(frozen=True)
class DraftVersion:
    id: str
    html: str
    created_at: str
    created_by: str | None
    summary: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "html": self.html,
            "createdAt": self.created_at,
            "createdBy": self.created_by,
            "summary": self.summary,
        }
