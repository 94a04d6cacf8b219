"""HTTP boundary: FastAPI routes over the drafting pipeline.

Errors from the core are mapped to status codes by ``ScribeError.status_code``
and returned as ``{"error": {...}}`` bodies. The streaming route emits
Server-Sent Events, one ``data: {json}`` frame per event.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Literal

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from scribe.db.models import (
    DraftAnnotation,
    DraftCitation,
    DraftContent,
    RetrievalQuery,
)
from scribe.errors import NotFound, ScribeError
from scribe.generate.drafter import draft_section
from scribe.generate.prompts import (
    DEFAULT_MAX_TOKENS,
    EvidenceItem,
    SectionDraftRequest,
    ThesisSummary,
)
from scribe.generate.streaming import ErrorEvent, GenerationSession, GenerationState
from scribe.services import Services

logger = logging.getLogger(__name__)

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RetrievalQueryBody(_Body):
    project_id: str = Field(..., alias="projectId")
    section_id: str = Field("", alias="sectionId")
    query: str
    limit: int = 8


class SectionBody(_Body):
    title: str = ""
    objective: str = ""


class ThesisSummaryBody(_Body):
    scope: str | None = None
    core_argument: str | None = Field(None, alias="coreArgument")
    tone_guidelines: str | None = Field(None, alias="toneGuidelines")


class ChunkBody(_Body):
    id: str
    source_id: str = Field(..., alias="sourceId")
    text: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class SectionDraftBody(_Body):
    project_id: str = Field(..., alias="projectId")
    section_id: str = Field(..., alias="sectionId")
    section: SectionBody
    thesis_summary: ThesisSummaryBody | None = Field(None, alias="thesisSummary")
    citation_style: str | None = Field(None, alias="citationStyle")
    chunks: list[ChunkBody] = Field(default_factory=list)
    max_tokens: int = Field(DEFAULT_MAX_TOKENS, alias="maxTokens")

    def to_request(self) -> SectionDraftRequest:
        summary = self.thesis_summary or ThesisSummaryBody()
        return SectionDraftRequest(
            project_id=self.project_id,
            section_id=self.section_id,
            title=self.section.title,
            objective=self.section.objective,
            chunks=[
                EvidenceItem(id=c.id, source_id=c.source_id, text=c.text, metadata=c.metadata)
                for c in self.chunks
            ],
            thesis_summary=ThesisSummary(
                scope=summary.scope,
                core_argument=summary.core_argument,
                tone_guidelines=summary.tone_guidelines,
            ),
            citation_style=self.citation_style,
            max_tokens=self.max_tokens,
        )


class CitationBody(_Body):
    placeholder: str
    source_id: str = Field(..., alias="sourceId")
    source_title: str = Field("", alias="sourceTitle")
    snippet: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class AnnotationBody(_Body):
    id: str
    type: Literal["COMMENT", "NOTE"]
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: str = Field("", alias="createdAt")
    created_by: str | None = Field(None, alias="createdBy")


class DraftSaveBody(_Body):
    html: str
    citations: list[CitationBody] = Field(default_factory=list)
    annotations: list[AnnotationBody] = Field(default_factory=list)
    expected_version: int = Field(..., alias="expectedVersion")
    last_saved_by: str | None = Field(None, alias="lastSavedBy")

    def to_content(self) -> DraftContent:
        return DraftContent(
            html=self.html,
            citations=tuple(
                DraftCitation(
                    placeholder=c.placeholder,
                    source_id=c.source_id,
                    source_title=c.source_title,
                    snippet=c.snippet,
                    metadata=c.metadata,
                )
                for c in self.citations
            ),
            annotations=tuple(
                DraftAnnotation(
                    id=a.id,
                    type=a.type,
                    payload=a.payload,
                    created_at=a.created_at,
                    created_by=a.created_by,
                )
                for a in self.annotations
            ),
        )


class TextSourceBody(_Body):
    title: str
    text: str
    author: str | None = None
    url: str | None = None
    year: int | None = None


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def _services(request: Request) -> Services:
    return request.app.state.services


async def _sse(session: GenerationSession) -> AsyncIterator[str]:
    try:
        async for event in session.events():
            yield f"data: {json.dumps(event.to_dict())}\n\n"
        if session.state is GenerationState.CANCELLED:
            # Replaced by a newer generation for the same section.
            cancelled = ErrorEvent("Generation cancelled")
            yield f"data: {json.dumps(cancelled.to_dict())}\n\n"
    finally:
        # Client went away (or the stream ended): stop the provider stream.
        session.cancel()


def create_app(services: Services) -> FastAPI:
    """Build the FastAPI application around *services*."""
    app = FastAPI(title="Scribe", version="0.1.0")
    app.state.services = services

    @app.exception_handler(ScribeError)
    async def _scribe_error(request: Request, exc: ScribeError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.to_dict())
        else:
            logger.info("%s %s rejected: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/retrieval/query")
    async def retrieval_query(
        body: RetrievalQueryBody, svc: Services = Depends(_services)
    ) -> dict[str, Any]:
        result = await svc.retriever.retrieve(
            RetrievalQuery(
                project_id=body.project_id,
                section_id=body.section_id,
                query=body.query,
                limit=body.limit,
            )
        )
        return result.to_dict()

    @app.post("/drafting/section/stream")
    async def drafting_stream(
        body: SectionDraftBody, svc: Services = Depends(_services)
    ) -> StreamingResponse:
        session = svc.generator.start(body.to_request())
        return StreamingResponse(
            _sse(session), media_type="text/event-stream", headers=_SSE_HEADERS
        )

    @app.post("/drafting/section")
    async def drafting_section(
        body: SectionDraftBody, svc: Services = Depends(_services)
    ) -> dict[str, Any]:
        result = await draft_section(
            body.to_request(),
            svc.completion,
            temperature=svc.config.generation.temperature,
        )
        return result.to_dict()

    @app.get("/projects/{project_id}/drafts/{section_id}")
    async def get_draft(
        project_id: str, section_id: str, svc: Services = Depends(_services)
    ) -> dict[str, Any]:
        snapshot = await svc.store.get_draft(project_id, section_id)
        if snapshot is None:
            raise NotFound(
                "Draft not found",
                context={"project_id": project_id, "section_id": section_id},
            )
        return snapshot.to_dict()

    @app.put("/projects/{project_id}/drafts/{section_id}")
    async def save_draft(
        project_id: str,
        section_id: str,
        body: DraftSaveBody,
        svc: Services = Depends(_services),
    ) -> dict[str, Any]:
        snapshot = await svc.store.save_draft(
            project_id,
            section_id,
            body.to_content(),
            expected_version=body.expected_version,
            saved_by=body.last_saved_by,
        )
        return snapshot.to_dict()

    @app.get("/projects/{project_id}/drafts/{section_id}/versions")
    async def list_versions(
        project_id: str, section_id: str, svc: Services = Depends(_services)
    ) -> dict[str, Any]:
        versions = await svc.store.list_draft_versions(project_id, section_id)
        return {"versions": [v.to_dict() for v in versions]}

    @app.post("/projects/{project_id}/drafts/{section_id}/versions/{version_id}/restore")
    async def restore_version(
        project_id: str,
        section_id: str,
        version_id: str,
        svc: Services = Depends(_services),
    ) -> dict[str, Any]:
        snapshot = await svc.store.restore_draft_version(project_id, section_id, version_id)
        return snapshot.to_dict()

    @app.post("/projects/{project_id}/sources/text", status_code=201)
    async def ingest_text(
        project_id: str, body: TextSourceBody, svc: Services = Depends(_services)
    ) -> dict[str, Any]:
        result = await svc.pipeline.ingest_text(
            project_id,
            body.title,
            body.text,
            author=body.author,
            url=body.url,
            year=body.year,
        )
        return {
            "sourceId": result.source_id,
            "chunkCount": result.chunk_count,
            "summary": {"abstract": result.abstract, "wordCount": result.word_count},
        }

    return app
