"""Ingestion pipeline: document → chunks → embeddings → evidence store."""

from __future__ import annotations

import dataclasses
import hashlib
import logging
from dataclasses import dataclass
from typing import Callable, Iterable

from scribe.db.models import Source
from scribe.db.store import EvidenceStore
from scribe.errors import ScribeError, StoreWriteFailed
from scribe.ingest.chunker import TextChunker
from scribe.ingest.embedding_batcher import EmbeddingBatcher
from scribe.ingest.extract import ExtractedDocument

logger = logging.getLogger(__name__)

_ABSTRACT_CHARS = 500


@dataclass(frozen=True)
class IngestionResult:
    source_id: str
    chunk_count: int
    abstract: str
    word_count: int


def source_id_for(project_id: str, locator: str) -> str:
    """Stable source id, so re-ingesting the same source rewrites the same chunks."""
    digest = hashlib.sha256(f"{project_id}\x00{locator}".encode("utf-8")).hexdigest()
    return f"src_{digest[:16]}"


def _abstract(text: str) -> str:
    return text[:_ABSTRACT_CHARS] + ("..." if len(text) > _ABSTRACT_CHARS else "")


class IngestionPipeline:
    """Chunk, embed and store documents for a project.

    Args:
        store: Evidence store receiving sources and chunks.
        chunker: Configured text chunker.
        batcher: Embedding batcher (rate limited, bounded retries).
    """

    def __init__(
        self, store: EvidenceStore, chunker: TextChunker, batcher: EmbeddingBatcher
    ) -> None:
        self._store = store
        self._chunker = chunker
        self._batcher = batcher

    async def ingest_document(self, project_id: str, doc: ExtractedDocument) -> IngestionResult:
        """Ingest one extracted document.

        Embeddings are computed before anything is written, so an embedding
        failure leaves the store untouched.

        Raises:
            AIServiceUnavailable: Embedding failed (``EmbeddingBatchError``).
            StoreWriteFailed: Writing the source or its chunks failed.
        """
        source_id = source_id_for(project_id, doc.locator)
        logger.info(
            "Starting content ingestion: project=%s kind=%s title=%r",
            project_id,
            doc.kind,
            doc.title,
        )
        try:
            chunks = self._chunker.chunk(
                source_id,
                project_id,
                doc.text,
                metadata=_chunk_metadata(doc),
            )
            logger.info("Text chunked: source=%s chunks=%d", source_id, len(chunks))

            vectors = await self._batcher.embed_all([c.text for c in chunks])
            embedded = [
                dataclasses.replace(c, embedding=v) for c, v in zip(chunks, vectors)
            ]

            await self._store.add_source(
                Source(
                    id=source_id,
                    project_id=project_id,
                    kind=doc.kind,
                    title=doc.title,
                    path=doc.path,
                    author=doc.author,
                    url=doc.url,
                    year=doc.year,
                    content_hash=hashlib.sha256(doc.text.encode("utf-8")).hexdigest(),
                )
            )
            await self._store.put_chunks(embedded)
            # Same-id rows were overwritten; drop the tail of a longer earlier version.
            await self._store.delete_stale_chunks(source_id, keep=len(embedded))
        except ScribeError as exc:
            exc.context.setdefault("project_id", project_id)
            exc.context.setdefault("source_id", source_id)
            logger.error("Content ingestion failed: %s", exc)
            raise
        except Exception as exc:
            logger.error("Content ingestion failed: %s", exc)
            raise StoreWriteFailed(
                f"Failed to ingest content: {exc}",
                context={"project_id": project_id, "source_id": source_id, "kind": doc.kind},
                cause=exc,
            ) from exc

        logger.info("Content ingestion completed: source=%s chunks=%d", source_id, len(embedded))
        return IngestionResult(
            source_id=source_id,
            chunk_count=len(embedded),
            abstract=_abstract(doc.text),
            word_count=doc.word_count,
        )

    async def ingest_text(
        self,
        project_id: str,
        title: str,
        text: str,
        *,
        author: str | None = None,
        url: str | None = None,
        year: int | None = None,
    ) -> IngestionResult:
        """Ingest raw text supplied by the caller."""
        doc = ExtractedDocument(
            kind="text", title=title, text=text, author=author, url=url, year=year
        )
        return await self.ingest_document(project_id, doc)

    async def ingest_many(
        self,
        project_id: str,
        docs: Iterable[ExtractedDocument],
        on_progress: Callable[[int, int], None] | None = None,
    ) -> list[IngestionResult]:
        """Ingest several documents, continuing past individual failures.

        Failures are logged; only successful results are returned.
        *on_progress* receives ``(completed, total)`` after each success.
        """
        items = list(docs)
        logger.info("Batch ingesting %d document(s) into %s", len(items), project_id)

        results: list[IngestionResult] = []
        for doc in items:
            try:
                results.append(await self.ingest_document(project_id, doc))
            except ScribeError as exc:
                logger.error("Failed to ingest %r: %s", doc.title, exc)
                continue
            if on_progress is not None:
                on_progress(len(results), len(items))

        logger.info(
            "Batch ingestion completed: %d/%d succeeded", len(results), len(items)
        )
        return results


def _chunk_metadata(doc: ExtractedDocument) -> dict:
    meta: dict = {"source_title": doc.title, "kind": doc.kind}
    if doc.author:
        meta["author"] = doc.author
    if doc.year:
        meta["year"] = doc.year
    if doc.url:
        meta["url"] = doc.url
    return meta
