"""Dense retriever: rank a project's chunks by cosine similarity to the query.

Projects whose chunks carry no embeddings at all ("cold" projects) fall back
to stored order with synthetic, strictly decreasing scores:

    score(i) = max(0.1, 1 - 0.1 * i)

The fallback never calls the embedding provider and marks the result
``degraded``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

import numpy as np

from scribe.db.models import RetrievalQuery, RetrievalResult, RetrievedChunk, SourceChunk
from scribe.db.store import EvidenceStore
from scribe.errors import (
    AIServiceUnavailable,
    InvalidInput,
    RetrievalFailed,
    ScribeError,
)
from scribe.ingest.embedding_batcher import EmbeddingBatcher

logger = logging.getLogger(__name__)

MAX_LIMIT = 100
_DEFAULT_CITATION = "Section"


@dataclass
class RetrieverConfig:
    """Configuration for the retriever.

    Attributes:
        store_retries: Extra attempts for a failed store read (2 → 3 attempts).
        backoff_base: Seconds before the first store retry; doubles per retry.
    """

    store_retries: int = 2
    backoff_base: float = 0.5


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors.

    Returns 0.0 when either vector has zero norm or the dimensions differ.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape or va.size == 0:
        return 0.0
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def citation_label(chunk: SourceChunk) -> str:
    meta = chunk.metadata or {}
    return meta.get("heading") or meta.get("source_title") or _DEFAULT_CITATION


def fallback_score(index: int) -> float:
    return max(0.1, 1.0 - 0.1 * index)


class Retriever:
    """Retrieve the evidence most relevant to a query within one project.

    Args:
        store: Evidence store holding the project's chunks.
        batcher: Embedding batcher used to embed the query.
        config: Retry settings.
        sleep: Coroutine used for retry backoff (injectable for tests).
    """

    def __init__(
        self,
        store: EvidenceStore,
        batcher: EmbeddingBatcher,
        config: RetrieverConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._batcher = batcher
        self._config = config or RetrieverConfig()
        self._sleep = sleep

    async def retrieve(self, query: RetrievalQuery) -> RetrievalResult:
        """Return up to ``query.limit`` chunks, best first.

        Raises:
            InvalidInput: Empty query or limit outside ``[1, 100]``.
            AIServiceUnavailable: The query could not be embedded.
            RetrievalFailed: Store reads kept failing, or anything unexpected.
        """
        _validate(query)
        ctx = {
            "query": query.query,
            "project_id": query.project_id,
            "section_id": query.section_id,
        }
        try:
            chunks = await self._load_chunks(query)
            embedded = [c for c in chunks if c.has_embedding]

            if not embedded:
                logger.info(
                    "No embedded chunks for project %s; using fallback order",
                    query.project_id,
                )
                return RetrievalResult(
                    query=query.query,
                    chunks=[
                        RetrievedChunk(chunk=c, score=fallback_score(i), citation=citation_label(c))
                        for i, c in enumerate(chunks[: query.limit])
                    ],
                    degraded=True,
                )

            try:
                query_vector = await self._batcher.embed_one(query.query)
            except AIServiceUnavailable as exc:
                raise AIServiceUnavailable(
                    f"Failed to embed query: {exc.message}", context=ctx, cause=exc
                ) from exc

            scored = [(c, cosine_similarity(query_vector, c.embedding)) for c in embedded]
            # sorted() is stable: equal scores keep stored order.
            scored = sorted(scored, key=lambda pair: pair[1], reverse=True)[: query.limit]
            logger.debug(
                "Retrieved %d of %d embedded chunk(s) for %r",
                len(scored),
                len(embedded),
                query.query,
            )
            return RetrievalResult(
                query=query.query,
                chunks=[
                    RetrievedChunk(
                        chunk=c,
                        score=min(1.0, max(0.0, s)),
                        citation=citation_label(c),
                    )
                    for c, s in scored
                ],
            )
        except ScribeError as exc:
            for key, value in ctx.items():
                exc.context.setdefault(key, value)
            raise
        except Exception as exc:
            logger.error("Retrieval failed for %r: %s", query.query, exc)
            raise RetrievalFailed(
                f"Failed to retrieve relevant chunks: {exc}",
                query=query.query,
                context=ctx,
                cause=exc,
            ) from exc

    async def _load_chunks(self, query: RetrievalQuery) -> list[SourceChunk]:
        attempts = self._config.store_retries + 1
        last_exc: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                return await self._store.get_chunks_for_project(query.project_id)
            except Exception as exc:
                last_exc = exc
                logger.warning(
                    "Chunk load failed (attempt %d/%d): %s", attempt, attempts, exc
                )
                if attempt < attempts:
                    await self._sleep(self._config.backoff_base * 2 ** (attempt - 1))

        raise RetrievalFailed(
            f"Failed to load chunks after {attempts} attempt(s): {last_exc}",
            query=query.query,
            context={"project_id": query.project_id, "attempts": attempts},
            cause=last_exc,
        )


def _validate(query: RetrievalQuery) -> None:
    if not query.query or not query.query.strip():
        raise InvalidInput(
            "Query must not be empty",
            context={"query": query.query, "project_id": query.project_id},
        )
    if not 1 <= query.limit <= MAX_LIMIT:
        raise InvalidInput(
            f"limit must be between 1 and {MAX_LIMIT}, got {query.limit}",
            context={"query": query.query, "limit": query.limit},
        )
