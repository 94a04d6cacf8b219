"""Wiring: build the pipeline's collaborators from a ScribeConfig."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass

from scribe.config import ScribeConfig
from scribe.db.store import EvidenceStore, SqliteEvidenceStore
from scribe.drafts.session import DraftSession
from scribe.generate.streaming import StreamingGenerator
from scribe.ingest.chunker import TextChunker
from scribe.ingest.embedding_batcher import BatcherConfig, EmbeddingBatcher
from scribe.ingest.pipeline import IngestionPipeline
from scribe.ingest.rate_limiter import RateLimiter
from scribe.rag.llm_client import (
    CompletionProvider,
    EmbeddingProvider,
    LiteLLMCompletionProvider,
    LiteLLMEmbeddingProvider,
)
from scribe.rag.retriever import Retriever, RetrieverConfig


@dataclass
class Services:
    """Everything the CLI and HTTP layer need, sharing one store and limiter."""

    config: ScribeConfig
    store: EvidenceStore
    batcher: EmbeddingBatcher
    pipeline: IngestionPipeline
    retriever: Retriever
    completion: CompletionProvider
    generator: StreamingGenerator

    def draft_session(self, project_id: str, section_id: str, author: str | None = None) -> DraftSession:
        return DraftSession(
            self.store,
            project_id,
            section_id,
            autosave_delay=self.config.autosave.delay_seconds,
            author=author,
        )


def build_services(
    cfg: ScribeConfig,
    conn: sqlite3.Connection | None = None,
    *,
    store: EvidenceStore | None = None,
    embedding_provider: EmbeddingProvider | None = None,
    completion_provider: CompletionProvider | None = None,
) -> Services:
    """Assemble services from *cfg*.

    Either *conn* (an initialised project database) or *store* must be given.
    Providers default to the LiteLLM implementations for the configured models.
    """
    if store is None:
        if conn is None:
            raise ValueError("build_services() needs a connection or a store")
        store = SqliteEvidenceStore(conn, batch_limit=cfg.store.batch_limit)

    embedder = embedding_provider or LiteLLMEmbeddingProvider(cfg.embedding.model)
    completion = completion_provider or LiteLLMCompletionProvider(cfg.generation.model)

    batcher = EmbeddingBatcher(
        embedder,
        RateLimiter.from_quota(cfg.embedding.requests_per_minute),
        BatcherConfig(
            batch_size=cfg.embedding.batch_size,
            max_attempts=cfg.embedding.max_attempts,
        ),
    )
    chunker = TextChunker(cfg.chunker.max_tokens, cfg.chunker.overlap_tokens)
    return Services(
        config=cfg,
        store=store,
        batcher=batcher,
        pipeline=IngestionPipeline(store, chunker, batcher),
        retriever=Retriever(
            store, batcher, RetrieverConfig(store_retries=cfg.retrieval.store_retries)
        ),
        completion=completion,
        generator=StreamingGenerator(
            completion,
            temperature=cfg.generation.temperature,
            on_conflict=cfg.generation.on_conflict,
        ),
    )
