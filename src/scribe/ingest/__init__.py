"""Scribe ingest pipeline: extraction, chunking, rate-limited embedding."""

from scribe.ingest.chunker import TextChunker, TextSpan, chunk_text
from scribe.ingest.embedding_batcher import BatcherConfig, EmbeddingBatcher
from scribe.ingest.pipeline import IngestionPipeline, IngestionResult
from scribe.ingest.rate_limiter import RateLimiter

__all__ = [
    "BatcherConfig",
    "EmbeddingBatcher",
    "IngestionPipeline",
    "IngestionResult",
    "RateLimiter",
    "TextChunker",
    "TextSpan",
    "chunk_text",
]
