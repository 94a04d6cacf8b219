"""Embedding batcher: groups texts into provider calls under a shared rate limit.

Each batch is one provider call. A batch is attempted up to ``max_attempts``
times with exponential backoff; when it still fails, the whole call fails with
:class:`~scribe.errors.EmbeddingBatchError` naming the batch's index range.
Earlier successful batches are discarded, since callers re-run ingestion as a
whole (chunk ids are deterministic, so that is idempotent).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

from scribe.errors import EmbeddingBatchError
from scribe.ingest.rate_limiter import RateLimiter
from scribe.rag.llm_client import EmbeddingProvider

logger = logging.getLogger(__name__)


@dataclass
class BatcherConfig:
    """Tunables for :class:`EmbeddingBatcher`."""

    batch_size: int = 50
    max_attempts: int = 3
    backoff_base: float = 1.0  # seconds; doubles per attempt
    backoff_max: float = 30.0


class EmbeddingBatcher:
    """Embed many texts through one provider, preserving input order.

    Args:
        provider: Object with ``async embed(texts) -> list[list[float]]``.
        rate_limiter: Limiter shared by all callers of *provider*.
        config: Batch size and retry settings.
        sleep: Coroutine used for backoff waits (injectable for tests).
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        rate_limiter: RateLimiter,
        config: BatcherConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._limiter = rate_limiter
        self._config = config or BatcherConfig()
        if self._config.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self._config.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._sleep = sleep

    @property
    def config(self) -> BatcherConfig:
        return self._config

    async def embed_all(self, texts: Sequence[str]) -> list[list[float]]:
        """Return one vector per text, in input order.

        Raises:
            EmbeddingBatchError: A batch failed on every attempt.
        """
        vectors: list[list[float]] = []
        size = self._config.batch_size
        for start in range(0, len(texts), size):
            batch = list(texts[start : start + size])
            vectors.extend(await self._embed_batch(batch, start))
        return vectors

    async def embed_one(self, text: str) -> list[float]:
        return (await self.embed_all([text]))[0]

    async def _embed_batch(self, batch: list[str], start: int) -> list[list[float]]:
        end = start + len(batch)
        attempts = self._config.max_attempts
        last_exc: Exception | None = None

        for attempt in range(1, attempts + 1):
            await self._limiter.acquire()
            try:
                vectors = await self._provider.embed(batch)
                if len(vectors) != len(batch):
                    raise ValueError(
                        f"provider returned {len(vectors)} vectors for {len(batch)} texts"
                    )
                return vectors
            except Exception as exc:
                last_exc = exc
                logger.warning(
                    "Embedding batch %d-%d failed (attempt %d/%d): %s",
                    start,
                    end,
                    attempt,
                    attempts,
                    exc,
                )
                if attempt < attempts:
                    delay = min(
                        self._config.backoff_base * 2 ** (attempt - 1),
                        self._config.backoff_max,
                    )
                    await self._sleep(delay)

        raise EmbeddingBatchError(
            f"Embedding batch {start}-{end} failed after {attempts} attempt(s): {last_exc}",
            batch_start=start,
            batch_end=end,
            context={"attempts": attempts},
            cause=last_exc,
        )
