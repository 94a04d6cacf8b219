"""Error taxonomy for the drafting pipeline.

Every error carries a ``context`` dict with the identifiers needed to
diagnose it (project, section, query, batch range ...). The core never
builds user-facing text; callers (HTTP layer, CLI) map errors to messages.

    InvalidInput          bad query / limit / request     not retried   400
    AIServiceUnavailable  embedding / completion failure  retried       503
    RetrievalFailed       unexpected retrieval failure    --            502
    StoreWriteFailed      ingestion / draft write failed  retryable     500
    VersionConflict       stale expected draft version    --            409
    GenerationInProgress  second stream for one section   --            409
    NotFound              unknown draft version / source  --            404
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


class ScribeError(Exception):
    """Base class for all pipeline errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = dict(context or {})
        self.timestamp = datetime.now(timezone.utc).isoformat()
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        """Serialise for logging and HTTP error bodies."""
        data: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
            "timestamp": self.timestamp,
        }
        if self.__cause__ is not None:
            data["cause"] = f"{type(self.__cause__).__name__}: {self.__cause__}"
        return data


class InvalidInput(ScribeError):
    code = "INVALID_INPUT"
    status_code = 400


class AIServiceUnavailable(ScribeError):
    code = "AI_SERVICE_UNAVAILABLE"
    status_code = 503
    retryable = True


class EmbeddingBatchError(AIServiceUnavailable):
    """An embedding batch failed after all attempts.

    ``batch_start``/``batch_end`` are the half-open index range of the
    input texts covered by the failed batch.
    """

    code = "EMBEDDING_BATCH_FAILED"

    def __init__(
        self,
        message: str,
        batch_start: int,
        batch_end: int,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        ctx = dict(context or {})
        ctx.update(batch_start=batch_start, batch_end=batch_end)
        super().__init__(message, ctx, cause)
        self.batch_start = batch_start
        self.batch_end = batch_end


class RetrievalFailed(ScribeError):
    code = "RETRIEVAL_FAILED"
    status_code = 502

    def __init__(
        self,
        message: str,
        query: str,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        ctx = dict(context or {})
        ctx["query"] = query
        super().__init__(message, ctx, cause)
        self.query = query


class StoreWriteFailed(ScribeError):
    code = "STORE_WRITE_FAILED"
    status_code = 500
    retryable = True


class VersionConflict(StoreWriteFailed):
    """The stored draft version moved on since the caller last read it."""

    code = "VERSION_CONFLICT"
    status_code = 409
    retryable = False

    def __init__(
        self,
        expected: int,
        actual: int,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = dict(context or {})
        ctx.update(expected_version=expected, actual_version=actual)
        super().__init__(
            f"Draft version conflict: expected {expected}, stored {actual}. Re-read before saving.",
            ctx,
        )
        self.expected = expected
        self.actual = actual


class GenerationInProgress(ScribeError):
    code = "GENERATION_IN_PROGRESS"
    status_code = 409


class NotFound(ScribeError):
    code = "NOT_FOUND"
    status_code = 404
