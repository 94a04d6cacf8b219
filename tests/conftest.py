"""Shared pytest fixtures."""

from __future__ import annotations

import asyncio

import pytest

from scribe.db.connection import Database
from scribe.db.schema import initialize
from scribe.db.store import SqliteEvidenceStore
from scribe.services import build_services


@pytest.fixture(autouse=True)
def _clean_scribe_env(monkeypatch):
    """Keep SCRIBE_* overrides from the developer's shell out of tests."""
    for var in ("SCRIBE_GENERATION_MODEL", "SCRIBE_EMBEDDING_MODEL", "SCRIBE_DB"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / ".scribe.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def store(tmp_db):
    """Async evidence store over the temporary database."""
    return SqliteEvidenceStore(tmp_db)


# ---------------------------------------------------------------------------
# Fake providers
# ---------------------------------------------------------------------------


class FakeEmbeddingProvider:
    """Deterministic embedder: looks texts up in *vectors*, else returns *default*."""

    def __init__(self, vectors: dict[str, list[float]] | None = None, default=None) -> None:
        self.vectors = vectors or {}
        self.default = default if default is not None else [1.0, 0.0, 0.0]
        self.calls: list[list[str]] = []

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        return [list(self.vectors.get(t, self.default)) for t in texts]


class FakeCompletionProvider:
    """Streams *tokens*; optionally fails after *fail_after* tokens or blocks on *gate*."""

    def __init__(
        self,
        tokens: list[str] | None = None,
        fail_after: int | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.tokens = tokens if tokens is not None else ["Hello", " ", "world"]
        self.fail_after = fail_after
        self.gate = gate
        self.closed = False
        self.stream_calls: list[dict] = []
        self.complete_calls: list[dict] = []

    async def complete(self, messages, max_tokens=2048, temperature=0.7) -> str:
        self.complete_calls.append(
            {"messages": messages, "max_tokens": max_tokens, "temperature": temperature}
        )
        return "".join(self.tokens)

    async def stream(self, messages, max_tokens=2048, temperature=0.7):
        self.stream_calls.append(
            {"messages": messages, "max_tokens": max_tokens, "temperature": temperature}
        )
        try:
            for i, token in enumerate(self.tokens):
                if self.fail_after is not None and i >= self.fail_after:
                    raise RuntimeError("provider dropped the connection")
                if self.gate is not None and i > 0:
                    await self.gate.wait()
                await asyncio.sleep(0)
                yield token
        finally:
            self.closed = True


@pytest.fixture
def fake_embedder():
    return FakeEmbeddingProvider()


@pytest.fixture
def fake_completion():
    return FakeCompletionProvider()


# ---------------------------------------------------------------------------
# CLI helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_project(tmp_path, monkeypatch):
    """Run CLI commands from tmp_path with an isolated global config and a test key."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("scribe.config._GLOBAL_CONFIG_PATH", tmp_path / "global" / "config.yaml")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    return tmp_path


def use_fake_providers(monkeypatch, module: str, completion=None, embedder=None):
    """Make ``scribe.cli.<module>.build_services`` wire in fake providers.

    Returns the (embedder, completion) pair so tests can inspect calls.
    """
    embedder = embedder or FakeEmbeddingProvider()
    completion = completion or FakeCompletionProvider()

    def build(cfg, conn=None, **kwargs):
        return build_services(
            cfg, conn, embedding_provider=embedder, completion_provider=completion
        )

    monkeypatch.setattr(f"scribe.cli.{module}.build_services", build)
    return embedder, completion
