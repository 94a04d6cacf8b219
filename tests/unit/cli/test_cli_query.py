"""Tests for scribe query."""

from __future__ import annotations

from pathlib import Path

from typer.testing import CliRunner

from conftest import FakeEmbeddingProvider, use_fake_providers
from scribe.cli import query as query_mod
from scribe.cli.main import app

runner = CliRunner()


def _ingest(project_dir: Path, monkeypatch, text: str, name: str = "notes.txt") -> None:
    use_fake_providers(monkeypatch, "ingest")
    (project_dir / name).write_text(text, encoding="utf-8")
    result = runner.invoke(app, ["ingest", "--source", name])
    assert result.exit_code == 0, result.output


def test_query_without_db_exits_1(cli_project: Path) -> None:
    result = runner.invoke(app, ["query", "anything"])
    assert result.exit_code == 1
    assert "No database found" in result.output
    assert "scribe init" in result.output


def test_query_shows_ranked_evidence(cli_project: Path, monkeypatch) -> None:
    _ingest(cli_project, monkeypatch, "Gradient descent trains networks.")
    embedder, _ = use_fake_providers(monkeypatch, "query")
    monkeypatch.setattr(query_mod.console, "width", 200)

    result = runner.invoke(app, ["query", "How do networks train?"])

    assert result.exit_code == 0, result.output
    assert "Evidence for: How do networks train?" in result.output
    assert "1.000" in result.output
    assert "Gradient descent trains networks." in result.output
    assert embedder.calls == [["How do networks train?"]]


def test_query_unknown_project_prints_hint(cli_project: Path, monkeypatch) -> None:
    _ingest(cli_project, monkeypatch, "Some text.")
    use_fake_providers(monkeypatch, "query")

    result = runner.invoke(app, ["query", "anything", "--project", "elsewhere"])

    assert result.exit_code == 0, result.output
    assert "No evidence stored for project 'elsewhere'" in result.output


def test_query_limit_out_of_range_exits_1(cli_project: Path, monkeypatch) -> None:
    _ingest(cli_project, monkeypatch, "Some text.")
    use_fake_providers(monkeypatch, "query")

    result = runner.invoke(app, ["query", "anything", "--limit", "0"])

    assert result.exit_code == 1
    assert "Error" in result.output


def test_query_embedding_outage_exits_1(cli_project: Path, monkeypatch) -> None:
    _ingest(cli_project, monkeypatch, "Some text.")

    class Down(FakeEmbeddingProvider):
        async def embed(self, texts):
            raise RuntimeError("503")

    use_fake_providers(monkeypatch, "query", embedder=Down())
    (cli_project / "scribe.yaml").write_text("embedding:\n  max_attempts: 1\n")

    result = runner.invoke(app, ["query", "anything"])

    assert result.exit_code == 1
    assert "provider is unavailable" in result.output
