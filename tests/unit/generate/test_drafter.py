"""Tests for non-streaming drafting and citation marker parsing."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FakeCompletionProvider
from scribe.errors import AIServiceUnavailable, InvalidInput
from scribe.generate.drafter import draft_section, extract_citation_ids
from scribe.generate.prompts import EvidenceItem, SectionDraftRequest


def _request(**overrides) -> SectionDraftRequest:
    fields = dict(
        project_id="p1",
        section_id="intro",
        title="Introduction",
        objective="Motivate the thesis",
        chunks=[
            EvidenceItem(id="s1_chunk_0", source_id="s1", text="A."),
            EvidenceItem(id="s2_chunk_3", source_id="s2", text="B."),
        ],
    )
    fields.update(overrides)
    return SectionDraftRequest(**fields)


# ------------------------------------------------------------------
# extract_citation_ids
# ------------------------------------------------------------------


def test_extract_citation_ids_first_occurrence_order():
    text = "x [CITE:b] y [CITE:a] z [CITE:b]"
    assert extract_citation_ids(text) == ["b", "a"]


def test_extract_citation_ids_filters_unknown():
    text = "[CITE:s1_chunk_0] [CITE:made_up]"
    assert extract_citation_ids(text, {"s1_chunk_0"}) == ["s1_chunk_0"]


def test_extract_citation_ids_ignores_malformed_markers():
    assert extract_citation_ids("[CITE:] [CITE: spaced] [cite:x] CITE:y") == []


# ------------------------------------------------------------------
# draft_section
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_draft_section_returns_stripped_draft_and_known_citations():
    provider = FakeCompletionProvider(
        ["  Depth helps [CITE:s2_chunk_3]. ", "See [CITE:bogus] and [CITE:s1_chunk_0].\n"]
    )

    result = await draft_section(_request(), provider, temperature=0.3)

    assert result.draft == "Depth helps [CITE:s2_chunk_3]. See [CITE:bogus] and [CITE:s1_chunk_0]."
    assert result.used_chunk_ids == ["s2_chunk_3", "s1_chunk_0"]
    assert result.latency_ms >= 0
    assert provider.complete_calls[0]["temperature"] == 0.3
    assert provider.complete_calls[0]["max_tokens"] == 2048


@pytest.mark.asyncio
async def test_draft_section_to_dict_uses_camel_case():
    result = await draft_section(_request(), FakeCompletionProvider(["Text [CITE:s1_chunk_0]"]))
    data = result.to_dict()
    assert set(data) == {"draft", "usedChunkIds", "latencyMs"}
    assert data["usedChunkIds"] == ["s1_chunk_0"]


@pytest.mark.asyncio
async def test_draft_section_validates_before_calling_provider():
    provider = MagicMock()
    provider.complete = AsyncMock()
    with pytest.raises(InvalidInput):
        await draft_section(_request(chunks=[]), provider)
    provider.complete.assert_not_awaited()


@pytest.mark.asyncio
async def test_draft_section_wraps_provider_failure():
    provider = MagicMock()
    provider.complete = AsyncMock(side_effect=TimeoutError("upstream timeout"))

    with pytest.raises(AIServiceUnavailable) as info:
        await draft_section(_request(), provider)
    assert info.value.context == {"project_id": "p1", "section_id": "intro"}
    assert isinstance(info.value.__cause__, TimeoutError)
