"""Non-streaming section drafting and citation marker parsing."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass

from scribe.errors import AIServiceUnavailable
from scribe.generate.prompts import SectionDraftRequest, build_messages
from scribe.rag.llm_client import CompletionProvider

logger = logging.getLogger(__name__)

_CITE_RE = re.compile(r"\[CITE:([^\]\s]+)\]")


@dataclass(frozen=True)
class SectionDraft:
    draft: str
    used_chunk_ids: list[str]
    latency_ms: int

    def to_dict(self) -> dict:
        return {
            "draft": self.draft,
            "usedChunkIds": self.used_chunk_ids,
            "latencyMs": self.latency_ms,
        }


def extract_citation_ids(text: str, known_ids: set[str] | None = None) -> list[str]:
    """Return chunk ids cited as ``[CITE:<id>]`` in *text*, first occurrence order.

    With *known_ids*, markers naming any other id are dropped.
    """
    seen: dict[str, None] = {}
    for match in _CITE_RE.finditer(text):
        cid = match.group(1)
        if known_ids is not None and cid not in known_ids:
            continue
        seen.setdefault(cid, None)
    return list(seen)


async def draft_section(
    request: SectionDraftRequest,
    provider: CompletionProvider,
    temperature: float = 0.7,
) -> SectionDraft:
    """Generate a whole section draft in one completion call.

    Raises:
        InvalidInput: The request is incomplete.
        AIServiceUnavailable: The completion call failed.
    """
    request.validate()
    started = time.perf_counter()
    try:
        text = await provider.complete(
            build_messages(request), max_tokens=request.max_tokens, temperature=temperature
        )
    except Exception as exc:
        logger.error("Draft generation failed: %s", exc)
        raise AIServiceUnavailable(
            f"Draft generation failed: {exc}",
            context={"project_id": request.project_id, "section_id": request.section_id},
            cause=exc,
        ) from exc
    latency_ms = int((time.perf_counter() - started) * 1000)

    known = {c.id for c in request.chunks}
    used = extract_citation_ids(text, known)
    logger.info(
        "Drafted section %s/%s: %d chars, %d citation(s), %d ms",
        request.project_id,
        request.section_id,
        len(text),
        len(used),
        latency_ms,
    )
    return SectionDraft(draft=text.strip(), used_chunk_ids=used, latency_ms=latency_ms)
