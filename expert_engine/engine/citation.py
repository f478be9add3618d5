# =============================================================================
# Citation Resolver
# =============================================================================
#
# Maps inline `[Source N]` markers in generated text onto the retrieved
# chunks that were shown to the LLM (chunk i ↔ marker i+1).
#
#   real reference     N in 1..len(sources); counted per occurrence and
#                      cited once per chunk
#   phantom reference  N out of range; counted per occurrence and every
#                      occurrence is stripped from the answer
#
# CONFIDENCE (from per-occurrence counts, never from unique sources):
#   low     no sources, no real references, or phantoms > real references
#   high    ≥ 2 real references and no phantoms
#   medium  everything else
# =============================================================================

from __future__ import annotations

import re
from collections.abc import Sequence

from expert_engine.engine.types import CitationEntry, CitationResult, Confidence
from expert_engine.services.vectorstore import RetrievedChunk

EXCERPT_LENGTH = 200

SOURCE_MARKER = re.compile(r"\[Source\s+(\d+)\]", re.IGNORECASE)

_MULTI_SPACE = re.compile(r" {2,}")
_SPACE_BEFORE_PUNCT = re.compile(r"[ \t]+([.,;:])")


def process_citations(
    answer: str,
    sources: Sequence[RetrievedChunk],
) -> CitationResult:
    """
    Resolve source markers, strip phantoms and score grounding.

    Args:
        answer: Raw LLM output.
        sources: The chunks given to the LLM, in prompt order.

    Returns:
        A new CitationResult; `answer` and `sources` are not modified.
    """
    citations: list[CitationEntry] = []
    used_indices: list[int] = []
    unresolved: list[int] = []
    phantom_markers: list[str] = []
    total = real = phantom = 0

    for match in SOURCE_MARKER.finditer(answer):
        total += 1
        idx = int(match.group(1)) - 1

        if 0 <= idx < len(sources):
            real += 1
            if idx not in used_indices:
                used_indices.append(idx)
                citations.append(_citation_entry(idx, sources[idx]))
        else:
            phantom += 1
            if idx + 1 not in unresolved:
                unresolved.append(idx + 1)
            phantom_markers.append(match.group(0))

    cleaned = answer
    for marker in phantom_markers:
        cleaned = cleaned.replace(marker, "")
    cleaned = _SPACE_BEFORE_PUNCT.sub(r"\1", _MULTI_SPACE.sub(" ", cleaned)).strip()

    return CitationResult(
        cleaned_answer=cleaned,
        citations=citations,
        confidence=compute_confidence(real, len(sources), phantom),
        phantom_count=phantom,
        real_ref_count=real,
        unresolved_refs=unresolved,
        used_source_indices=used_indices,
        total_refs=total,
    )


def compute_confidence(
    real_ref_count: int,
    source_count: int,
    phantom_count: int,
) -> Confidence:
    if source_count == 0 or real_ref_count == 0:
        return "low"
    if phantom_count > real_ref_count:
        return "low"
    if real_ref_count >= 2 and phantom_count == 0:
        return "high"
    return "medium"


def make_excerpt(content: str) -> str:
    if len(content) > EXCERPT_LENGTH:
        return content[:EXCERPT_LENGTH] + "..."
    return content


def _citation_entry(idx: int, source: RetrievedChunk) -> CitationEntry:
    return CitationEntry(
        id=f"src_{idx + 1}",
        document=source.document_name,
        document_id=source.document_id,
        chunk_id=source.id,
        chunk_index=source.chunk_index,
        source_rank=idx + 1,
        similarity=source.similarity,
        file_type=source.file_type,
        page=source.page_number,
        section=source.section_title,
        excerpt=make_excerpt(source.content),
    )
