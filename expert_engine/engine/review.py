# =============================================================================
# Document Review Batcher
# =============================================================================
#
# Reviews a document against one expert's knowledge base and produces
# per-segment, citation-grounded annotations.
#
# GRAPH TOPOLOGY:
#   START ──▶ resolve ──▶ segment ──▶ decide ──▶ review ──▶ summarize ──▶ END
#
# SEGMENTING:
#   Blank lines end a segment; a segment that would grow past the size cap
#   is closed early and the overflowing line starts the next one.
#
# BATCHING:
#   Segments are grouped into fixed-size batches. A fixed pool of workers
#   claims batch indexes from one shared cursor until none remain. Per
#   batch: embed every segment, retrieve sources per segment, merge them
#   (by chunk id, highest similarity wins), ask the LLM for a JSON array of
#   annotations, then ground each annotation's citations.
#
# FAILURE ISOLATION:
#   A failed batch (unparseable output, upstream error) yields no
#   annotations, a `batch_error` status and an entry in `failed_batches`;
#   sibling batches are unaffected. Annotation ids are `ann_<batch>_<pos>`
#   and the final list is ordered by batch, then position.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections.abc import AsyncIterator, Sequence
from typing import Any

from langgraph.config import get_stream_writer
from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from expert_engine.config import settings
from expert_engine.engine.citation import process_citations
from expert_engine.engine.context import format_decision_context, format_source_context
from expert_engine.engine.deadline import run_with_deadline, stream_with_deadline
from expert_engine.engine.decision_tree import execute_decision_tree
from expert_engine.engine.deps import EngineDeps, get_engine_deps
from expert_engine.engine.errors import AnnotationParseError
from expert_engine.engine.events import (
    AnnotationEvent,
    BatchCompleteEvent,
    ReviewDoneEvent,
    ReviewEvent,
    StatusEvent,
    error_event,
    truncate_error,
)
from expert_engine.engine.hallucination_guard import apply_hallucination_guard
from expert_engine.engine.types import (
    Compliance,
    Confidence,
    ReviewAnnotation,
    ReviewResult,
    ReviewSegment,
    ReviewSummary,
)
from expert_engine.services.audit import ReviewAuditRecord
from expert_engine.services.experts import Expert, resolve_expert
from expert_engine.services.vectorstore import RetrievedChunk

logger = logging.getLogger(__name__)

ORIGINAL_TEXT_LIMIT = 200
TOP_ISSUES_LIMIT = 5

SEVERITIES = ("error", "warning", "info", "pass")

REVIEWER_SUFFIX = (
    "\n\nYou are reviewing a document for compliance and quality. "
    "Be thorough but fair."
)

_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_MARKDOWN_HEADING = re.compile(r"^#+\s*")


# ---------------------------------------------------------------------------
# Segmentation
# ---------------------------------------------------------------------------


def segment_document(text: str, max_chars: int | None = None) -> list[ReviewSegment]:
    """
    Split a document into review segments with 1-based line ranges.

    >>> [s.content for s in segment_document("A\\nB\\n\\nC")]
    ['A\\nB', 'C']
    """
    max_chars = max_chars or settings.review_segment_max_chars
    lines = text.split("\n")
    segments: list[ReviewSegment] = []
    current = ""
    start_line = 1

    def close(end_line: int) -> None:
        if current.strip():
            segments.append(ReviewSegment(
                index=len(segments),
                start_line=start_line,
                end_line=end_line,
                content=current.strip(),
                section_title=segment_title(current),
            ))

    # Lines longer than the cap are cut into cap-sized pieces on the same line
    pieces = [
        (line_num, line[i:i + max_chars])
        for line_num, line in enumerate(lines, start=1)
        for i in range(0, max(len(line), 1), max_chars)
    ]
    prev_line = 0

    for line_num, line in pieces:
        has_content = bool(current.strip())
        blank_boundary = has_content and not line.strip()
        over_cap = has_content and len(f"{current}\n{line}") > max_chars

        if blank_boundary:
            close(prev_line)
            current = ""
        elif over_cap:
            close(prev_line)
            current = line
            start_line = line_num
        else:
            if not has_content:
                start_line = line_num
            current = f"{current}\n{line}" if current else line
        prev_line = line_num

    close(len(lines))
    return segments


def segment_title(content: str) -> str | None:
    """A markdown heading or a short ALL CAPS first line."""
    first_line = content.strip().split("\n")[0].strip()
    if first_line.startswith("#"):
        return _MARKDOWN_HEADING.sub("", first_line)
    if (
        len(first_line) < 80
        and first_line == first_line.upper()
        and any(c.isalpha() for c in first_line)
    ):
        return first_line
    return None


def make_batches(segments: Sequence[ReviewSegment], size: int) -> list[list[ReviewSegment]]:
    return [list(segments[i:i + size]) for i in range(0, len(segments), size)]


# ---------------------------------------------------------------------------
# LLM Output Parsing
# ---------------------------------------------------------------------------


def build_review_prompt(
    segments: Sequence[ReviewSegment],
    source_context: str,
    decision_context: str,
) -> str:
    segment_block = "\n\n".join(
        f"--- Segment {s.index} (lines {s.start_line}-{s.end_line}) ---\n{s.content}"
        for s in segments
    )
    return f"""You are performing a document review. Analyze each segment against the source documents (knowledge base) and flag errors, omissions, non-compliance, and best-practice issues.

Source Documents:
{source_context or "No relevant sources found."}
{decision_context}

Document Segments to Review:
{segment_block}

For each issue found, produce a JSON annotation. Return a JSON array (no markdown fences, just the raw JSON array).

Each annotation must have:
- "segmentIndex": number (which segment)
- "originalText": string (the problematic text, up to 200 chars)
- "severity": "error" | "warning" | "info" | "pass"
- "category": "non-compliance" | "omission" | "best-practice" | "factual-error" | "ambiguity"
- "issue": string (clear description of the problem)
- "suggestedFix": string | null (how to fix it)
- "citations": array of citation refs in format "[Source N]" that support your finding

If a segment is correct/compliant, include one annotation with severity "pass" and issue "No issues found".

Cite source documents with [Source N] when your finding is backed by a source. NEVER fabricate citations.

Return ONLY the JSON array, e.g.:
[{{"segmentIndex":0,"originalText":"...","severity":"warning","category":"omission","issue":"...","suggestedFix":"...","citations":["[Source 1]"]}}]"""


def parse_annotations(text: str) -> list[dict[str, Any]]:
    """
    Extract the raw annotation objects from an LLM reply.

    Accepts markdown fences and prose around the array. Items that are not
    JSON objects are dropped.

    Raises:
        AnnotationParseError: No JSON array could be parsed.
    """
    candidate = text.strip()
    fence = _FENCE.search(candidate)
    if fence:
        candidate = fence.group(1).strip()

    start, end = candidate.find("["), candidate.rfind("]")
    if start != -1 and end > start:
        candidate = candidate[start:end + 1]

    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise AnnotationParseError(f"Annotation output is not valid JSON: {e}") from e
    if not isinstance(parsed, list):
        raise AnnotationParseError("Annotation output is not a JSON array")
    return [item for item in parsed if isinstance(item, dict)]


def build_annotation(
    raw: dict[str, Any],
    batch: Sequence[ReviewSegment],
    sources: Sequence[RetrievedChunk],
    annotation_id: str,
) -> ReviewAnnotation:
    """Apply field defaults and ground the annotation's citation claims."""
    segment = next(
        (s for s in batch if s.index == _as_int(raw.get("segmentIndex"))), batch[0],
    )
    issue = raw.get("issue") or "No details provided"

    refs = raw.get("citations")
    refs = [str(r) for r in refs] if isinstance(refs, list) else []
    grounded = apply_hallucination_guard(
        process_citations(" ".join(refs) + " " + str(issue), sources)
    )

    severity = raw.get("severity")
    fix = raw.get("suggestedFix")
    return ReviewAnnotation(
        id=annotation_id,
        segment_index=segment.index,
        start_line=segment.start_line,
        end_line=segment.end_line,
        original_text=str(raw.get("originalText") or segment.content)[:ORIGINAL_TEXT_LIMIT],
        severity=severity if severity in SEVERITIES else "info",
        category=str(raw.get("category") or "best-practice"),
        issue=str(issue),
        suggested_fix=str(fix) if fix else None,
        citations=grounded.citations,
        confidence=grounded.confidence,
    )


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    return None


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def deduplicate_sources(sources: Sequence[RetrievedChunk]) -> list[RetrievedChunk]:
    """One entry per chunk id, keeping the highest similarity, best first."""
    best: dict[str, RetrievedChunk] = {}
    for source in sources:
        existing = best.get(source.id)
        if existing is None or source.similarity > existing.similarity:
            best[source.id] = source
    return sorted(best.values(), key=lambda s: s.similarity, reverse=True)


def compute_summary(annotations: Sequence[ReviewAnnotation]) -> ReviewSummary:
    counts = {severity: 0 for severity in SEVERITIES}
    for annotation in annotations:
        counts[annotation.severity] += 1

    compliance: Compliance
    if counts["error"] == 0 and counts["warning"] == 0:
        compliance = "compliant"
    elif counts["error"] == 0:
        compliance = "partially-compliant"
    else:
        compliance = "non-compliant"

    top_issues = [
        a.issue for a in annotations if a.severity in ("error", "warning")
    ][:TOP_ISSUES_LIMIT]

    return ReviewSummary(
        error_count=counts["error"],
        warning_count=counts["warning"],
        info_count=counts["info"],
        pass_count=counts["pass"],
        overall_compliance=compliance,
        top_issues=top_issues,
    )


def compute_overall_confidence(annotations: Sequence[ReviewAnnotation]) -> Confidence:
    """Share of annotations backed by at least one citation."""
    if not annotations:
        return "low"
    ratio = sum(1 for a in annotations if a.citations) / len(annotations)
    if ratio >= 0.6:
        return "high"
    if ratio >= 0.3:
        return "medium"
    return "low"


# ---------------------------------------------------------------------------
# One Batch
# ---------------------------------------------------------------------------


async def review_batch(
    deps: EngineDeps,
    expert: Expert,
    batch: Sequence[ReviewSegment],
    batch_index: int,
    decision_context: str,
) -> list[ReviewAnnotation]:
    embeddings = await deps.retriever.embed([s.content for s in batch])
    per_segment = await asyncio.gather(*(
        deps.retriever.retrieve_by_embedding(
            embedding,
            expert.id,
            settings.review_top_k,
            settings.review_similarity_threshold,
        )
        for embedding in embeddings
    ))
    sources = deduplicate_sources([s for found in per_segment for s in found])

    response = await deps.llm.complete(
        [{
            "role": "user",
            "content": build_review_prompt(
                batch, format_source_context(sources), decision_context,
            ),
        }],
        system=expert.system_prompt + REVIEWER_SUFFIX,
    )

    return [
        build_annotation(raw, batch, sources, f"ann_{batch_index}_{position}")
        for position, raw in enumerate(parse_annotations(response.content))
    ]


# ---------------------------------------------------------------------------
# Graph State & Nodes
# ---------------------------------------------------------------------------


class ReviewState(TypedDict, total=False):
    # --- Input ---
    slug: str
    document_text: str
    document_title: str
    require_published: bool
    deps: EngineDeps
    started_at: float

    # --- Intermediate ---
    expert: Expert
    segments: list[ReviewSegment]
    decision_context: str
    annotations: list[ReviewAnnotation]
    failed_batches: list[int]

    # --- Output ---
    result: ReviewResult


async def resolve_node(state: ReviewState) -> dict:
    expert = await resolve_expert(
        state["deps"].experts,
        state["slug"],
        require_published=state.get("require_published", False),
    )
    return {"expert": expert}


async def segment_node(state: ReviewState) -> dict:
    write = get_stream_writer()
    write(StatusEvent(status="segmenting", message="Segmenting document..."))
    segments = segment_document(state["document_text"])
    write(StatusEvent(status="segmented", message=f"Split into {len(segments)} segments"))
    logger.info(
        "Reviewing '%s' with %s: %d segments",
        state["document_title"][:80], state["expert"].slug, len(segments),
    )
    return {"segments": segments}


async def decide_node(state: ReviewState) -> dict:
    tree = await state["deps"].experts.get_active_tree(state["expert"].id)
    if tree is None:
        return {"decision_context": ""}

    # No query to extract parameters from; the walk runs on an empty map
    decision = execute_decision_tree(tree, {})
    get_stream_writer()(StatusEvent(
        status="decision_tree",
        message=f"Evaluated decision tree ({len(decision.path)} steps)",
    ))
    return {
        "decision_context": format_decision_context(
            decision, heading="Decision Tree Guidelines",
        ),
    }


async def review_node(state: ReviewState) -> dict:
    write = get_stream_writer()
    deps = state["deps"]
    expert = state["expert"]
    batches = make_batches(state["segments"], settings.review_batch_size)
    concurrency = settings.review_concurrency
    total = len(batches)

    write(StatusEvent(
        status="reviewing",
        message=f"Reviewing {total} batches ({concurrency} in parallel)...",
    ))

    results: dict[int, list[ReviewAnnotation]] = {}
    failed: list[int] = []
    completed = 0

    async def process(batch_index: int) -> None:
        nonlocal completed
        write(StatusEvent(
            status="reviewing_batch",
            message=f"Starting batch {batch_index + 1} of {total}...",
        ))
        try:
            annotations = await review_batch(
                deps, expert, batches[batch_index], batch_index,
                state["decision_context"],
            )
        except Exception as e:
            logger.warning("Review batch %d failed: %s", batch_index, e)
            failed.append(batch_index)
            write(StatusEvent(
                status="batch_error",
                message=f"Batch {batch_index + 1} failed: {truncate_error(str(e))}",
            ))
        else:
            results[batch_index] = annotations
            for annotation in annotations:
                write(AnnotationEvent(annotation=annotation))

        completed += 1
        write(BatchCompleteEvent(
            batch_index=batch_index,
            total_batches=total,
            message=f"Completed {completed} of {total} batches",
        ))

    # Shared cursor: each worker claims the next unclaimed batch index
    cursor = iter(range(total))

    async def worker() -> None:
        for batch_index in cursor:
            await process(batch_index)

    await asyncio.gather(*(worker() for _ in range(min(concurrency, total))))

    annotations = [a for i in sorted(results) for a in results[i]]
    return {"annotations": annotations, "failed_batches": sorted(failed)}


async def summarize_node(state: ReviewState) -> dict:
    expert = state["expert"]
    annotations = state["annotations"]
    segments = state["segments"]
    summary = compute_summary(annotations)
    confidence = compute_overall_confidence(annotations)
    latency_ms = int((time.perf_counter() - state["started_at"]) * 1000)

    result = ReviewResult(
        document_title=state["document_title"],
        total_segments=len(segments),
        annotations=annotations,
        summary=summary,
        confidence=confidence,
        plugin_version=expert.version,
        latency_ms=latency_ms,
        failed_batches=state["failed_batches"],
    )
    logger.info(
        "Review finished: %d annotations, %s, %d failed batches, %dms",
        len(annotations), summary.overall_compliance,
        len(result.failed_batches), latency_ms,
    )

    state["deps"].audit.submit(ReviewAuditRecord(
        expert_id=expert.id,
        document_title=result.document_title,
        total_segments=result.total_segments,
        annotations=[a.model_dump() for a in annotations],
        summary=summary.model_dump(),
        confidence=confidence,
        latency_ms=latency_ms,
    ))
    return {"result": result}


_builder = StateGraph(ReviewState)
_builder.add_node("resolve", resolve_node)
_builder.add_node("segment", segment_node)
_builder.add_node("decide", decide_node)
_builder.add_node("review", review_node)
_builder.add_node("summarize", summarize_node)

_builder.add_edge(START, "resolve")
_builder.add_edge("resolve", "segment")
_builder.add_edge("segment", "decide")
_builder.add_edge("decide", "review")
_builder.add_edge("review", "summarize")
_builder.add_edge("summarize", END)

graph = _builder.compile()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def _initial_state(
    slug: str,
    document_text: str,
    document_title: str,
    deps: EngineDeps,
    require_published: bool,
) -> ReviewState:
    return {
        "slug": slug,
        "document_text": document_text,
        "document_title": document_title,
        "require_published": require_published,
        "deps": deps,
        "started_at": time.perf_counter(),
    }


async def run_review(
    slug: str,
    document_text: str,
    document_title: str = "Untitled",
    deps: EngineDeps | None = None,
    require_published: bool = False,
    timeout: float | None = None,
) -> ReviewResult:
    """
    Review a document as the expert `slug`.

    Batch failures are reported in `failed_batches`, never raised.

    Raises:
        ExpertNotFoundError / ExpertNotPublishedError: Lookup failed.
        PipelineTimeoutError: `timeout` seconds elapsed.
    """
    state = _initial_state(
        slug, document_text, document_title, deps or get_engine_deps(), require_published,
    )
    final = await run_with_deadline(graph.ainvoke(state), timeout)
    return final["result"]


async def stream_review(
    slug: str,
    document_text: str,
    document_title: str = "Untitled",
    deps: EngineDeps | None = None,
    require_published: bool = False,
    timeout: float | None = None,
) -> AsyncIterator[ReviewEvent]:
    """Review a document as a stream of progress events ending in done or error."""
    try:
        state = _initial_state(
            slug, document_text, document_title, deps or get_engine_deps(),
            require_published,
        )
        async for event in stream_with_deadline(_review_events(state), timeout):
            yield event
    except Exception as e:
        logger.warning("Streamed review for %s failed: %s", slug, e)
        yield error_event(e)


async def _review_events(state: ReviewState) -> AsyncIterator[ReviewEvent]:
    final: ReviewState = {}
    async for mode, chunk in graph.astream(state, stream_mode=["custom", "values"]):
        if mode == "custom":
            yield chunk
        else:
            final = chunk

    result = final["result"]
    yield ReviewDoneEvent(**dict(result))
