# =============================================================================
# Collaboration Orchestrator: Multi-Expert Deliberation
# =============================================================================
#
# Runs 2-5 experts over one question in structured rounds, then has a
# moderator LLM synthesise a consensus from the full transcript.
#
# GRAPH TOPOLOGY:
#   START ──▶ resolve ──▶ round ──┬──▶ synthesize ──▶ END
#                           ▲     │
#                           └─────┘ (next round)
#
# MODES:
#   consensus  one round, every expert answers independently
#   debate     up to max_rounds (≤ 3); from round 2 on, each expert sees
#              the transcript of all earlier rounds and may revise. Stops
#              early after round ≥ 2 when every expert reports high
#              confidence.
#   review     one pass: the first expert answers, the others review that
#              answer (prompted as round 2, recorded in round 1)
#
# CONCURRENCY:
#   Experts inside a round run concurrently and own their sources,
#   decision result and prompt. Rounds run strictly in sequence because
#   each round's prompt embeds the previous transcript. Within a round,
#   `expert_thinking` is emitted for every expert before any response,
#   then `expert_response` in completion order. The recorded round keeps
#   expert order.
#
# SYNTHESIS:
#   The moderator must reply with one JSON object. If none can be parsed,
#   the raw text becomes the consensus answer (confidence medium,
#   agreement 0.5, no conflicts, contributions from the last round).
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass
from typing import Any

from langgraph.config import get_stream_writer
from langgraph.graph import END, START, StateGraph
from pydantic import TypeAdapter, ValidationError
from typing_extensions import TypedDict

from expert_engine.config import settings
from expert_engine.engine.citation import process_citations
from expert_engine.engine.context import format_decision_context, format_source_context
from expert_engine.engine.deadline import run_with_deadline, stream_with_deadline
from expert_engine.engine.decision_tree import execute_decision_tree, extract_query_params
from expert_engine.engine.deps import EngineDeps, get_engine_deps
from expert_engine.engine.errors import CollaborationValidationError, SynthesisParseError
from expert_engine.engine.events import (
    CollaborationDoneEvent,
    CollaborationEvent,
    ExpertInfo,
    ExpertResponseEvent,
    ExpertsResolvedEvent,
    ExpertThinkingEvent,
    RoundCompleteEvent,
    RoundStartEvent,
    StatusEvent,
    error_event,
)
from expert_engine.engine.hallucination_guard import apply_hallucination_guard
from expert_engine.engine.types import (
    CitationEntry,
    CollaborationMode,
    CollaborationResult,
    CollaborationRound,
    ConsensusConflict,
    ConsensusData,
    DecisionResult,
    ExpertContribution,
    ExpertResponse,
)
from expert_engine.services.audit import CollaborationAuditRecord
from expert_engine.services.experts import Expert, resolve_expert
from expert_engine.services.vectorstore import RetrievedChunk

logger = logging.getLogger(__name__)

MIN_EXPERTS = 2
MAX_EXPERTS = 5
MAX_ROUNDS = 3

COLLABORATION_MODES: tuple[CollaborationMode, ...] = ("debate", "consensus", "review")

# Lower-cased phrases that mark an answer as a revision (best-effort heuristic)
REVISION_MARKERS = ("revising", "updating", "i agree with", "correcting")
REVISION_NOTE = "Position updated based on other experts' input"

NO_CONSENSUS_ANSWER = "Experts could not reach a clear consensus."

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

_conflicts_adapter = TypeAdapter(list[ConsensusConflict])
_contributions_adapter = TypeAdapter(list[ExpertContribution])


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

EXPERT_RULES = """RULES:
1. If source documents are provided, PRIORITISE them and cite with [Source N].
2. If no source documents are available, answer using your expert knowledge and web search. Do NOT refuse, you are the domain expert.
3. Be specific and precise. Other experts will review your response.
4. If you disagree with another expert's assessment, clearly state why with evidence.
5. If another expert raised a valid point that affects your domain, acknowledge it and revise.
6. NEVER fabricate source citations. Only use [Source N] for actual provided sources."""

MODERATOR_PROMPT = """You are a synthesis moderator for a multi-expert collaboration. Your job is to:
1. Identify points of agreement and disagreement between experts.
2. Synthesize a final consensus answer that incorporates all expert perspectives.
3. Flag unresolved conflicts clearly.
4. Preserve all citations from the original experts using their [Source N] format.
5. Be thorough but concise.

Respond ONLY with a JSON object in this exact format:
{
  "answer": "The synthesized consensus answer...",
  "confidence": "high" | "medium" | "low",
  "agreementLevel": 0.0-1.0,
  "conflicts": [{"topic": "...", "positions": [{"expert": "...", "stance": "..."}], "resolved": true/false, "resolution": "..."}],
  "expertContributions": [{"expert": "...", "domain": "...", "keyPoints": ["...", "..."]}]
}"""


@dataclass(frozen=True)
class ResolvedExpert:
    """An expert together with everything it retrieved for this question."""

    expert: Expert
    sources: list[RetrievedChunk]
    decision: DecisionResult | None


def _expert_system_prompt(expert: Expert) -> str:
    return (
        f"{expert.system_prompt}\n\n"
        "You are participating in a multi-expert collaboration room as the "
        f"{expert.domain} expert.\n"
        f"Your name/role: {expert.name}\n\n"
        f"{EXPERT_RULES}"
    )


def _expert_user_message(
    resolved: ResolvedExpert,
    query: str,
    prior_context: str,
    prompt_round: int,
) -> str:
    context = (
        "Source Documents:\n"
        f"{format_source_context(resolved.sources) or 'No relevant sources.'}\n"
        f"{format_decision_context(resolved.decision)}"
    )
    if prompt_round == 1:
        return (
            f"{context}\n\nQuestion: {query}\n\n"
            "Provide your domain-specific analysis. Be concise but thorough. "
            "Cite sources."
        )
    return (
        f"{context}\n\n{prior_context}\n\nQuestion: {query}\n\n"
        "Review the other experts' responses above. If you need to revise your "
        "position, clearly state what changed and why. If another expert's point "
        "affects your domain, address it. Cite your sources."
    )


def format_round(round_: CollaborationRound) -> str:
    """Render one round for the transcript fed to later rounds and synthesis."""
    blocks = []
    for r in round_.responses:
        marker = "\n(REVISED from previous round)" if r.revised else ""
        blocks.append(f"[{r.plugin_name} ({r.domain})]:\n{r.answer}{marker}")
    return f"--- Round {round_.round_number} Responses ---\n" + "\n\n".join(blocks)


def format_transcript(rounds: Sequence[CollaborationRound]) -> str:
    return "\n\n".join(format_round(r) for r in rounds)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_collaboration(
    expert_slugs: Sequence[str],
    query: str,
    mode: str,
) -> None:
    """
    Reject malformed requests before any I/O.

    Raises:
        CollaborationValidationError: Wrong expert count, empty query or
            unknown mode.
    """
    if len(expert_slugs) < MIN_EXPERTS:
        raise CollaborationValidationError(
            f"Collaboration requires at least {MIN_EXPERTS} experts"
        )
    if len(expert_slugs) > MAX_EXPERTS:
        raise CollaborationValidationError(
            f"Maximum {MAX_EXPERTS} experts per collaboration room"
        )
    if not query.strip():
        raise CollaborationValidationError("Query must not be empty")
    if mode not in COLLABORATION_MODES:
        raise CollaborationValidationError(f"Unknown collaboration mode: {mode}")


def effective_round_count(mode: CollaborationMode, max_rounds: int) -> int:
    if mode == "consensus":
        return 1
    return max(1, min(max_rounds, MAX_ROUNDS))


# ---------------------------------------------------------------------------
# One Expert, One Round
# ---------------------------------------------------------------------------


async def _resolve_with_sources(
    deps: EngineDeps,
    slug: str,
    query: str,
    require_published: bool,
) -> ResolvedExpert:
    expert = await resolve_expert(deps.experts, slug, require_published=require_published)
    sources = await deps.retriever.retrieve(
        query,
        expert.id,
        settings.collaboration_top_k,
        settings.collaboration_similarity_threshold,
    )

    decision = None
    tree = await deps.experts.get_active_tree(expert.id)
    if tree is not None:
        decision = execute_decision_tree(tree, extract_query_params(query))

    return ResolvedExpert(expert=expert, sources=sources, decision=decision)


async def get_expert_response(
    deps: EngineDeps,
    resolved: ResolvedExpert,
    query: str,
    prior_context: str,
    prompt_round: int,
) -> ExpertResponse:
    """
    Ask one expert for its position.

    Experts without any retrieved source still contribute from their
    persona: the hallucination guard is skipped and confidence is medium.
    """
    expert = resolved.expert
    response = await deps.llm.complete(
        [{
            "role": "user",
            "content": _expert_user_message(resolved, query, prior_context, prompt_round),
        }],
        system=_expert_system_prompt(expert),
        web_search=True,
    )
    text = response.content

    result = process_citations(text, resolved.sources)
    if resolved.sources:
        result = apply_hallucination_guard(result)
        confidence = result.confidence
    else:
        confidence = "medium"

    lower = text.lower()
    revised = prompt_round > 1 and any(m in lower for m in REVISION_MARKERS)

    return ExpertResponse(
        plugin_slug=expert.slug,
        plugin_name=expert.name,
        domain=expert.domain,
        answer=result.cleaned_answer,
        citations=result.citations,
        confidence=confidence,
        revised=revised,
        revision_note=REVISION_NOTE if revised else None,
    )


async def _run_experts_concurrently(
    deps: EngineDeps,
    experts: Sequence[ResolvedExpert],
    query: str,
    prior_context: str,
    prompt_round: int,
    recorded_round: int,
    thinking_message: str,
    write: Callable[[Any], None],
) -> list[ExpertResponse]:
    """Fan out one round; responses come back in expert order."""
    for resolved in experts:
        e = resolved.expert
        write(ExpertThinkingEvent(
            expert=e.slug, expert_name=e.name, domain=e.domain,
            message=thinking_message.format(name=e.name),
        ))

    async def respond(resolved: ResolvedExpert) -> ExpertResponse:
        r = await get_expert_response(deps, resolved, query, prior_context, prompt_round)
        write(ExpertResponseEvent(
            round=recorded_round,
            expert=r.plugin_slug,
            expert_name=r.plugin_name,
            domain=r.domain,
            answer=r.answer,
            citations=r.citations,
            confidence=r.confidence,
            revised=r.revised,
        ))
        return r

    tasks = [asyncio.create_task(respond(resolved)) for resolved in experts]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        raise


# ---------------------------------------------------------------------------
# Synthesis
# ---------------------------------------------------------------------------


def merge_citations(rounds: Sequence[CollaborationRound]) -> list[CitationEntry]:
    """All citations across rounds, deduplicated on (document, excerpt)."""
    merged: list[CitationEntry] = []
    seen: set[tuple[str, str]] = set()
    for round_ in rounds:
        for response in round_.responses:
            for citation in response.citations:
                key = (citation.document, citation.excerpt)
                if key not in seen:
                    seen.add(key)
                    merged.append(citation)
    return merged


def parse_synthesis(
    text: str,
    citations: list[CitationEntry],
    default_contributions: list[ExpertContribution],
) -> ConsensusData:
    """
    Build ConsensusData from the moderator's reply.

    Individual fields that are missing or malformed get defaults.

    Raises:
        SynthesisParseError: No JSON object could be parsed at all.
    """
    match = _JSON_OBJECT.search(text)
    if match is None:
        raise SynthesisParseError("No JSON object in synthesis output")
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise SynthesisParseError(f"Invalid synthesis JSON: {e}") from e
    if not isinstance(payload, dict):
        raise SynthesisParseError("Synthesis JSON is not an object")

    answer = payload.get("answer")
    if answer is not None and not isinstance(answer, str):
        raise SynthesisParseError(f"Synthesis answer is {type(answer).__name__}, not text")

    confidence = payload.get("confidence")
    if confidence not in ("high", "medium", "low"):
        confidence = "medium"

    agreement = payload.get("agreementLevel")
    if isinstance(agreement, bool) or not isinstance(agreement, (int, float)):
        agreement = 0.5

    try:
        return ConsensusData(
            answer=answer or NO_CONSENSUS_ANSWER,
            confidence=confidence,
            agreement_level=min(1.0, max(0.0, float(agreement))),
            citations=citations,
            conflicts=_validated_list(payload.get("conflicts"), _conflicts_adapter, []),
            expert_contributions=_validated_list(
                payload.get("expertContributions"),
                _contributions_adapter,
                default_contributions,
            ),
        )
    except ValidationError as e:
        raise SynthesisParseError(f"Synthesis JSON has the wrong shape: {e}") from e


def _validated_list(value: Any, adapter: TypeAdapter, default: list) -> list:
    if not isinstance(value, list):
        return default
    try:
        return adapter.validate_python(value)
    except ValidationError as e:
        logger.warning("Dropping malformed synthesis field: %s", e.errors()[:1])
        return default


async def synthesize_consensus(
    deps: EngineDeps,
    query: str,
    rounds: list[CollaborationRound],
) -> ConsensusData:
    citations = merge_citations(rounds)
    default_contributions = [
        ExpertContribution(expert=r.plugin_name, domain=r.domain, key_points=[])
        for r in rounds[-1].responses
    ]

    response = await deps.llm.complete(
        [{
            "role": "user",
            "content": (
                f"Original question: {query}\n\n{format_transcript(rounds)}\n\n"
                "Synthesize the final consensus from these expert deliberations. "
                "Return ONLY valid JSON."
            ),
        }],
        system=MODERATOR_PROMPT,
    )

    try:
        return parse_synthesis(response.content, citations, default_contributions)
    except SynthesisParseError as e:
        logger.warning("Synthesis fallback to raw text: %s", e)
        return ConsensusData(
            answer=response.content,
            confidence="medium",
            agreement_level=0.5,
            citations=citations,
            conflicts=[],
            expert_contributions=default_contributions,
        )


# ---------------------------------------------------------------------------
# Graph State & Nodes
# ---------------------------------------------------------------------------


class CollaborationState(TypedDict, total=False):
    # --- Input ---
    expert_slugs: list[str]
    query: str
    mode: CollaborationMode
    total_rounds: int
    require_published: bool
    deps: EngineDeps
    started_at: float

    # --- Deliberation ---
    experts: list[ResolvedExpert]
    rounds: list[CollaborationRound]
    finished: bool

    # --- Output ---
    result: CollaborationResult


async def resolve_node(state: CollaborationState) -> dict:
    write = get_stream_writer()
    slugs = state["expert_slugs"]
    write(StatusEvent(
        status="resolving_experts", message=f"Assembling {len(slugs)} experts...",
    ))

    tasks = [
        asyncio.create_task(_resolve_with_sources(
            state["deps"], slug, state["query"], state.get("require_published", False),
        ))
        for slug in slugs
    ]
    try:
        experts = list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        raise
    logger.info(
        "Collaboration (%s): %s",
        state["mode"],
        ", ".join(f"{r.expert.slug}[{len(r.sources)} sources]" for r in experts),
    )

    write(ExpertsResolvedEvent(experts=[
        ExpertInfo(
            slug=r.expert.slug,
            name=r.expert.name,
            domain=r.expert.domain,
            source_count=len(r.sources),
            has_decision_tree=r.decision is not None,
        )
        for r in experts
    ]))
    return {"experts": experts, "rounds": [], "finished": False}


async def round_node(state: CollaborationState) -> dict:
    write = get_stream_writer()
    deps = state["deps"]
    query = state["query"]
    mode = state["mode"]
    experts = state["experts"]
    rounds = state["rounds"]
    total_rounds = state["total_rounds"]
    round_number = len(rounds) + 1

    write(RoundStartEvent(round=round_number, total_rounds=total_rounds))
    logger.info("Round %d/%d started", round_number, total_rounds)

    if mode == "review":
        primary = await _run_experts_concurrently(
            deps, experts[:1], query, "", 1, round_number,
            "{name} is providing initial analysis...",
            write,
        )
        review_context = format_round(
            CollaborationRound(round_number=1, responses=primary)
        )
        reviewers = await _run_experts_concurrently(
            deps, experts[1:], query, review_context, 2, round_number,
            "{name} is reviewing...",
            write,
        )
        responses = primary + reviewers
    else:
        thinking = (
            "{name} is analyzing..."
            if round_number == 1
            else "{name} is reviewing other experts' responses..."
        )
        responses = await _run_experts_concurrently(
            deps, experts, query, format_transcript(rounds), round_number, round_number,
            thinking, write,
        )

    completed = CollaborationRound(round_number=round_number, responses=responses)
    write(RoundCompleteEvent(round=round_number))
    logger.info(
        "Round %d complete: %s",
        round_number, ", ".join(f"{r.plugin_slug}={r.confidence}" for r in responses),
    )

    finished = mode == "review" or round_number >= total_rounds
    if not finished and round_number >= 2 and all(r.confidence == "high" for r in responses):
        write(StatusEvent(
            status="early_consensus",
            message="All experts aligned, reaching consensus early",
        ))
        logger.info("Early consensus after round %d", round_number)
        finished = True

    return {"rounds": [*rounds, completed], "finished": finished}


def route_after_round(state: CollaborationState) -> str:
    return "synthesize" if state["finished"] else "round"


async def synthesize_node(state: CollaborationState) -> dict:
    get_stream_writer()(StatusEvent(
        status="synthesizing", message="Synthesizing consensus from all experts...",
    ))
    rounds = state["rounds"]
    consensus = await synthesize_consensus(state["deps"], state["query"], rounds)

    latency_ms = int((time.perf_counter() - state["started_at"]) * 1000)
    result = CollaborationResult(rounds=rounds, consensus=consensus, latency_ms=latency_ms)
    logger.info(
        "Collaboration finished: %d rounds, agreement=%.2f, %dms",
        len(rounds), consensus.agreement_level, latency_ms,
    )

    state["deps"].audit.submit(CollaborationAuditRecord(
        query=state["query"],
        mode=state["mode"],
        expert_slugs=list(state["expert_slugs"]),
        rounds=[r.model_dump() for r in rounds],
        consensus=consensus.model_dump(),
        latency_ms=latency_ms,
    ))
    return {"result": result}


_builder = StateGraph(CollaborationState)
_builder.add_node("resolve", resolve_node)
_builder.add_node("round", round_node)
_builder.add_node("synthesize", synthesize_node)

_builder.add_edge(START, "resolve")
_builder.add_edge("resolve", "round")
_builder.add_conditional_edges(
    "round", route_after_round, {"round": "round", "synthesize": "synthesize"},
)
_builder.add_edge("synthesize", END)

graph = _builder.compile()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def _initial_state(
    expert_slugs: Sequence[str],
    query: str,
    mode: CollaborationMode,
    max_rounds: int,
    deps: EngineDeps,
    require_published: bool,
) -> CollaborationState:
    return {
        "expert_slugs": list(expert_slugs),
        "query": query,
        "mode": mode,
        "total_rounds": effective_round_count(mode, max_rounds),
        "require_published": require_published,
        "deps": deps,
        "started_at": time.perf_counter(),
    }


async def run_collaboration(
    expert_slugs: Sequence[str],
    query: str,
    mode: CollaborationMode = "debate",
    max_rounds: int = MAX_ROUNDS,
    deps: EngineDeps | None = None,
    require_published: bool = False,
    timeout: float | None = None,
) -> CollaborationResult:
    """
    Run a full deliberation and return every round plus the consensus.

    Raises:
        CollaborationValidationError: Before any I/O, see validate_collaboration().
        ExpertNotFoundError / ExpertNotPublishedError: Lookup failed.
        PipelineTimeoutError: `timeout` seconds elapsed.
    """
    validate_collaboration(expert_slugs, query, mode)
    state = _initial_state(
        expert_slugs, query, mode, max_rounds, deps or get_engine_deps(), require_published,
    )
    final = await run_with_deadline(graph.ainvoke(state), timeout)
    return final["result"]


async def stream_collaboration(
    expert_slugs: Sequence[str],
    query: str,
    mode: CollaborationMode = "debate",
    max_rounds: int = MAX_ROUNDS,
    deps: EngineDeps | None = None,
    require_published: bool = False,
    timeout: float | None = None,
) -> AsyncIterator[CollaborationEvent]:
    """Deliberate as a stream of progress events ending in done or error."""
    try:
        validate_collaboration(expert_slugs, query, mode)
        state = _initial_state(
            expert_slugs, query, mode, max_rounds, deps or get_engine_deps(),
            require_published,
        )
        async for event in stream_with_deadline(_collaboration_events(state), timeout):
            yield event
    except Exception as e:
        logger.warning("Streamed collaboration failed: %s", e)
        yield error_event(e)


async def _collaboration_events(
    state: CollaborationState,
) -> AsyncIterator[CollaborationEvent]:
    final: CollaborationState = {}
    async for mode, chunk in graph.astream(state, stream_mode=["custom", "values"]):
        if mode == "custom":
            yield chunk
        else:
            final = chunk

    result = final["result"]
    yield CollaborationDoneEvent(
        rounds=result.rounds,
        consensus=result.consensus,
        latency_ms=result.latency_ms,
    )
