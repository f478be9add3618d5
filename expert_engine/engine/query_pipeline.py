# =============================================================================
# Single-Expert Answer Pipeline: LangGraph Graph Assembly
# =============================================================================
#
# Turns one question to one expert into a citation-verified answer.
#
# GRAPH TOPOLOGY:
#   START ──▶ resolve ──▶ retrieve ──▶ decide ──▶ generate ──▶ ground ──▶ END
#
#   resolve   expert lookup (+ optional publish check)
#   retrieve  top-K chunks above the similarity threshold
#   decide    active decision tree over parameters extracted from the query
#   generate  LLM call with sources, decision trace and persona prompt;
#             token deltas when streaming
#   ground    citation resolution, hallucination guard, audit record
#
# Progress events (status / delta) are written through LangGraph's custom
# stream channel. `run_query()` drives the graph with ainvoke() and the
# writer is a no-op; `stream_query()` drives it with astream() and re-yields
# those events, then a terminal done or error event.
#
# Retrieval and LLM failures propagate unretried. The audit write is
# submitted fire-and-forget and cannot fail the pipeline.
# =============================================================================

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator

from langgraph.config import get_stream_writer
from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from expert_engine.config import settings
from expert_engine.engine.citation import process_citations
from expert_engine.engine.context import format_decision_context, format_source_context
from expert_engine.engine.deadline import run_with_deadline, stream_with_deadline
from expert_engine.engine.decision_tree import (
    execute_decision_tree,
    extract_query_params,
    to_decision_path,
)
from expert_engine.engine.deps import EngineDeps, get_engine_deps
from expert_engine.engine.events import (
    DeltaEvent,
    QueryDoneEvent,
    QueryEvent,
    StatusEvent,
    error_event,
)
from expert_engine.engine.hallucination_guard import apply_hallucination_guard
from expert_engine.engine.types import DecisionResult, QueryResult
from expert_engine.services.audit import QueryAuditRecord
from expert_engine.services.experts import Expert, resolve_expert
from expert_engine.services.llm import TextDelta, ToolCall, ToolResult
from expert_engine.services.vectorstore import RetrievedChunk

logger = logging.getLogger(__name__)


SOURCE_PRIORITY_PROMPT = """
RULES:
1. PRIORITISE the provided source documents. For claims from sources, cite with [Source N].
2. You may supplement with your own knowledge or web search when the sources are
   insufficient, but clearly distinguish sourced claims (cited) from general knowledge.
3. NEVER fabricate source citations. Only use [Source N] for actual provided sources.
4. If sources are relevant, lead with them. Add extra context from your knowledge after.
5. If no sources are provided or none are relevant, answer from your own knowledge and
   web search. Do NOT refuse to answer.
"""


def build_query_prompt(
    expert: Expert,
    sources: list[RetrievedChunk],
    decision: DecisionResult | None,
    query: str,
) -> tuple[str, str]:
    """Return (system prompt, user message) for one expert answer."""
    system = f"{expert.system_prompt}\n\n{SOURCE_PRIORITY_PROMPT}"
    user = (
        "\nSource Documents:\n"
        f"{format_source_context(sources) or 'No relevant sources found.'}\n"
        f"{format_decision_context(decision)}\n"
        f"\nUser Question: {query}\n"
        "\nAnswer the question. Prioritise the source documents above and cite "
        "them with [Source N]. You may supplement with your own knowledge or "
        "web search if needed."
    )
    return system, user


# ---------------------------------------------------------------------------
# Pipeline State Schema
# ---------------------------------------------------------------------------


class QueryState(TypedDict, total=False):
    """
    State flowing through the answer graph.

    `deps` holds live client objects and is not JSON-serialisable; the
    graph runs without a checkpointer.
    """

    # --- Input ---
    slug: str
    query: str
    require_published: bool
    web_search: bool
    streaming: bool
    deps: EngineDeps
    started_at: float

    # --- Intermediate ---
    expert: Expert
    sources: list[RetrievedChunk]
    decision: DecisionResult | None
    raw_answer: str

    # --- Output ---
    result: QueryResult


# ---------------------------------------------------------------------------
# Node Functions
# ---------------------------------------------------------------------------


async def resolve_node(state: QueryState) -> dict:
    expert = await resolve_expert(
        state["deps"].experts,
        state["slug"],
        require_published=state.get("require_published", False),
    )
    return {"expert": expert}


async def retrieve_node(state: QueryState) -> dict:
    write = get_stream_writer()
    expert = state["expert"]

    write(StatusEvent(
        status="searching_kb", message="Searching knowledge base...",
    ))
    sources = await state["deps"].retriever.retrieve(
        state["query"],
        expert.id,
        settings.retrieval_top_k,
        settings.retrieval_similarity_threshold,
    )
    logger.info(
        "Expert %s, query '%s': %d sources",
        expert.slug, state["query"][:80], len(sources),
    )

    if sources:
        plural = "" if len(sources) == 1 else "s"
        message = f"Found {len(sources)} relevant source{plural}"
    else:
        message = "No matching sources found, using AI knowledge + web"
    write(StatusEvent(status="kb_results", message=message, source_count=len(sources)))
    return {"sources": sources}


async def decide_node(state: QueryState) -> dict:
    tree = await state["deps"].experts.get_active_tree(state["expert"].id)
    if tree is None:
        return {"decision": None}

    decision = execute_decision_tree(tree, extract_query_params(state["query"]))
    logger.info("Decision tree evaluated in %d steps", len(decision.path))
    get_stream_writer()(StatusEvent(
        status="decision_tree",
        message=f"Evaluated decision tree ({len(decision.path)} steps)",
    ))
    return {"decision": decision}


async def generate_node(state: QueryState) -> dict:
    llm = state["deps"].llm
    system, user = build_query_prompt(
        state["expert"], state["sources"], state.get("decision"), state["query"],
    )
    messages = [{"role": "user", "content": user}]
    web_search = state.get("web_search", True)

    if not state.get("streaming"):
        response = await llm.complete(messages, system=system, web_search=web_search)
        return {"raw_answer": response.content}

    write = get_stream_writer()
    write(StatusEvent(status="generating", message="Generating response..."))
    parts: list[str] = []
    async for part in llm.stream(messages, system=system, web_search=web_search):
        if isinstance(part, TextDelta):
            parts.append(part.text)
            write(DeltaEvent(text=part.text))
        elif isinstance(part, ToolCall):
            write(StatusEvent(status="web_search", message="Searching the web..."))
        elif isinstance(part, ToolResult):
            write(StatusEvent(status="web_search_done", message="Web search complete"))
    return {"raw_answer": "".join(parts)}


async def ground_node(state: QueryState) -> dict:
    expert = state["expert"]
    grounded = apply_hallucination_guard(
        process_citations(state["raw_answer"], state["sources"])
    )
    decision_path = to_decision_path(state.get("decision"))

    result = QueryResult(
        answer=grounded.cleaned_answer,
        citations=grounded.citations,
        decision_path=decision_path,
        confidence=grounded.confidence,
        plugin_version=expert.version,
    )

    latency_ms = int((time.perf_counter() - state["started_at"]) * 1000)
    logger.info(
        "Answered for %s: confidence=%s, %d citations, %dms",
        expert.slug, result.confidence, len(result.citations), latency_ms,
    )
    state["deps"].audit.submit(QueryAuditRecord(
        expert_id=expert.id,
        query=state["query"],
        answer=result.answer,
        citations=[c.model_dump() for c in result.citations],
        decision_path=[s.model_dump() for s in decision_path],
        confidence=result.confidence,
        latency_ms=latency_ms,
    ))
    return {"result": result}


# ---------------------------------------------------------------------------
# Graph Assembly
# ---------------------------------------------------------------------------

_builder = StateGraph(QueryState)
_builder.add_node("resolve", resolve_node)
_builder.add_node("retrieve", retrieve_node)
_builder.add_node("decide", decide_node)
_builder.add_node("generate", generate_node)
_builder.add_node("ground", ground_node)

_builder.add_edge(START, "resolve")
_builder.add_edge("resolve", "retrieve")
_builder.add_edge("retrieve", "decide")
_builder.add_edge("decide", "generate")
_builder.add_edge("generate", "ground")
_builder.add_edge("ground", END)

graph = _builder.compile()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def _initial_state(
    slug: str,
    query: str,
    deps: EngineDeps,
    require_published: bool,
    web_search: bool,
    streaming: bool,
) -> QueryState:
    return {
        "slug": slug,
        "query": query,
        "require_published": require_published,
        "web_search": web_search,
        "streaming": streaming,
        "deps": deps,
        "started_at": time.perf_counter(),
    }


async def run_query(
    slug: str,
    query: str,
    deps: EngineDeps | None = None,
    require_published: bool = False,
    web_search: bool = True,
    timeout: float | None = None,
) -> QueryResult:
    """
    Answer `query` as the expert `slug`.

    Raises:
        ExpertNotFoundError / ExpertNotPublishedError: Lookup failed.
        PipelineTimeoutError: `timeout` seconds elapsed.
        Exception: Retrieval and LLM errors propagate unchanged.
    """
    state = _initial_state(
        slug, query, deps or get_engine_deps(), require_published, web_search,
        streaming=False,
    )
    final = await run_with_deadline(graph.ainvoke(state), timeout)
    return final["result"]


async def stream_query(
    slug: str,
    query: str,
    deps: EngineDeps | None = None,
    require_published: bool = False,
    web_search: bool = True,
    timeout: float | None = None,
) -> AsyncIterator[QueryEvent]:
    """
    Answer `query` as a stream of progress events.

    Never raises: any failure becomes the terminal error event.
    """
    try:
        state = _initial_state(
            slug, query, deps or get_engine_deps(), require_published, web_search,
            streaming=True,
        )
        async for event in stream_with_deadline(_query_events(state), timeout):
            yield event
    except Exception as e:
        logger.warning("Streamed query for %s failed: %s", slug, e)
        yield error_event(e)


async def _query_events(state: QueryState) -> AsyncIterator[QueryEvent]:
    final: QueryState = {}
    async for mode, chunk in graph.astream(state, stream_mode=["custom", "values"]):
        if mode == "custom":
            yield chunk
        else:
            final = chunk

    result = final["result"]
    yield QueryDoneEvent(
        answer=result.answer,
        citations=result.citations,
        decision_path=result.decision_path,
        confidence=result.confidence,
        plugin_version=result.plugin_version,
    )
