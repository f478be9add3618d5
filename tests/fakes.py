# =============================================================================
# Test Doubles for the Engine's Collaborators
# =============================================================================
#
# Structural stand-ins for ExpertStore, Retriever, LLMProvider and the
# audit sink, so pipelines run without databases or API keys.
# =============================================================================

from __future__ import annotations

import asyncio
from collections.abc import Callable

from expert_engine.engine.deps import EngineDeps
from expert_engine.engine.types import DecisionTree
from expert_engine.services.audit import AuditLogger
from expert_engine.services.experts import Expert
from expert_engine.services.llm import LLMResponse, LLMStreamPart, TextDelta
from expert_engine.services.vectorstore import RetrievedChunk


def run(coro):
    """Run an async function from a sync test."""
    return asyncio.run(coro)


def make_expert(
    expert_id: int = 1,
    slug: str = "concrete",
    name: str | None = None,
    domain: str = "structural",
    published: bool = True,
) -> Expert:
    return Expert(
        id=expert_id,
        slug=slug,
        name=name or slug.title(),
        domain=domain,
        system_prompt=f"You are the {slug} expert.",
        version="2.1.0",
        is_published=published,
    )


def make_chunk(n: int, document: str = "IS456.pdf", similarity: float = 0.8) -> RetrievedChunk:
    return RetrievedChunk(
        id=f"chunk-{document}-{n}",
        content=f"{document} clause {n}: minimum cover is {20 + n * 5}mm.",
        similarity=similarity,
        document_id=document,
        document_name=document,
        file_type="pdf",
        page_number=n,
        section_title=f"Clause {n}",
        chunk_index=n,
    )


class FakeExpertStore:

    def __init__(
        self,
        experts: list[Expert],
        trees: dict[int, DecisionTree] | None = None,
    ) -> None:
        self._experts = {e.slug: e for e in experts}
        self._trees = trees or {}

    async def get_by_slug(self, slug: str) -> Expert | None:
        return self._experts.get(slug)

    async def get_active_tree(self, expert_id: int) -> DecisionTree | None:
        return self._trees.get(expert_id)


class FakeRetriever:
    """Returns canned sources per expert id; records every call."""

    def __init__(
        self,
        sources: dict[int, list[RetrievedChunk]] | None = None,
        error: Exception | None = None,
    ) -> None:
        self._sources = sources or {}
        self._error = error
        self.calls: list[tuple[int, int, float]] = []
        self.embedded: list[list[str]] = []

    async def retrieve(
        self, query: str, expert_id: int, top_k: int, threshold: float,
    ) -> list[RetrievedChunk]:
        return await self.retrieve_by_embedding([0.0], expert_id, top_k, threshold)

    async def retrieve_by_embedding(
        self, embedding: list[float], expert_id: int, top_k: int, threshold: float,
    ) -> list[RetrievedChunk]:
        if self._error is not None:
            raise self._error
        self.calls.append((expert_id, top_k, threshold))
        return list(self._sources.get(expert_id, []))[:top_k]

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.embedded.append(list(texts))
        return [[float(i)] for i in range(len(texts))]


class ScriptedLLM:
    """
    LLM whose reply is computed from (system, user message).

    `reply` may be a fixed string or a callable; a callable that raises
    simulates a provider failure.
    """

    def __init__(
        self,
        reply: str | Callable[[str | None, str], str],
        stream_parts: list[LLMStreamPart] | None = None,
        delay: float = 0.0,
    ) -> None:
        self._reply = reply
        self._stream_parts = stream_parts
        self._delay = delay
        self.prompts: list[tuple[str | None, str]] = []

    def _answer(self, system: str | None, user: str) -> str:
        self.prompts.append((system, user))
        if callable(self._reply):
            return self._reply(system, user)
        return self._reply

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        web_search: bool = False,
    ) -> LLMResponse:
        if self._delay:
            await asyncio.sleep(self._delay)
        content = self._answer(system, messages[-1]["content"])
        return LLMResponse(content=content, model="fake", input_tokens=0, output_tokens=0)

    async def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        web_search: bool = False,
    ):
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._stream_parts is not None:
            self.prompts.append((system, messages[-1]["content"]))
            for part in self._stream_parts:
                yield part
            return
        text = self._answer(system, messages[-1]["content"])
        for word in text.split(" "):
            yield TextDelta(text=word + " ")


class RecordingSink:

    def __init__(self) -> None:
        self.records: list = []

    async def write(self, record) -> None:
        self.records.append(record)


def make_deps(
    experts: list[Expert],
    llm: ScriptedLLM,
    retriever: FakeRetriever | None = None,
    trees: dict[int, DecisionTree] | None = None,
    sink: RecordingSink | None = None,
) -> EngineDeps:
    return EngineDeps(
        llm=llm,
        retriever=retriever or FakeRetriever(),
        experts=FakeExpertStore(experts, trees),
        audit=AuditLogger(sink),
    )
