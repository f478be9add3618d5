# =============================================================================
# Retrieval Service: Expert-Scoped Knowledge Search
# =============================================================================
#
# Embed → search, scoped to a single expert's knowledge base. The engine
# depends only on the `Retriever` protocol; `VectorRetriever` is the
# production implementation over the configured VectorStore.
#
# Single-shot retrieval: no query rewriting or re-search loop. The result
# order is the source numbering the LLM sees, so it must be stable and
# ranked by similarity descending.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from expert_engine.services.embedder import embed_batch, embed_query
from expert_engine.services.vectorstore import (
    RetrievedChunk,
    VectorStore,
    get_vector_store,
)

logger = logging.getLogger(__name__)


class Retriever(Protocol):
    """Protocol for expert-scoped similarity retrieval."""

    async def retrieve(
        self,
        query: str,
        expert_id: int,
        top_k: int,
        threshold: float,
    ) -> list[RetrievedChunk]:
        """Embed `query` and return the expert's most similar chunks."""
        ...

    async def retrieve_by_embedding(
        self,
        embedding: list[float],
        expert_id: int,
        top_k: int,
        threshold: float,
    ) -> list[RetrievedChunk]:
        """Same as retrieve() for a precomputed embedding."""
        ...

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts in one round trip, preserving order."""
        ...


class VectorRetriever:
    """Retriever backed by the OpenAI embeddings API and a VectorStore."""

    def __init__(self, store: VectorStore | None = None) -> None:
        self._store = store or get_vector_store()

    async def retrieve(
        self,
        query: str,
        expert_id: int,
        top_k: int,
        threshold: float,
    ) -> list[RetrievedChunk]:
        # The embeddings client is sync; keep the event loop free
        embedding = await asyncio.to_thread(embed_query, query)
        return await self.retrieve_by_embedding(embedding, expert_id, top_k, threshold)

    async def retrieve_by_embedding(
        self,
        embedding: list[float],
        expert_id: int,
        top_k: int,
        threshold: float,
    ) -> list[RetrievedChunk]:
        chunks = await self._store.search(
            query_embedding=embedding,
            expert_id=expert_id,
            top_k=top_k,
            threshold=threshold,
        )
        if chunks:
            logger.info(
                "Retrieved %d chunks for expert_id=%s (top similarity=%.3f)",
                len(chunks), expert_id, chunks[0].similarity,
            )
        else:
            logger.info(
                "No chunks above threshold %.2f for expert_id=%s",
                threshold, expert_id,
            )
        return chunks

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return await asyncio.to_thread(embed_batch, texts)


# Lazy singleton: the store holds a connection pool / Chroma client
_retriever: VectorRetriever | None = None


def get_retriever() -> VectorRetriever:
    """Return the process-wide VectorRetriever."""
    global _retriever
    if _retriever is None:
        _retriever = VectorRetriever()
    return _retriever
