# =============================================================================
# Vector Store Abstraction: Pluggable Backend Protocol
# =============================================================================
#
# Provides a common interface for expert-scoped vector similarity search,
# with concrete implementations for pgvector (PostgreSQL) and ChromaDB.
#
# Every chunk belongs to exactly one expert's knowledge base. Searches are
# always scoped to one expert and only return chunks whose cosine
# similarity is strictly above the requested threshold, ranked descending.
#
# Mixed sync/async interface:
# - add_chunks() is sync → called by Celery workers during ingestion
# - search() is async → called by the engine during query/review
#
# ARCHITECTURE:
#   VectorStore (Protocol)
#   ├── PgVectorStore     PostgreSQL + pgvector extension
#   │   ├── add_chunks()  sync via get_sync_session (Celery)
#   │   └── search()      async via async_session_factory
#   └── ChromaVectorStore ChromaDB (in-process or client/server)
#       ├── add_chunks()  sync (ChromaDB client is sync)
#       └── search()      async via asyncio.to_thread() wrapper
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

import chromadb
from sqlalchemy import select

from expert_engine.config import settings
from expert_engine.db.engine import async_session_factory, get_sync_session
from expert_engine.db.models import KnowledgeChunk, KnowledgeDocument

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetrievedChunk:
    """
    One knowledge chunk returned for a query, with its similarity score.

    The position of a chunk in a retrieval result is meaningful: the chunk
    at index i is what the LLM sees as `[Source i+1]`.
    """

    id: str
    content: str
    similarity: float  # 0.0–1.0 cosine similarity, higher = more relevant
    document_id: str
    document_name: str
    file_type: str
    page_number: int | None = None
    section_title: str | None = None
    chunk_index: int = 0


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class VectorStore(Protocol):
    """Protocol defining the vector store interface."""

    def add_chunks(
        self,
        expert_id: int,
        document_id: int,
        document_name: str,
        file_type: str,
        contents: list[str],
        embeddings: list[list[float]],
        metadatas: list[dict],
    ) -> list[str]:
        """
        Store one document's chunks with their embeddings. Sync (for Celery).

        Args:
            expert_id: Owning expert; scopes every later search.
            document_id: Parent knowledge document ID.
            document_name: File name shown in citations.
            file_type: Source file type ("pdf", "md", "txt", ...).
            contents: Chunk text contents.
            embeddings: Corresponding embedding vectors.
            metadatas: Per-chunk metadata (chunk_index, section_title,
                page_number, token_count).

        Returns:
            Created chunk IDs as strings.
        """
        ...

    async def search(
        self,
        query_embedding: list[float],
        expert_id: int,
        top_k: int = 8,
        threshold: float = 0.3,
    ) -> list[RetrievedChunk]:
        """
        Find the chunks of one expert most similar to the query.

        Returns:
            At most top_k chunks with similarity > threshold, sorted by
            similarity (highest first).
        """
        ...


# ---------------------------------------------------------------------------
# Implementation 1: pgvector (PostgreSQL)
# ---------------------------------------------------------------------------


class PgVectorStore:
    """
    pgvector-backed vector store using PostgreSQL.

    Uses the sync engine for add_chunks (Celery) and the async engine for
    search, matching each caller's execution model.
    """

    def add_chunks(
        self,
        expert_id: int,
        document_id: int,
        document_name: str,
        file_type: str,
        contents: list[str],
        embeddings: list[list[float]],
        metadatas: list[dict],
    ) -> list[str]:
        """Store chunks in PostgreSQL with pgvector embeddings."""
        with get_sync_session() as session:
            chunks = []
            for i, (content, embedding, meta) in enumerate(
                zip(contents, embeddings, metadatas, strict=True)
            ):
                chunk = KnowledgeChunk(
                    document_id=document_id,
                    expert_id=expert_id,
                    content=content,
                    chunk_index=meta.get("chunk_index", i),
                    page_number=meta.get("page_number"),
                    section_title=meta.get("section_title"),
                    token_count=meta.get("token_count", 0),
                    embedding=embedding,
                    metadata_=meta,
                )
                session.add(chunk)
                chunks.append(chunk)

            # Flush assigns IDs without committing the transaction
            session.flush()
            chunk_ids = [str(c.id) for c in chunks]

        logger.info(
            "Stored %d chunks for expert_id=%d document '%s' in pgvector",
            len(chunk_ids), expert_id, document_name,
        )
        return chunk_ids

    async def search(
        self,
        query_embedding: list[float],
        expert_id: int,
        top_k: int = 8,
        threshold: float = 0.3,
    ) -> list[RetrievedChunk]:
        """
        Cosine similarity search using pgvector.

        pgvector's cosine_distance() returns values in [0, 2]; similarity
        is 1 - distance. The threshold is applied in SQL so `top_k` counts
        only relevant chunks.
        """
        distance = KnowledgeChunk.embedding.cosine_distance(query_embedding)

        async with async_session_factory() as session:
            stmt = (
                select(
                    KnowledgeChunk,
                    KnowledgeDocument.file_name,
                    KnowledgeDocument.file_type,
                    distance.label("distance"),
                )
                .join(
                    KnowledgeDocument,
                    KnowledgeChunk.document_id == KnowledgeDocument.id,
                )
                .where(KnowledgeChunk.expert_id == expert_id)
                .where(KnowledgeChunk.embedding.is_not(None))
                .where(1 - distance > threshold)
                .order_by(distance)
                .limit(top_k)
            )
            result = await session.execute(stmt)
            rows = result.all()

        logger.debug(
            "Vector search returned %d rows (expert_id=%d, top_k=%d)",
            len(rows), expert_id, top_k,
        )

        return [
            RetrievedChunk(
                id=str(chunk.id),
                content=chunk.content,
                similarity=round(1.0 - dist, 4),
                document_id=str(chunk.document_id),
                document_name=file_name,
                file_type=file_type,
                page_number=chunk.page_number,
                section_title=chunk.section_title,
                chunk_index=chunk.chunk_index,
            )
            for chunk, file_name, file_type, dist in rows
        ]


# ---------------------------------------------------------------------------
# Implementation 2: ChromaDB
# ---------------------------------------------------------------------------


class ChromaVectorStore:
    """
    ChromaDB-backed vector store.

    Single collection for all experts; per-expert scoping uses ChromaDB's
    metadata where clause. Document name and file type are denormalised
    into each chunk's metadata so a search needs no second lookup.

    ChromaDB supports both in-process and client/server modes:
    - In-process (default): No extra infra, data stored in memory
    - Client/server: Set CHROMA_URL for Docker deployment
    """

    def __init__(self, collection_name: str = "expert_knowledge") -> None:
        if settings.chroma_url:
            self._client = chromadb.HttpClient(host=settings.chroma_url)
        else:
            self._client = chromadb.Client()

        # Cosine distance to match pgvector behaviour
        self._collection = self._client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    def add_chunks(
        self,
        expert_id: int,
        document_id: int,
        document_name: str,
        file_type: str,
        contents: list[str],
        embeddings: list[list[float]],
        metadatas: list[dict],
    ) -> list[str]:
        """Store chunks in ChromaDB with expert and document in metadata."""
        ids = [
            f"exp{expert_id}_doc{document_id}_chunk{meta.get('chunk_index', i)}"
            for i, meta in enumerate(metadatas)
        ]

        enriched_metadatas = [
            _sanitise_chroma_metadata({
                **meta,
                "chunk_index": meta.get("chunk_index", i),
                "expert_id": expert_id,
                "document_id": document_id,
                "document_name": document_name,
                "file_type": file_type,
            })
            for i, meta in enumerate(metadatas)
        ]

        # upsert: re-ingesting a document replaces its chunks in place
        self._collection.upsert(
            ids=ids,
            documents=contents,
            embeddings=embeddings,
            metadatas=enriched_metadatas,
        )

        logger.info(
            "Stored %d chunks for expert_id=%d document '%s' in ChromaDB",
            len(ids), expert_id, document_name,
        )
        return ids

    async def search(
        self,
        query_embedding: list[float],
        expert_id: int,
        top_k: int = 8,
        threshold: float = 0.3,
    ) -> list[RetrievedChunk]:
        """
        Similarity search in ChromaDB.

        ChromaDB's Python client is synchronous, so the query runs in a
        worker thread to keep the event loop free.
        """

        def _sync_search() -> list[RetrievedChunk]:
            results = self._collection.query(
                query_embeddings=[query_embedding],
                n_results=top_k,
                where={"expert_id": expert_id},
                include=["documents", "metadatas", "distances"],
            )

            chunks: list[RetrievedChunk] = []
            if not (results and results["ids"] and results["ids"][0]):
                return chunks

            for i, chroma_id in enumerate(results["ids"][0]):
                distance = results["distances"][0][i] if results["distances"] else 0.0
                similarity = round(1.0 - distance, 4)
                if similarity <= threshold:
                    continue

                metadata = results["metadatas"][0][i] if results["metadatas"] else {}
                content = results["documents"][0][i] if results["documents"] else ""
                chunks.append(RetrievedChunk(
                    id=chroma_id,
                    content=content,
                    similarity=similarity,
                    document_id=str(metadata.get("document_id", "")),
                    document_name=str(metadata.get("document_name", "")),
                    file_type=str(metadata.get("file_type", "")),
                    page_number=metadata.get("page_number") or None,
                    section_title=metadata.get("section_title") or None,
                    chunk_index=int(metadata.get("chunk_index", i)),
                ))

            chunks.sort(key=lambda c: c.similarity, reverse=True)
            return chunks

        return await asyncio.to_thread(_sync_search)


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def get_vector_store(
    override_type: str | None = None,
) -> PgVectorStore | ChromaVectorStore:
    """
    Factory that returns the configured vector store backend.

    Reads `vectorstore_type` from settings:
    - "pgvector" → PgVectorStore (default)
    - "chroma" → ChromaVectorStore
    """
    store_type = override_type or settings.vectorstore_type

    if store_type == "chroma":
        logger.info("Using ChromaDB vector store")
        return ChromaVectorStore()

    logger.info("Using pgvector vector store")
    return PgVectorStore()


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _sanitise_chroma_metadata(metadata: dict) -> dict:
    """
    Sanitise metadata for ChromaDB compatibility.

    ChromaDB requires all metadata values to be str, int, float, or bool:
    - list → comma-separated string
    - None → empty string
    """
    sanitised = {}
    for key, value in metadata.items():
        if value is None:
            sanitised[key] = ""
        elif isinstance(value, list):
            sanitised[key] = ",".join(str(v) for v in value)
        elif isinstance(value, (str, int, float, bool)):
            sanitised[key] = value
        else:
            sanitised[key] = str(value)
    return sanitised
