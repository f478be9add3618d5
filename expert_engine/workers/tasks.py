# =============================================================================
# Celery Task Definitions: Knowledge Ingestion Pipeline
# =============================================================================
#
# INGESTION PIPELINE:
#   1. Update document status → PROCESSING
#   2. Load the stored raw text
#   3. Chunk on paragraph boundaries (tiktoken token counts per chunk)
#   4. Generate embeddings with OpenAI → batch API calls
#   5. Store chunks + embeddings in the vector store, scoped to the expert
#   6. Update document status → COMPLETED (or FAILED on error)
#
# Celery workers are SYNCHRONOUS: no async/await here and only the sync
# SQLAlchemy engine.
#
# RETRY STRATEGY: max_retries=3, 60s between attempts. Transient errors
# (embedding rate limits, DB drops) recover; permanent ones stay FAILED.
# =============================================================================

import logging

from sqlalchemy import update

from expert_engine.config import settings
from expert_engine.db.engine import get_sync_session
from expert_engine.db.models import DocumentStatus, KnowledgeDocument
from expert_engine.services.chunker import chunk_knowledge_text
from expert_engine.services.embedder import embed_batch
from expert_engine.services.vectorstore import get_vector_store
from expert_engine.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _update_document_status(
    document_id: int,
    status: DocumentStatus,
    error_message: str | None = None,
) -> None:
    """Commit a status change in its own session so it survives a failed pipeline."""
    with get_sync_session() as session:
        values: dict = {"status": status}
        if error_message is not None:
            values["error_message"] = error_message

        session.execute(
            update(KnowledgeDocument)
            .where(KnowledgeDocument.id == document_id)
            .values(**values)
        )


def _load_document(document_id: int) -> tuple[int, str, str, str]:
    """Return (expert_id, file_name, file_type, raw_text)."""
    with get_sync_session() as session:
        doc = session.get(KnowledgeDocument, document_id)
        if doc is None:
            raise ValueError(f"Knowledge document {document_id} does not exist")
        if not doc.raw_text or not doc.raw_text.strip():
            raise ValueError(f"Knowledge document {document_id} has no text")
        return doc.expert_id, doc.file_name, doc.file_type, doc.raw_text


# ---------------------------------------------------------------------------
# Ingestion Task
# ---------------------------------------------------------------------------


@celery_app.task(
    bind=True,
    name="ingest_knowledge_document",
    max_retries=3,
    default_retry_delay=60,
)
def ingest_knowledge_document(self, document_id: int) -> dict:
    """
    Chunk, embed and store one knowledge document.

    Args:
        self: Bound Celery task (self.request.id is the task id).
        document_id: Database ID of the KnowledgeDocument to process.

    Returns:
        Processing summary (document_id, chunk_count, vectorstore).
    """
    task_id = self.request.id
    logger.info(
        "Starting ingestion: document_id=%d, task_id=%s, vectorstore=%s",
        document_id, task_id, settings.vectorstore_type,
    )

    try:
        _update_document_status(document_id, DocumentStatus.PROCESSING)

        logger.info("[%s] Step 2/5: Loading document text...", task_id)
        expert_id, file_name, file_type, raw_text = _load_document(document_id)

        logger.info("[%s] Step 3/5: Chunking '%s'...", task_id, file_name)
        chunks = chunk_knowledge_text(raw_text, file_name=file_name, file_type=file_type)
        if not chunks:
            raise ValueError(f"No chunks produced from '{file_name}'")

        logger.info(
            "[%s] Step 4/5: Generating embeddings for %d chunks (model=%s)...",
            task_id, len(chunks), settings.embedding_model,
        )
        contents = [c.content for c in chunks]
        embeddings = embed_batch(contents)

        logger.info(
            "[%s] Step 5/5: Storing chunks in %s...",
            task_id, settings.vectorstore_type,
        )
        metadatas = [
            {
                "chunk_index": c.chunk_index,
                "section_title": c.section_title,
                "page_number": c.page_number,
                "token_count": c.token_count,
            }
            for c in chunks
        ]
        get_vector_store().add_chunks(
            expert_id=expert_id,
            document_id=document_id,
            document_name=file_name,
            file_type=file_type,
            contents=contents,
            embeddings=embeddings,
            metadatas=metadatas,
        )

        _update_document_status(document_id, DocumentStatus.COMPLETED)

        summary = {
            "document_id": document_id,
            "status": "completed",
            "chunk_count": len(chunks),
            "vectorstore": settings.vectorstore_type,
        }
        logger.info("[%s] Ingestion complete: %s", task_id, summary)
        return summary

    except Exception as exc:
        logger.exception(
            "[%s] Ingestion failed for document_id=%d: %s",
            task_id, document_id, exc,
        )
        _update_document_status(
            document_id,
            DocumentStatus.FAILED,
            error_message=str(exc)[:1000],
        )
        raise self.retry(exc=exc)
