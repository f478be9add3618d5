# =============================================================================
# Knowledge Ingestion API: Upload and Status Tracking
# =============================================================================
#
#   POST /v1/experts/{slug}/documents   store text, dispatch Celery task (202)
#   GET  /v1/ingest/{task_id}           poll ingestion status
#
# Chunking and embedding run in a worker (workers/tasks.py). The document
# is not retrievable until the task reaches SUCCESS.
# =============================================================================

import logging
from pathlib import PurePath

from celery.result import AsyncResult
from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from expert_engine.db.engine import get_async_session
from expert_engine.db.models import (
    DocumentStatus,
    Expert,
    KnowledgeDocument,
)
from expert_engine.models.responses import (
    IngestResponse,
    IngestStatusResponse,
    KnowledgeDocumentResponse,
)
from expert_engine.workers.tasks import ingest_knowledge_document

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["Ingestion"])


# ---------------------------------------------------------------------------
# POST /v1/experts/{slug}/documents
# ---------------------------------------------------------------------------


@router.post(
    "/experts/{slug}/documents",
    response_model=IngestResponse,
    status_code=202,
    summary="Add a knowledge document to an expert",
    description=(
        "Upload a UTF-8 text or markdown file. It is chunked, embedded and "
        "stored in the background; poll the returned task_id for progress."
    ),
)
async def upload_knowledge_document(
    slug: str,
    file: UploadFile = File(..., description="UTF-8 text or markdown file"),
    file_type: str | None = Query(
        default=None,
        max_length=50,
        description="Source type recorded on citations. Defaults to the file extension.",
    ),
    session: AsyncSession = Depends(get_async_session),
) -> IngestResponse:
    expert = await session.scalar(select(Expert).where(Expert.slug == slug))
    if expert is None:
        raise HTTPException(status_code=404, detail=f"Expert '{slug}' not found")

    file_name = file.filename or "untitled.txt"
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")

    try:
        raw_text = content.decode("utf-8")
    except UnicodeDecodeError as e:
        raise HTTPException(
            status_code=400, detail="Uploaded file must be UTF-8 text.",
        ) from e

    if not raw_text.strip():
        raise HTTPException(status_code=400, detail="Uploaded file has no text.")

    doc = KnowledgeDocument(
        expert_id=expert.id,
        file_name=file_name,
        file_type=file_type or PurePath(file_name).suffix.lstrip(".").lower() or "txt",
        raw_text=raw_text,
        status=DocumentStatus.PENDING,
    )
    session.add(doc)
    await session.flush()

    task = ingest_knowledge_document.delay(document_id=doc.id)
    doc.celery_task_id = task.id

    # get_async_session commits after the handler returns
    logger.info(
        "Dispatched ingestion task: expert=%s, document_id=%d, task_id=%s",
        slug, doc.id, task.id,
    )

    return IngestResponse(
        document_id=doc.id,
        task_id=task.id,
        message=f"Document '{file_name}' uploaded. Ingestion in progress.",
    )


# ---------------------------------------------------------------------------
# GET /v1/ingest/{task_id}
# ---------------------------------------------------------------------------


@router.get(
    "/ingest/{task_id}",
    response_model=IngestStatusResponse,
    summary="Check knowledge ingestion status",
)
async def get_ingest_status(
    task_id: str,
    session: AsyncSession = Depends(get_async_session),
) -> IngestStatusResponse:
    """
    Celery task states: PENDING, STARTED, RETRY, SUCCESS, FAILURE.
    On SUCCESS the document and its chunk count are included.
    """
    result = AsyncResult(task_id, app=ingest_knowledge_document.app)
    status = result.status

    document: KnowledgeDocumentResponse | None = None
    chunk_count: int | None = None
    error: str | None = None

    if status == "SUCCESS":
        summary = result.result or {}
        doc_id = summary.get("document_id")
        if doc_id:
            doc = await session.get(KnowledgeDocument, doc_id)
            if doc:
                document = KnowledgeDocumentResponse.model_validate(doc)
        chunk_count = summary.get("chunk_count")

    elif status == "FAILURE":
        error = str(result.result) if result.result else "Unknown error"

    return IngestStatusResponse(
        task_id=task_id,
        status=status,
        document=document,
        chunk_count=chunk_count,
        error=error,
    )
