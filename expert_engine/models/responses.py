# =============================================================================
# API Response Models: Pydantic V2 Schemas
# =============================================================================
#
# Pipeline results are served straight from the engine's frozen models.
# This module holds the remaining payloads: health, knowledge ingestion
# and the status of a knowledge document.
# =============================================================================

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    """Response for GET /health."""

    status: str = "ok"
    version: str
    service: str


class KnowledgeDocumentResponse(BaseModel):
    """Knowledge document metadata (never the raw text or embeddings)."""

    id: int
    expert_id: int
    file_name: str
    file_type: str
    status: str
    error_message: str | None = None
    celery_task_id: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class IngestResponse(BaseModel):
    """
    Response for POST /v1/experts/{slug}/documents.

    The document is not searchable yet; poll GET /v1/ingest/{task_id}.
    """

    document_id: int = Field(description="ID of the created knowledge document")
    task_id: str = Field(description="Celery task ID for tracking ingestion")
    status: str = Field(default="processing")
    message: str = Field(default="Document uploaded. Ingestion in progress.")


class IngestStatusResponse(BaseModel):
    """Response for GET /v1/ingest/{task_id}."""

    task_id: str
    status: str = Field(description="Task status: PENDING, STARTED, RETRY, SUCCESS, FAILURE")
    document: KnowledgeDocumentResponse | None = None
    chunk_count: int | None = None
    error: str | None = None
