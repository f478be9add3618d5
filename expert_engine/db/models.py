# =============================================================================
# Database Models: SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌──────────────┐      ┌─────────────────────┐      ┌──────────────────────┐
# │  experts     │      │ knowledge_documents │      │ knowledge_chunks     │
# ├──────────────┤      ├─────────────────────┤      ├──────────────────────┤
# │ id (PK)      │─1:N─▶│ id (PK)             │─1:N─▶│ id (PK)              │
# │ slug (uniq)  │      │ expert_id (FK)      │      │ document_id (FK)     │
# │ name, domain │      │ file_name/file_type │      │ expert_id (FK)       │
# │ system_prompt│      │ status              │      │ content, chunk_index │
# │ version      │      │ raw_text            │      │ section_title        │
# │ is_published │      └─────────────────────┘      │ embedding vector(N)  │
# └──────────────┘                                   └──────────────────────┘
#        │
#        ├─1:N─▶ decision_trees (tree_data JSONB, is_active)
#        └─1:N─▶ query_logs / review_logs
#                collaboration_logs (expert slugs in JSONB)
#
# Chunks carry expert_id directly so retrieval can scope a similarity
# search to one expert's knowledge base without joining through documents.
# Tree data is stored as the camelCase JSON produced by
# `DecisionTree.model_dump(by_alias=True)`.
# =============================================================================

import enum
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from expert_engine.config import settings


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class for all ORM models."""

    pass


class DocumentStatus(str, enum.Enum):
    """
    Tracks the knowledge ingestion state for a document.

    State machine:
        PENDING → PROCESSING → COMPLETED
                             → FAILED
    """

    PENDING = "pending"          # Uploaded, waiting for Celery to pick up
    PROCESSING = "processing"    # Celery worker is chunking/embedding
    COMPLETED = "completed"      # All chunks embedded and stored
    FAILED = "failed"            # Something went wrong (see error_message)


# =============================================================================
# Experts and Knowledge
# =============================================================================


class Expert(Base):
    """
    A domain expert persona: system prompt + knowledge scope + optional
    decision tree.
    """

    __tablename__ = "experts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Public identifier used by the API ("concrete-design")
    slug: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)

    name: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    domain: Mapped[str] = mapped_column(String(200), nullable=False)
    system_prompt: Mapped[str] = mapped_column(Text, nullable=False)

    # "mandatory" is the only mode the engine enforces today
    citation_mode: Mapped[str] = mapped_column(
        String(50), nullable=False, default="mandatory",
    )
    version: Mapped[str] = mapped_column(String(50), nullable=False, default="1.0.0")
    is_published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    config: Mapped[dict | None] = mapped_column(JSONB, nullable=True, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    documents: Mapped[list["KnowledgeDocument"]] = relationship(
        "KnowledgeDocument",
        back_populates="expert",
        cascade="all, delete-orphan",
    )
    trees: Mapped[list["DecisionTreeRecord"]] = relationship(
        "DecisionTreeRecord",
        back_populates="expert",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Expert(id={self.id}, slug='{self.slug}')>"


class KnowledgeDocument(Base):
    """A reference document uploaded into one expert's knowledge base."""

    __tablename__ = "knowledge_documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    expert_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("experts.id", ondelete="CASCADE"),
        nullable=False,
    )
    file_name: Mapped[str] = mapped_column(String(500), nullable=False)
    file_type: Mapped[str] = mapped_column(String(50), nullable=False)

    # Extracted text; chunking reads from here
    raw_text: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[DocumentStatus] = mapped_column(
        Enum(DocumentStatus),
        nullable=False,
        default=DocumentStatus.PENDING,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    celery_task_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    expert: Mapped["Expert"] = relationship("Expert", back_populates="documents")
    chunks: Mapped[list["KnowledgeChunk"]] = relationship(
        "KnowledgeChunk",
        back_populates="document",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return (
            f"<KnowledgeDocument(id={self.id}, file_name='{self.file_name}', "
            f"status={self.status})>"
        )


class KnowledgeChunk(Base):
    """One retrievable slice of a knowledge document plus its embedding."""

    __tablename__ = "knowledge_chunks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    document_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("knowledge_documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    expert_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("experts.id", ondelete="CASCADE"),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    page_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    section_title: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    embedding: Mapped[list[float] | None] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=True,
    )

    # Named `metadata_` to avoid colliding with DeclarativeBase.metadata
    metadata_: Mapped[dict | None] = mapped_column(
        JSONB,
        nullable=True,
        default=dict,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    document: Mapped["KnowledgeDocument"] = relationship(
        "KnowledgeDocument", back_populates="chunks",
    )

    def __repr__(self) -> str:
        return (
            f"<KnowledgeChunk(id={self.id}, doc_id={self.document_id}, "
            f"index={self.chunk_index})>"
        )


# HNSW index with cosine ops, matching the retrieval metric
knowledge_chunk_embedding_idx = Index(
    "idx_knowledge_chunk_embedding_hnsw",
    KnowledgeChunk.embedding,
    postgresql_using="hnsw",
    postgresql_with={"m": 16, "ef_construction": 64},
    postgresql_ops={"embedding": "vector_cosine_ops"},
)

knowledge_chunk_expert_idx = Index(
    "idx_knowledge_chunk_expert_id",
    KnowledgeChunk.expert_id,
)


# =============================================================================
# Decision Trees
# =============================================================================


class DecisionTreeRecord(Base):
    """
    A stored decision tree. At most one active tree per expert is evaluated
    per query; when several are active the most recently created wins.
    """

    __tablename__ = "decision_trees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    expert_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("experts.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    tree_data: Mapped[dict] = mapped_column(JSONB, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    expert: Mapped["Expert"] = relationship("Expert", back_populates="trees")


decision_tree_expert_idx = Index(
    "idx_decision_tree_expert_active",
    DecisionTreeRecord.expert_id,
    DecisionTreeRecord.is_active,
)


# =============================================================================
# Audit Logs: Append-Only, Written Fire-And-Forget
# =============================================================================


class QueryLog(Base):
    """One row per single-expert answer."""

    __tablename__ = "query_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    expert_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("experts.id", ondelete="CASCADE"),
        nullable=False,
    )
    query_text: Mapped[str] = mapped_column(Text, nullable=False)
    response_text: Mapped[str] = mapped_column(Text, nullable=False)
    citations: Mapped[list | None] = mapped_column(JSONB, nullable=True, default=list)
    decision_path: Mapped[list | None] = mapped_column(
        JSONB, nullable=True, default=list,
    )
    confidence: Mapped[str | None] = mapped_column(String(20), nullable=True)
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class ReviewLog(Base):
    """One row per document review."""

    __tablename__ = "review_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    expert_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("experts.id", ondelete="CASCADE"),
        nullable=False,
    )
    document_title: Mapped[str] = mapped_column(String(500), nullable=False)
    total_segments: Mapped[int] = mapped_column(Integer, nullable=False)
    annotations: Mapped[list | None] = mapped_column(JSONB, nullable=True, default=list)
    summary: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    confidence: Mapped[str | None] = mapped_column(String(20), nullable=True)
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class CollaborationLog(Base):
    """One row per multi-expert deliberation."""

    __tablename__ = "collaboration_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    query_text: Mapped[str] = mapped_column(Text, nullable=False)
    mode: Mapped[str] = mapped_column(String(20), nullable=False)
    expert_slugs: Mapped[list] = mapped_column(JSONB, nullable=False)
    rounds: Mapped[list | None] = mapped_column(JSONB, nullable=True, default=list)
    consensus: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


query_log_expert_idx = Index(
    "idx_query_log_expert_created",
    QueryLog.expert_id,
    QueryLog.created_at,
)

review_log_expert_idx = Index(
    "idx_review_log_expert_created",
    ReviewLog.expert_id,
    ReviewLog.created_at,
)
