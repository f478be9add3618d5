# =============================================================================
# Audit Logging: Fire-And-Forget Persistence of Pipeline Results
# =============================================================================
#
# Every answered query, document review and collaboration is recorded for
# later inspection. Writes never sit on the critical path:
#
#   pipeline ──submit(record)──▶ AuditLogger ──background task──▶ AuditSink
#
# `submit()` schedules the write and returns immediately. A failed write
# is logged and dropped; it never reaches the caller. Writes use their own
# DB session, never a transaction shared with the pipeline.
#
# `flush()` awaits writes still in flight (application shutdown, tests).
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, Union

from expert_engine.config import settings
from expert_engine.db.engine import async_session_factory
from expert_engine.db.models import CollaborationLog, QueryLog, ReviewLog

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class QueryAuditRecord:
    expert_id: int
    query: str
    answer: str
    citations: list[dict[str, Any]] = field(default_factory=list)
    decision_path: list[dict[str, Any]] = field(default_factory=list)
    confidence: str | None = None
    latency_ms: int | None = None


@dataclass
class ReviewAuditRecord:
    expert_id: int
    document_title: str
    total_segments: int
    annotations: list[dict[str, Any]] = field(default_factory=list)
    summary: dict[str, Any] | None = None
    confidence: str | None = None
    latency_ms: int | None = None


@dataclass
class CollaborationAuditRecord:
    query: str
    mode: str
    expert_slugs: list[str]
    rounds: list[dict[str, Any]] = field(default_factory=list)
    consensus: dict[str, Any] | None = None
    latency_ms: int | None = None


AuditRecord = Union[QueryAuditRecord, ReviewAuditRecord, CollaborationAuditRecord]


# ---------------------------------------------------------------------------
# Sink
# ---------------------------------------------------------------------------


class AuditSink(Protocol):
    async def write(self, record: AuditRecord) -> None:
        ...


class SqlAuditSink:
    """Writes audit records into the *_logs tables, one session per write."""

    async def write(self, record: AuditRecord) -> None:
        if isinstance(record, QueryAuditRecord):
            row = QueryLog(
                expert_id=record.expert_id,
                query_text=record.query,
                response_text=record.answer,
                citations=record.citations,
                decision_path=record.decision_path,
                confidence=record.confidence,
                latency_ms=record.latency_ms,
            )
        elif isinstance(record, ReviewAuditRecord):
            row = ReviewLog(
                expert_id=record.expert_id,
                document_title=record.document_title[:500],
                total_segments=record.total_segments,
                annotations=record.annotations,
                summary=record.summary,
                confidence=record.confidence,
                latency_ms=record.latency_ms,
            )
        else:
            row = CollaborationLog(
                query_text=record.query,
                mode=record.mode,
                expert_slugs=record.expert_slugs,
                rounds=record.rounds,
                consensus=record.consensus,
                latency_ms=record.latency_ms,
            )

        async with async_session_factory() as session:
            session.add(row)
            await session.commit()


# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------


class AuditLogger:
    """
    Best-effort, non-blocking front for an AuditSink.

    Pending writes are tracked per instance so they are not garbage
    collected mid-flight and can be awaited by flush().
    """

    def __init__(self, sink: AuditSink | None, enabled: bool = True) -> None:
        self._sink = sink
        self._enabled = enabled
        self._pending: set[asyncio.Task] = set()

    def submit(self, record: AuditRecord) -> None:
        """Schedule a write and return immediately."""
        if not self._enabled or self._sink is None:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "No running event loop, dropping %s", type(record).__name__,
            )
            return

        task = loop.create_task(self._write(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def flush(self) -> None:
        """Wait for all writes submitted so far."""
        if self._pending:
            await asyncio.gather(*list(self._pending))

    async def _write(self, record: AuditRecord) -> None:
        try:
            await self._sink.write(record)
        except Exception as e:
            logger.warning(
                "Failed to write audit record %s: %s", type(record).__name__, e,
            )


_audit_logger: AuditLogger | None = None


def get_audit_logger() -> AuditLogger:
    """Process-wide AuditLogger writing to PostgreSQL."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger(
            SqlAuditSink(), enabled=settings.audit_logging_enabled,
        )
    return _audit_logger
