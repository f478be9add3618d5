# =============================================================================
# Unit Tests: Knowledge Ingestion Plumbing
# =============================================================================
#
# Celery wiring, the embedding batcher, worker sessions and the ingestion
# task. The embeddings client and vector store are mocked; worker sessions
# run against a throwaway SQLite file.
# =============================================================================

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker

from expert_engine.db import engine as db_engine
from expert_engine.db.engine import get_sync_session
from expert_engine.db.models import DocumentStatus
from expert_engine.services import embedder
from expert_engine.workers import tasks
from expert_engine.workers.celery_app import INGEST_QUEUE, celery_app
from expert_engine.workers.tasks import ingest_knowledge_document


def _reversed_response(**kwargs):
    """Embeddings API stand-in that returns items out of order."""
    batch = kwargs["input"]
    return SimpleNamespace(data=[
        SimpleNamespace(index=i, embedding=[float(len(text_))])
        for i, text_ in reversed(list(enumerate(batch)))
    ])


# ---------------------------------------------------------------------------
# Test: Celery configuration
# ---------------------------------------------------------------------------


class TestCeleryApp:

    def test_ingestion_is_routed_to_knowledge_queue(self):
        routes = celery_app.conf.task_routes
        assert routes["ingest_knowledge_document"] == {"queue": INGEST_QUEUE}

    def test_started_state_is_tracked(self):
        assert celery_app.conf.task_track_started is True

    def test_task_is_registered(self):
        assert ingest_knowledge_document.name == "ingest_knowledge_document"
        assert ingest_knowledge_document.max_retries == 3


# ---------------------------------------------------------------------------
# Test: Embedding batches
# ---------------------------------------------------------------------------


class TestEmbedBatch:

    def test_empty_input_needs_no_client(self):
        with patch.object(embedder, "_get_client") as get_client:
            assert embedder.embed_batch([]) == []
        get_client.assert_not_called()

    def test_order_follows_input_across_batches(self):
        client = MagicMock()
        client.embeddings.create.side_effect = _reversed_response
        with patch.object(embedder, "_get_client", return_value=client):
            vectors = embedder.embed_batch(["a", "bb", "ccc"], batch_size=2)

        assert vectors == [[1.0], [2.0], [3.0]]
        assert client.embeddings.create.call_count == 2

    def test_missing_vector_raises(self):
        client = MagicMock()
        client.embeddings.create.return_value = SimpleNamespace(
            data=[SimpleNamespace(index=0, embedding=[1.0])],
        )
        with patch.object(embedder, "_get_client", return_value=client):
            with pytest.raises(RuntimeError, match="no vector for 1 of 2"):
                embedder.embed_batch(["a", "b"])


# ---------------------------------------------------------------------------
# Test: Worker sessions
# ---------------------------------------------------------------------------


class TestSyncSession:

    def test_commits_on_exit_and_rolls_back_on_error(self, tmp_path):
        factory = sessionmaker(
            bind=create_engine(f"sqlite:///{tmp_path / 'worker.db'}"),
            expire_on_commit=False,
        )
        with patch.object(db_engine, "_sync_session_factory", return_value=factory):
            with get_sync_session() as session:
                session.execute(text("CREATE TABLE marks (n INTEGER)"))
                session.execute(text("INSERT INTO marks VALUES (1)"))

            with pytest.raises(RuntimeError):
                with get_sync_session() as session:
                    session.execute(text("INSERT INTO marks VALUES (2)"))
                    raise RuntimeError("embedding failed")

            with get_sync_session() as session:
                count = session.execute(text("SELECT count(*) FROM marks")).scalar()

        assert count == 1


# ---------------------------------------------------------------------------
# Test: Ingestion task
# ---------------------------------------------------------------------------


class TestIngestKnowledgeDocument:

    TEXT = "# Cover\n\nNominal cover for severe exposure is 45mm.\n\nUse M30 or better."

    def _run(self, store):
        with (
            patch.object(tasks, "_update_document_status") as update_status,
            patch.object(tasks, "_load_document", return_value=(7, "IS456.md", "md", self.TEXT)),
            patch.object(tasks, "embed_batch", side_effect=lambda texts: [[0.1]] * len(texts)),
            patch.object(tasks, "get_vector_store", return_value=store),
        ):
            summary = ingest_knowledge_document(document_id=5)
        return summary, [c.args[1] for c in update_status.call_args_list]

    def test_chunks_are_stored_for_the_expert(self):
        store = MagicMock()
        summary, statuses = self._run(store)

        assert statuses == [DocumentStatus.PROCESSING, DocumentStatus.COMPLETED]
        assert summary["document_id"] == 5
        assert summary["chunk_count"] >= 1

        kwargs = store.add_chunks.call_args.kwargs
        assert kwargs["expert_id"] == 7
        assert kwargs["document_id"] == 5
        assert kwargs["file_type"] == "md"
        assert len(kwargs["contents"]) == summary["chunk_count"]
        assert kwargs["metadatas"][0]["section_title"] == "Cover"

    def test_store_failure_marks_document_failed(self):
        store = MagicMock()
        store.add_chunks.side_effect = RuntimeError("chroma unavailable")

        with patch.object(tasks, "_update_document_status") as update_status:
            with (
                patch.object(tasks, "_load_document", return_value=(7, "a.md", "md", self.TEXT)),
                patch.object(tasks, "embed_batch", side_effect=lambda t: [[0.1]] * len(t)),
                patch.object(tasks, "get_vector_store", return_value=store),
                pytest.raises(RuntimeError, match="chroma unavailable"),
            ):
                ingest_knowledge_document(document_id=5)

        last = update_status.call_args_list[-1]
        assert last.args == (5, DocumentStatus.FAILED)
        assert last.kwargs["error_message"] == "chroma unavailable"
