# =============================================================================
# Unit Tests: HTTP Surface
# =============================================================================
#
# Routes run against in-memory engine fakes through dependency_overrides.
# The database session and the Celery task are mocked for ingestion.
# =============================================================================

from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fakes import FakeRetriever, ScriptedLLM, make_chunk, make_deps, make_expert
from fastapi import HTTPException
from fastapi.testclient import TestClient

from expert_engine.api.deps import provide_engine_deps, to_http_error
from expert_engine.db.engine import get_async_session
from expert_engine.engine.errors import (
    CollaborationValidationError,
    ExpertNotFoundError,
    ExpertNotPublishedError,
    PipelineTimeoutError,
)
from expert_engine.main import app

CONCRETE = make_expert(1, "concrete")
FIRE = make_expert(2, "fire", domain="fire safety")
GROUNDED = "Use 45mm cover [Source 1]."


def _frames(body: str) -> list[dict]:
    return [
        json.loads(line[len("data: "):])
        for line in body.split("\n\n")
        if line.startswith("data: ")
    ]


@pytest.fixture
def client():
    yield TestClient(app)
    app.dependency_overrides.clear()


def _use_deps(reply=GROUNDED, retriever=None):
    deps = make_deps(
        [CONCRETE, FIRE],
        ScriptedLLM(reply),
        retriever=retriever or FakeRetriever({1: [make_chunk(1)], 2: [make_chunk(2)]}),
    )
    app.dependency_overrides[provide_engine_deps] = lambda: deps
    return deps


# ---------------------------------------------------------------------------
# Test: Health
# ---------------------------------------------------------------------------


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


# ---------------------------------------------------------------------------
# Test: POST /v1/query
# ---------------------------------------------------------------------------


class TestQueryEndpoint:

    def test_json_answer(self, client):
        _use_deps()
        response = client.post("/v1/query", json={"expert": "concrete", "query": "Cover?"})

        assert response.status_code == 200
        body = response.json()
        assert body["answer"] == GROUNDED
        assert [c["id"] for c in body["citations"]] == ["src_1"]
        assert body["plugin_version"] == "2.1.0"

    def test_unknown_expert_is_404(self, client):
        _use_deps()
        response = client.post("/v1/query", json={"expert": "ghost", "query": "Cover?"})
        assert response.status_code == 404

    def test_unknown_expert_is_404_before_stream(self, client):
        _use_deps()
        response = client.post(
            "/v1/query", json={"expert": "ghost", "query": "Cover?", "stream": True},
        )
        assert response.status_code == 404

    def test_upstream_failure_is_502(self, client):
        _use_deps(retriever=FakeRetriever(error=RuntimeError("vector store down")))
        response = client.post("/v1/query", json={"expert": "concrete", "query": "Cover?"})

        assert response.status_code == 502
        assert "vector store down" in response.json()["detail"]

    def test_empty_query_rejected(self, client):
        _use_deps()
        response = client.post("/v1/query", json={"expert": "concrete", "query": ""})
        assert response.status_code == 422

    def test_stream_flag(self, client):
        _use_deps()
        response = client.post(
            "/v1/query", json={"expert": "concrete", "query": "Cover?", "stream": True},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        frames = _frames(response.text)
        assert frames[0]["type"] == "status"
        assert any(f["type"] == "delta" for f in frames)
        assert frames[-1]["type"] == "done"

    def test_accept_header_streams(self, client):
        _use_deps()
        response = client.post(
            "/v1/query",
            json={"expert": "concrete", "query": "Cover?"},
            headers={"Accept": "text/event-stream"},
        )
        assert response.headers["content-type"].startswith("text/event-stream")


# ---------------------------------------------------------------------------
# Test: POST /v1/collaborate
# ---------------------------------------------------------------------------


class TestCollaborateEndpoint:

    def test_single_expert_is_400(self, client):
        _use_deps()
        response = client.post(
            "/v1/collaborate", json={"experts": ["concrete"], "query": "Cover?"},
        )
        assert response.status_code == 400

    def test_single_expert_is_400_when_streaming(self, client):
        _use_deps()
        response = client.post(
            "/v1/collaborate",
            json={"experts": ["concrete"], "query": "Cover?", "stream": True},
        )
        assert response.status_code == 400

    def test_unknown_mode_is_422(self, client):
        _use_deps()
        response = client.post(
            "/v1/collaborate",
            json={"experts": ["concrete", "fire"], "query": "Cover?", "mode": "vote"},
        )
        assert response.status_code == 422

    def test_timeout_is_504(self, client):
        _use_deps()
        with patch(
            "expert_engine.api.collaborate.run_collaboration",
            AsyncMock(side_effect=PipelineTimeoutError("Pipeline exceeded 1s")),
        ):
            response = client.post(
                "/v1/collaborate", json={"experts": ["concrete", "fire"], "query": "Cover?"},
            )
        assert response.status_code == 504

    def test_consensus_mode(self, client):
        _use_deps()
        response = client.post(
            "/v1/collaborate",
            json={"experts": ["concrete", "fire"], "query": "Cover?", "mode": "consensus"},
        )

        assert response.status_code == 200
        body = response.json()
        assert len(body["rounds"]) == 1
        assert [r["plugin_slug"] for r in body["rounds"][0]["responses"]] == ["concrete", "fire"]


# ---------------------------------------------------------------------------
# Test: POST /v1/review
# ---------------------------------------------------------------------------


class TestReviewEndpoint:

    def test_json_review(self, client):
        _use_deps(reply="[]")
        response = client.post(
            "/v1/review",
            json={
                "expert": "concrete",
                "document_text": "Cover is 20mm.\n\nGrade is M20.",
                "document_title": "Beam schedule",
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["document_title"] == "Beam schedule"
        assert body["total_segments"] == 2
        assert body["summary"]["overall_compliance"] == "compliant"

    def test_blank_document_rejected(self, client):
        _use_deps()
        response = client.post(
            "/v1/review", json={"expert": "concrete", "document_text": "   "},
        )
        assert response.status_code == 422


# ---------------------------------------------------------------------------
# Test: Ingestion
# ---------------------------------------------------------------------------


def _session(expert=None):
    session = MagicMock()
    session.scalar = AsyncMock(return_value=expert)
    session.flush = AsyncMock()
    session.get = AsyncMock(return_value=None)
    session.add = MagicMock(side_effect=lambda doc: setattr(doc, "id", 11))

    async def override():
        yield session

    app.dependency_overrides[get_async_session] = override
    return session


class TestIngestEndpoints:

    def test_upload_dispatches_task(self, client):
        session = _session(SimpleNamespace(id=1))
        with patch("expert_engine.api.ingest.ingest_knowledge_document") as task:
            task.delay.return_value = SimpleNamespace(id="task-1")
            response = client.post(
                "/v1/experts/concrete/documents",
                files={"file": ("cover.md", b"# Cover\n\nUse 45mm.", "text/markdown")},
            )

        assert response.status_code == 202
        assert response.json()["task_id"] == "task-1"
        task.delay.assert_called_once_with(document_id=11)
        doc = session.add.call_args.args[0]
        assert doc.file_type == "md"
        assert doc.celery_task_id == "task-1"

    def test_upload_unknown_expert(self, client):
        _session(None)
        response = client.post(
            "/v1/experts/ghost/documents",
            files={"file": ("cover.md", b"text", "text/markdown")},
        )
        assert response.status_code == 404

    def test_upload_binary_rejected(self, client):
        _session(SimpleNamespace(id=1))
        response = client.post(
            "/v1/experts/concrete/documents",
            files={"file": ("scan.pdf", b"\xff\xfe\x00\x81", "application/pdf")},
        )
        assert response.status_code == 400

    def test_status_failure(self, client):
        _session()
        failed = SimpleNamespace(status="FAILURE", result=RuntimeError("embedding failed"))
        with patch("expert_engine.api.ingest.AsyncResult", return_value=failed):
            response = client.get("/v1/ingest/task-1")

        assert response.status_code == 200
        assert response.json()["status"] == "FAILURE"
        assert response.json()["error"] == "embedding failed"

    def test_status_success_reports_chunk_count(self, client):
        _session()
        done = SimpleNamespace(status="SUCCESS", result={"document_id": 11, "chunk_count": 4})
        with patch("expert_engine.api.ingest.AsyncResult", return_value=done):
            response = client.get("/v1/ingest/task-1")

        assert response.json()["chunk_count"] == 4
        assert response.json()["document"] is None


# ---------------------------------------------------------------------------
# Test: Error mapping
# ---------------------------------------------------------------------------


class TestErrorMapping:

    @pytest.mark.parametrize(
        "exc, status",
        [
            (ExpertNotFoundError("x"), 404),
            (ExpertNotPublishedError("x"), 403),
            (CollaborationValidationError("too few experts"), 400),
            (PipelineTimeoutError("slow"), 504),
            (ValueError("missing API key"), 503),
            (RuntimeError("provider down"), 502),
        ],
    )
    def test_status_codes(self, exc, status):
        assert to_http_error(exc).status_code == status

    def test_upstream_detail_truncated(self):
        error = to_http_error(RuntimeError("e" * 500))
        assert len(error.detail) < 300

    def test_misconfigured_provider_is_503(self):
        with patch(
            "expert_engine.api.deps.get_engine_deps",
            side_effect=ValueError("No Anthropic API key"),
        ):
            with pytest.raises(HTTPException) as info:
                provide_engine_deps()
        assert info.value.status_code == 503
