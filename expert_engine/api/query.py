# =============================================================================
# Query API: Single-Expert Answers
# =============================================================================
#
#   POST /v1/query   JSON QueryResult, or SSE when `stream` is set or the
#                    client accepts text/event-stream
#
# The route is thin: request validation, the error mapping from
# api/deps.py, and dispatch into the LangGraph answer pipeline.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from expert_engine.api.deps import provide_engine_deps, sse_response, to_http_error, wants_stream
from expert_engine.config import settings
from expert_engine.engine.deps import EngineDeps
from expert_engine.engine.query_pipeline import run_query, stream_query
from expert_engine.engine.types import QueryResult
from expert_engine.models.requests import QueryRequest
from expert_engine.services.experts import resolve_expert

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["Query"])


@router.post(
    "/query",
    response_model=QueryResult,
    summary="Ask one expert a question",
    description=(
        "Retrieves the expert's knowledge, walks its active decision tree and "
        "returns a citation-verified answer. Answers without verifiable "
        "sources are replaced by a fixed refusal."
    ),
)
async def query_endpoint(
    http_request: Request,
    request: QueryRequest,
    deps: EngineDeps = Depends(provide_engine_deps),
) -> QueryResult | StreamingResponse:
    logger.info(
        "Query request: expert=%s, query='%s', stream=%s",
        request.expert, request.query[:80], request.stream,
    )

    try:
        if wants_stream(http_request, request.stream):
            await resolve_expert(deps.experts, request.expert)
            return sse_response(stream_query(
                request.expert,
                request.query,
                deps=deps,
                web_search=request.web_search,
                timeout=settings.pipeline_timeout_seconds,
            ))

        return await run_query(
            request.expert,
            request.query,
            deps=deps,
            web_search=request.web_search,
            timeout=settings.pipeline_timeout_seconds,
        )
    except Exception as e:
        raise to_http_error(e) from e
