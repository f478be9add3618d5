# =============================================================================
# Review API: Document Review Against One Expert
# =============================================================================
#
#   POST /v1/review   JSON ReviewResult, or SSE annotation events
#
# Failed batches do not fail the request; they are listed in
# `failed_batches` (JSON) or reported as `batch_error` status events (SSE).
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from expert_engine.api.deps import provide_engine_deps, sse_response, to_http_error, wants_stream
from expert_engine.config import settings
from expert_engine.engine.deps import EngineDeps
from expert_engine.engine.review import run_review, stream_review
from expert_engine.engine.types import ReviewResult
from expert_engine.models.requests import ReviewRequest
from expert_engine.services.experts import resolve_expert

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["Review"])


@router.post(
    "/review",
    response_model=ReviewResult,
    summary="Review a document against an expert's knowledge base",
)
async def review_endpoint(
    http_request: Request,
    request: ReviewRequest,
    deps: EngineDeps = Depends(provide_engine_deps),
) -> ReviewResult | StreamingResponse:
    logger.info(
        "Review request: expert=%s, title='%s', %d chars",
        request.expert, request.document_title[:80], len(request.document_text),
    )

    try:
        if wants_stream(http_request, request.stream):
            await resolve_expert(deps.experts, request.expert)
            return sse_response(stream_review(
                request.expert,
                request.document_text,
                request.document_title,
                deps=deps,
                timeout=settings.pipeline_timeout_seconds,
            ))

        return await run_review(
            request.expert,
            request.document_text,
            request.document_title,
            deps=deps,
            timeout=settings.pipeline_timeout_seconds,
        )
    except Exception as e:
        raise to_http_error(e) from e
