# =============================================================================
# Collaboration API: Multi-Expert Deliberation
# =============================================================================
#
#   POST /v1/collaborate   JSON CollaborationResult, or SSE progress events
#
# Expert count, empty query and mode are checked before any I/O (400).
# =============================================================================

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from expert_engine.api.deps import provide_engine_deps, sse_response, to_http_error, wants_stream
from expert_engine.config import settings
from expert_engine.engine.collaboration import (
    run_collaboration,
    stream_collaboration,
    validate_collaboration,
)
from expert_engine.engine.deps import EngineDeps
from expert_engine.engine.types import CollaborationResult
from expert_engine.models.requests import CollaborateRequest
from expert_engine.services.experts import resolve_expert

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["Collaboration"])


@router.post(
    "/collaborate",
    response_model=CollaborationResult,
    summary="Run a multi-expert collaboration",
    description=(
        "2-5 experts answer in debate, consensus or review mode; a moderator "
        "then synthesises a consensus with merged citations."
    ),
)
async def collaborate_endpoint(
    http_request: Request,
    request: CollaborateRequest,
    deps: EngineDeps = Depends(provide_engine_deps),
) -> CollaborationResult | StreamingResponse:
    logger.info(
        "Collaboration request: experts=%s, mode=%s, max_rounds=%d",
        request.experts, request.mode, request.max_rounds,
    )

    try:
        if wants_stream(http_request, request.stream):
            validate_collaboration(request.experts, request.query, request.mode)
            await asyncio.gather(
                *(resolve_expert(deps.experts, slug) for slug in request.experts)
            )
            return sse_response(stream_collaboration(
                request.experts,
                request.query,
                mode=request.mode,
                max_rounds=request.max_rounds,
                deps=deps,
                timeout=settings.pipeline_timeout_seconds,
            ))

        return await run_collaboration(
            request.experts,
            request.query,
            mode=request.mode,
            max_rounds=request.max_rounds,
            deps=deps,
            timeout=settings.pipeline_timeout_seconds,
        )
    except Exception as e:
        raise to_http_error(e) from e
