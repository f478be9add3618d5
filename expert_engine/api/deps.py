# =============================================================================
# API Dependencies: Engine Wiring, Error Mapping, SSE Responses
# =============================================================================
#
# provide_engine_deps()  FastAPI dependency returning the EngineDeps bundle;
#                        a misconfigured provider becomes 503. Tests swap it
#                        out through app.dependency_overrides.
# to_http_error()        engine exception → HTTPException
#                          not found 404, not published 403,
#                          validation 400, timeout 504,
#                          configuration ValueError 503, anything else 502
# sse_response()         typed events → text/event-stream
#
# Streaming endpoints resolve their experts BEFORE the stream opens, so
# lookup failures keep their 404/403 status. Once the stream has started,
# every failure arrives as the terminal `error` event instead.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from fastapi import HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from expert_engine.engine.deps import EngineDeps, get_engine_deps
from expert_engine.engine.errors import (
    CollaborationValidationError,
    ExpertNotFoundError,
    ExpertNotPublishedError,
    PipelineTimeoutError,
)
from expert_engine.engine.events import format_sse, truncate_error

logger = logging.getLogger(__name__)


def provide_engine_deps() -> EngineDeps:
    try:
        return get_engine_deps()
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        raise HTTPException(
            status_code=503, detail=f"Service configuration error: {e}",
        ) from e


def wants_stream(request: Request, stream_flag: bool) -> bool:
    return stream_flag or "text/event-stream" in request.headers.get("accept", "")


def to_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ExpertNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ExpertNotPublishedError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, CollaborationValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, PipelineTimeoutError):
        return HTTPException(status_code=504, detail=str(exc))
    if isinstance(exc, ValueError):
        logger.error("Configuration error: %s", exc)
        return HTTPException(
            status_code=503, detail=f"Service configuration error: {exc}",
        )
    logger.exception("Pipeline failed: %s", exc)
    return HTTPException(
        status_code=502, detail=f"Upstream service error: {truncate_error(str(exc))}",
    )


async def _frames(events: AsyncIterator[BaseModel]) -> AsyncIterator[str]:
    async for event in events:
        yield format_sse(event)


def sse_response(events: AsyncIterator[BaseModel]) -> StreamingResponse:
    return StreamingResponse(
        _frames(events),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
