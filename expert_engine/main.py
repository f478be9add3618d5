# =============================================================================
# FastAPI Application Entrypoint
# =============================================================================
#
#   uvicorn expert_engine.main:app --reload
#
# Routers:
#   /v1/query, /v1/collaborate, /v1/review      reasoning pipelines
#   /v1/experts/{slug}/documents, /v1/ingest/*  knowledge ingestion
#   /health                                     liveness
# =============================================================================

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from expert_engine.api import collaborate, ingest, query, review
from expert_engine.config import settings
from expert_engine.models.responses import HealthResponse
from expert_engine.services.audit import get_audit_logger

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("%s %s starting", settings.app_name, settings.app_version)
    yield
    # Pending audit writes would otherwise die with the event loop
    await get_audit_logger().flush()
    logger.info("%s shut down", settings.app_name)


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description=(
        "Grounded domain-expert reasoning: citation-verified answers, "
        "multi-expert deliberation and document review."
    ),
    lifespan=lifespan,
)

app.include_router(query.router)
app.include_router(collaborate.router)
app.include_router(review.router)
app.include_router(ingest.router)


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health() -> HealthResponse:
    return HealthResponse(
        status="ok", version=settings.app_version, service=settings.app_name,
    )
