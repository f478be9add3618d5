# =============================================================================
# Celery Application: Knowledge Ingestion Workers
# =============================================================================
#
#   POST /v1/experts/{slug}/documents ──▶ "knowledge" queue ──▶ worker
#   GET  /v1/ingest/{task_id}         ◀── result backend ◀──── worker
#
# Run a worker with:
#   celery -A expert_engine.workers.celery_app worker -Q knowledge --loglevel=info
# =============================================================================

from celery import Celery

from expert_engine.config import settings

INGEST_QUEUE = "knowledge"

celery_app = Celery(
    "expert_engine.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["expert_engine.workers.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_routes={"ingest_knowledge_document": {"queue": INGEST_QUEUE}},
    # The status endpoint reports STARTED while a document is being embedded
    task_track_started=True,
    # A document lost with its worker is redelivered, not dropped
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    # Large documents embed in several API calls
    task_soft_time_limit=300,
    task_time_limit=600,
    # Clients poll for an hour at most
    result_expires=3600,
)
