# =============================================================================
# Workers Package: Celery Background Tasks
# =============================================================================
#   - celery_app.py: Celery application configuration
#   - tasks.py: Knowledge ingestion (chunk, embed, store)
# =============================================================================
