# =============================================================================
# Models Package: Pydantic Request/Response Schemas
# =============================================================================
#   - requests.py: Bodies accepted by the /v1 endpoints
#   - responses.py: Health, ingestion and error payloads
#
# Pipeline results (QueryResult, CollaborationResult, ReviewResult) are
# returned as-is from expert_engine.engine.types.
# =============================================================================
