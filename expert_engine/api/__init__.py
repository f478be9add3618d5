# =============================================================================
# API Package: FastAPI Route Handlers
# =============================================================================
# Each module defines an APIRouter for one feature:
#   - query.py: Single-expert answers (JSON or SSE)
#   - collaborate.py: Multi-expert debate / consensus / review
#   - review.py: Document review with annotations
#   - ingest.py: Knowledge upload and ingestion status
#   - deps.py: Engine wiring, error mapping and SSE framing
# =============================================================================
