# =============================================================================
# Grounded Expert Engine
# =============================================================================
# Domain expert personas answer questions from their own knowledge base,
# with every answer citation-verified and refused when it is not grounded.
#
# Package structure:
#   expert_engine/
#   ├── api/          → FastAPI route handlers (query, collaborate, review,
#   │                    knowledge ingestion) with SSE streaming
#   ├── engine/       → Reasoning core (decision trees, citations, guard,
#   │                    single-expert pipeline, collaboration, review)
#   ├── db/           → Database engines, sessions, and ORM models
#   ├── models/       → Pydantic V2 request/response schemas
#   ├── services/     → LLM, embeddings, vector stores, retrieval, expert
#   │                    lookup, audit sink, chunking
#   └── workers/      → Celery task definitions and configuration
# =============================================================================
