# =============================================================================
# Database Package
# =============================================================================
# Provides async + sync SQLAlchemy engines, session management, and ORM models.
#
# Key exports:
#   - async_session_factory / get_sync_session: session entry points
#   - Base: SQLAlchemy declarative base for ORM models
#   - Expert, KnowledgeDocument, KnowledgeChunk, DecisionTreeRecord
#   - QueryLog, ReviewLog, CollaborationLog: audit tables
# =============================================================================
