# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# Async SQLAlchemy engine (asyncpg) for FastAPI handlers, the expert store
# and the audit sink. Celery workers are synchronous and use a separate,
# lazily created psycopg2 engine through `get_sync_session()`.
#
# COMMIT POLICY:
# 1. Dependency-injected (get_async_session via Depends): auto-commits when
#    the request handler returns, rolls back on exception.
# 2. Self-managed (async_session_factory() directly): used by the audit sink
#    and the stores, which run outside the request lifecycle. These MUST
#    commit explicitly.
# =============================================================================

from collections.abc import AsyncGenerator, Generator
from contextlib import contextmanager
from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session, sessionmaker

from expert_engine.config import settings

# ---------------------------------------------------------------------------
# Async Engine
# ---------------------------------------------------------------------------
# create_async_engine does not open a connection until first use, so
# importing this module needs neither a running database nor credentials.
# ---------------------------------------------------------------------------
async_engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=5,
    max_overflow=10,
)

# expire_on_commit=False: loaded rows stay readable after commit, outside
# the session (attribute access would otherwise trigger a lazy reload).
async_session_factory = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ---------------------------------------------------------------------------
# Sync Sessions: For Celery Workers
# ---------------------------------------------------------------------------
# psycopg2 is only needed by workers, so the engine is built on first use
# and cached for the life of the worker process.
# ---------------------------------------------------------------------------


@lru_cache
def _sync_session_factory() -> sessionmaker[Session]:
    engine = create_engine(
        settings.database_url_sync,
        echo=settings.debug,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
    )
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """
    One transaction per block for ingestion workers.

    Commits when the block exits and rolls back if it raises. Status
    updates open their own block so a FAILED status survives the rollback
    of the work that failed.
    """
    with _sync_session_factory()() as session, session.begin():
        yield session


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides a database session per request.

    The session commits when the handler returns and rolls back if it
    raises.
    """
    async with async_session_factory() as session, session.begin():
        yield session
