# =============================================================================
# Expert Store: Persona and Decision Tree Lookup
# =============================================================================
#
# Read-only access to expert personas and their active decision tree.
# The engine only sees the `ExpertStore` protocol; `SqlExpertStore` reads
# the `experts` and `decision_trees` tables through the async session
# factory.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from pydantic import ValidationError
from sqlalchemy import select

from expert_engine.db.engine import async_session_factory
from expert_engine.db.models import DecisionTreeRecord, Expert as ExpertRow
from expert_engine.engine.errors import ExpertNotFoundError, ExpertNotPublishedError
from expert_engine.engine.types import DecisionTree

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Expert:
    """
    An expert persona as seen by the engine.

    The `system_prompt` is the persona's own voice; the engine appends its
    citation and collaboration rules to it.
    """

    id: int
    slug: str
    name: str
    domain: str
    system_prompt: str
    version: str = "1.0.0"
    is_published: bool = False
    description: str | None = None


class ExpertStore(Protocol):
    """Lookup of personas and their active decision tree."""

    async def get_by_slug(self, slug: str) -> Expert | None:
        ...

    async def get_active_tree(self, expert_id: int) -> DecisionTree | None:
        ...


class SqlExpertStore:
    """ExpertStore over PostgreSQL."""

    async def get_by_slug(self, slug: str) -> Expert | None:
        async with async_session_factory() as session:
            result = await session.execute(
                select(ExpertRow).where(ExpertRow.slug == slug)
            )
            row = result.scalar_one_or_none()

        if row is None:
            return None

        return Expert(
            id=row.id,
            slug=row.slug,
            name=row.name,
            domain=row.domain,
            system_prompt=row.system_prompt,
            version=row.version,
            is_published=row.is_published,
            description=row.description,
        )

    async def get_active_tree(self, expert_id: int) -> DecisionTree | None:
        """
        Return the expert's active decision tree, if any.

        With several active trees, the most recently created one is used.
        A stored tree that no longer validates is skipped with a warning;
        the expert then answers without decision support.
        """
        async with async_session_factory() as session:
            result = await session.execute(
                select(DecisionTreeRecord)
                .where(DecisionTreeRecord.expert_id == expert_id)
                .where(DecisionTreeRecord.is_active.is_(True))
                .order_by(DecisionTreeRecord.created_at.desc())
                .limit(1)
            )
            record = result.scalar_one_or_none()

        if record is None:
            return None

        try:
            return DecisionTree.model_validate(record.tree_data)
        except ValidationError as exc:
            logger.warning(
                "Decision tree %d for expert_id=%d is invalid, ignoring: %s",
                record.id, expert_id, exc,
            )
            return None


async def resolve_expert(
    store: ExpertStore,
    slug: str,
    require_published: bool = False,
) -> Expert:
    """
    Look up an expert by slug.

    Raises:
        ExpertNotFoundError: No expert with this slug.
        ExpertNotPublishedError: `require_published` and the expert is a draft.
    """
    expert = await store.get_by_slug(slug)
    if expert is None:
        raise ExpertNotFoundError(slug)
    if require_published and not expert.is_published:
        raise ExpertNotPublishedError(slug)
    return expert


_store: SqlExpertStore | None = None


def get_expert_store() -> SqlExpertStore:
    global _store
    if _store is None:
        _store = SqlExpertStore()
    return _store
