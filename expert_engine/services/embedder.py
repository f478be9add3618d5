# =============================================================================
# Embedding Service: Batch Vector Generation (Provider-Agnostic)
# =============================================================================
#
# Generates vector embeddings using any OpenAI-compatible embedding API.
#
# The client is synchronous. Celery ingestion workers call it directly;
# the async retriever wraps calls in `asyncio.to_thread()` so queries and
# review segments never block the event loop.
#
# No retry logic here. Ingestion retries at the Celery task level; query
# time failures propagate to the caller, which owns the retry policy.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence

from openai import OpenAI

from expert_engine.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Embedding Client: Lazy Singleton
# ---------------------------------------------------------------------------
# API key resolution order:
#   1. OPENAI_API_KEY (explicit embedding key)
#   2. LLM_API_KEY (shared key for providers serving both)
# ---------------------------------------------------------------------------

_client: OpenAI | None = None


def _get_client() -> OpenAI:
    """Lazily initialize and cache the embedding client."""
    global _client
    if _client is None:
        resolved_key = settings.openai_api_key or settings.llm_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for embeddings. "
                "Set OPENAI_API_KEY or LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key}
        if settings.embedding_base_url:
            client_kwargs["base_url"] = settings.embedding_base_url

        _client = OpenAI(**client_kwargs)

        logger.info(
            "Initialized embedding client (model=%s, base_url=%s)",
            settings.embedding_model,
            settings.embedding_base_url or "https://api.openai.com/v1",
        )
    return _client


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def embed_batch(
    texts: Sequence[str],
    batch_size: int | None = None,
) -> list[list[float]]:
    """
    Generate embeddings for a list of texts.

    Processes texts in sub-batches to respect API token limits and returns
    embeddings in the SAME ORDER as the input texts.

    Args:
        texts: Text strings to embed (knowledge chunks or review segments).
        batch_size: Number of texts per API call. Defaults to
            settings.embedding_batch_size.

    Returns:
        One embedding vector per input text.

    Raises:
        ValueError: If no embedding API key is configured.
        openai.APIError: If the embeddings call fails.
        RuntimeError: If the response is missing a vector for any text.
    """
    if not texts:
        return []

    client = _get_client()
    _batch_size = batch_size or settings.embedding_batch_size

    all_embeddings: list[list[float]] = [[] for _ in texts]

    for i in range(0, len(texts), _batch_size):
        batch = list(texts[i : i + _batch_size])
        logger.debug(
            "Embedding texts %d-%d of %d (model=%s)",
            i + 1,
            min(i + _batch_size, len(texts)),
            len(texts),
            settings.embedding_model,
        )

        create_kwargs: dict = {
            "model": settings.embedding_model,
            "input": batch,
        }
        if settings.embedding_dimensions:
            create_kwargs["dimensions"] = settings.embedding_dimensions

        response = client.embeddings.create(**create_kwargs)

        # Place by response index; output order must match input order
        for item in response.data:
            all_embeddings[i + item.index] = item.embedding

    missing = [i for i, vector in enumerate(all_embeddings) if not vector]
    if missing:
        raise RuntimeError(
            f"Embedding API returned no vector for {len(missing)} of {len(texts)} texts "
            f"(first missing index {missing[0]})"
        )

    logger.info(
        "Generated %d embeddings (model=%s)",
        len(texts),
        settings.embedding_model,
    )
    return all_embeddings


def embed_query(text: str) -> list[float]:
    """Embed a single query string."""
    return embed_batch([text], batch_size=1)[0]
