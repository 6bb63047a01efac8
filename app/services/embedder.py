# =============================================================================
# Embedding Service — Chunk Vector Generation (Provider-Agnostic)
# =============================================================================
#
# Generates embeddings for chunk content using any OpenAI-compatible
# embeddings endpoint (OpenAI, Azure-style gateways, self-hosted servers).
#
# EMBEDDING CONTRACT:
#   embed_text(text) -> list[float]        one chunk (chunk processor)
#   embed_batch(texts) -> list[list[float]] many chunks (embedding backfill)
#
# Any exception raised here is a chunk-level failure: the chunk processor
# records it as EMBEDDING_FAILED and the job carries on. There is no retry
# logic in this module; a failed chunk is retried through the orchestrator.
#
# INPUT LIMIT: text is truncated to `embedding_max_chars` characters
# (8,000 by default) before the call, which keeps a single chunk under the
# model's 8,191-token input limit.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence

from openai import OpenAI

from app.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Embedding Client — Lazy Singleton
# ---------------------------------------------------------------------------
# The OpenAI client manages its own HTTP connection pool and is thread-safe,
# so batch-session threads and chunk tasks share one instance. Lazy
# initialization avoids import-time failures when the API key isn't set.
# ---------------------------------------------------------------------------

_client: OpenAI | None = None


def _get_client() -> OpenAI:
    """Lazily initialize and cache the embedding client."""
    global _client
    if _client is None:
        if not settings.openai_api_key:
            raise ValueError(
                "No API key configured for embeddings. Set OPENAI_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": settings.openai_api_key}
        if settings.embedding_base_url:
            client_kwargs["base_url"] = settings.embedding_base_url

        _client = OpenAI(**client_kwargs)

        logger.info(
            "Initialized embedding client (model=%s, base_url=%s)",
            settings.embedding_model,
            settings.embedding_base_url or "https://api.openai.com/v1",
        )
    return _client


def _prepare(text: str) -> str:
    return text[: settings.embedding_max_chars]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def embed_batch(
    texts: Sequence[str],
    batch_size: int | None = None,
) -> list[list[float]]:
    """
    Generate embeddings for many texts, in sub-batches of `batch_size`.

    Returns embeddings in the SAME ORDER as the input texts.

    Raises:
        ValueError: If no API key is configured.
        openai.APIError: If the API call fails.
    """
    if not texts:
        return []

    client = _get_client()
    _batch_size = batch_size or settings.embedding_batch_size

    all_embeddings: list[list[float]] = [[] for _ in texts]

    for i in range(0, len(texts), _batch_size):
        batch = [_prepare(text) for text in texts[i : i + _batch_size]]
        logger.info(
            "Embedding batch %d–%d of %d texts (model=%s)",
            i + 1,
            min(i + _batch_size, len(texts)),
            len(texts),
            settings.embedding_model,
        )

        create_kwargs: dict = {"model": settings.embedding_model, "input": batch}
        if settings.embedding_dimensions:
            create_kwargs["dimensions"] = settings.embedding_dimensions

        response = client.embeddings.create(**create_kwargs)

        # Place by response index, not arrival order.
        for item in sorted(response.data, key=lambda x: x.index):
            all_embeddings[i + item.index] = item.embedding

        logger.debug(
            "Batch complete: %d embeddings, %d prompt tokens",
            len(batch),
            response.usage.prompt_tokens if response.usage else 0,
        )

    return all_embeddings


def embed_text(text: str) -> list[float]:
    """Generate an embedding for one chunk's content."""
    if not text or not text.strip():
        raise ValueError("Cannot embed empty text")
    return embed_batch([text], batch_size=1)[0]
