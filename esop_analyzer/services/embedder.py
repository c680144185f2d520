# =============================================================================
# Embedding Service — Batch Vector Generation
# =============================================================================
#
# Generates chunk and question embeddings with any OpenAI-compatible
# embeddings endpoint (OpenAI by default, text-embedding-3-small at 1536
# dimensions to match the document_chunks.embedding column).
#
# DESIGN DECISION: Sync client. The Celery worker embeds chunks
# synchronously; FastAPI handlers call `embed_query` through
# `asyncio.to_thread` so the event loop is never blocked.
#
# DESIGN DECISION: No retry logic here. Processing retries happen at the
# Celery task level; the question endpoint maps failures to 502.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence

from openai import OpenAI

from esop_analyzer.config import settings

logger = logging.getLogger(__name__)

_client: OpenAI | None = None


def _get_client() -> OpenAI:
    """
    Lazily initialize and cache the embedding client.

    Key resolution: OPENAI_API_KEY first, then the shared LLM_API_KEY.
    """
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


def embed_batch(
    texts: Sequence[str],
    batch_size: int | None = None,
) -> list[list[float]]:
    """
    Embed texts in sub-batches, returning vectors in input order.

    Raises:
        ValueError: If no API key is configured.
        openai.APIError: If the embeddings call fails.

    Pipeline position: Step 3 of processing (parse → chunk → embed → store).
    """
    if not texts:
        return []

    client = _get_client()
    _batch_size = batch_size or settings.embedding_batch_size

    all_embeddings: list[list[float]] = [[] for _ in texts]

    for i in range(0, len(texts), _batch_size):
        batch = list(texts[i : i + _batch_size])
        logger.info(
            "Embedding batch %d–%d of %d texts (model=%s)",
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

        # Items carry their position in the batch; place them by index.
        for item in sorted(response.data, key=lambda x: x.index):
            all_embeddings[i + item.index] = item.embedding

    logger.info(
        "Generated %d embeddings (model=%s, dimensions=%d)",
        len(texts),
        settings.embedding_model,
        settings.embedding_dimensions,
    )
    return all_embeddings


def embed_query(text: str) -> list[float]:
    """Embed a single question for retrieval."""
    return embed_batch([text], batch_size=1)[0]
