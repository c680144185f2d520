# =============================================================================
# Retrieval — Chunk Ranking, Context Packing, Citations
# =============================================================================
#
# Turns a question embedding into the prompt context for one document:
#
#   get_similar_chunks()    → top-N candidates by pgvector cosine distance
#   select_chunks()         → keep candidates above the similarity threshold
#                             (or the best few when none pass)
#   pack_context()          → fit chunks into a token budget, topping up
#                             with extra candidates when context is thin
#   build_page_context()    → group chunks by page with a relevance header
#   ensure_page_references()→ make sure the answer names its source pages
#   build_citations()       → citation payloads returned to the client
#
# DESIGN DECISION: Every step after the database query is a pure function
# over `ScoredChunk` objects, so the ranking and packing rules are tested
# without a database.
#
# DESIGN DECISION: Token budgets use estimate_tokens() (chars/4). The
# context is sent to whichever provider answers, primary or fallback, so
# a provider-agnostic estimate bounds the prompt.
# =============================================================================

from __future__ import annotations

import logging
import math
import re
from collections.abc import Sequence
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from esop_analyzer.config import settings
from esop_analyzer.db.models import DocumentChunk
from esop_analyzer.services.chunker import estimate_tokens

logger = logging.getLogger(__name__)

PAGE_REFERENCE_PATTERN = re.compile(
    r"(?:page|on page|from page|according to page)\s*\d+",
    re.IGNORECASE,
)

CITATION_PREVIEW_CHARS = 200


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ScoredChunk:
    """A document chunk with its similarity to the question."""

    chunk_id: int
    chunk_index: int
    page_number: int | None
    text: str
    similarity: float
    metadata: dict = field(default_factory=dict)


@dataclass
class PackedContext:
    """Chunks that fit the token budget, in packing order."""

    chunks: list[ScoredChunk]
    text: str
    token_estimate: int
    used_pages: set[int] = field(default_factory=set)


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two vectors.

    Returns 0.0 for vectors of different lengths, empty vectors, or when
    either vector has zero norm.
    """
    if len(a) != len(b) or len(a) == 0:
        return 0.0

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


async def get_similar_chunks(
    session: AsyncSession,
    document_id: int,
    query_embedding: list[float],
    limit: int | None = None,
) -> list[ScoredChunk]:
    """
    Return the document's chunks closest to the query, most similar first.

    pgvector's cosine_distance() is in [0, 2]; similarity = 1 - distance.
    """
    limit = limit or settings.retrieval_candidate_limit
    distance = DocumentChunk.embedding.cosine_distance(query_embedding)

    stmt = (
        select(DocumentChunk, distance.label("distance"))
        .where(
            DocumentChunk.document_id == document_id,
            DocumentChunk.embedding.is_not(None),
        )
        .order_by(distance)
        .limit(limit)
    )
    result = await session.execute(stmt)
    rows = result.all()

    logger.debug(
        "Vector search returned %d rows (limit=%d, doc_id=%s)",
        len(rows), limit, document_id,
    )

    return [
        ScoredChunk(
            chunk_id=chunk.id,
            chunk_index=chunk.chunk_index,
            page_number=chunk.page_number,
            text=chunk.chunk_text,
            similarity=1.0 - float(dist),
            metadata=chunk.metadata_ or {},
        )
        for chunk, dist in rows
    ]


def rank_chunks(
    query_embedding: Sequence[float],
    chunks: Sequence[DocumentChunk],
    min_similarity: float | None = None,
) -> list[ScoredChunk]:
    """
    Rank chunks whose embeddings are already loaded, most similar first.

    Chunks at or below `min_similarity` are dropped when it is given.
    """
    scored: list[ScoredChunk] = []
    for chunk in chunks:
        if chunk.embedding is None:
            continue
        similarity = cosine_similarity(query_embedding, list(chunk.embedding))
        if min_similarity is not None and similarity <= min_similarity:
            continue
        scored.append(ScoredChunk(
            chunk_id=chunk.id,
            chunk_index=chunk.chunk_index,
            page_number=chunk.page_number,
            text=chunk.chunk_text,
            similarity=similarity,
            metadata=chunk.metadata_ or {},
        ))

    scored.sort(key=lambda c: c.similarity, reverse=True)
    return scored


# ---------------------------------------------------------------------------
# Selection & Packing
# ---------------------------------------------------------------------------


def select_chunks(
    candidates: list[ScoredChunk],
    threshold: float | None = None,
    max_chunks: int | None = None,
) -> list[ScoredChunk]:
    """
    Keep candidates strictly above the threshold, capped at max_chunks.

    When no candidate passes, the top max_chunks candidates are used
    instead so a question always gets some context.
    """
    threshold = settings.retrieval_similarity_threshold if threshold is None else threshold
    max_chunks = max_chunks or settings.retrieval_max_chunks

    selected = [c for c in candidates if c.similarity > threshold]
    if not selected:
        logger.info(
            "No chunks above similarity %.2f; using top %d candidates",
            threshold, max_chunks,
        )
        selected = candidates[:max_chunks]
    return selected[:max_chunks]


def _render_chunk(chunk: ScoredChunk) -> str:
    page = chunk.page_number if chunk.page_number else "Unknown"
    return f"PAGE {page}: {chunk.text}\n\n"


def pack_context(
    selected: list[ScoredChunk],
    candidates: list[ScoredChunk],
    budget: int | None = None,
    low_context: int | None = None,
    extra: int | None = None,
    extended_budget: int | None = None,
) -> PackedContext:
    """
    Fit selected chunks into the token budget.

    Packing stops at the first chunk that would exceed `budget`. If the
    result is below `low_context` tokens and more candidates exist, up to
    `extra` of the candidates following the selection are appended while
    the total stays within `extended_budget`.
    """
    budget = budget or settings.context_token_budget
    low_context = low_context or settings.context_low_token_threshold
    extra = settings.context_extra_chunks if extra is None else extra
    extended_budget = extended_budget or settings.context_extended_token_budget

    packed: list[ScoredChunk] = []
    parts: list[str] = []
    tokens = 0

    for chunk in selected:
        rendered = _render_chunk(chunk)
        chunk_tokens = estimate_tokens(rendered)
        if tokens + chunk_tokens > budget:
            break
        packed.append(chunk)
        parts.append(rendered)
        tokens += chunk_tokens

    if tokens < low_context and len(candidates) > len(selected):
        logger.info(
            "Context is thin (%d tokens); adding up to %d more chunks",
            tokens, extra,
        )
        for chunk in candidates[len(selected):len(selected) + extra]:
            rendered = _render_chunk(chunk)
            chunk_tokens = estimate_tokens(rendered)
            if tokens + chunk_tokens > extended_budget:
                break
            packed.append(chunk)
            parts.append(rendered)
            tokens += chunk_tokens

    return PackedContext(
        chunks=packed,
        text="".join(parts),
        token_estimate=tokens,
        used_pages={c.page_number for c in packed if c.page_number},
    )


# ---------------------------------------------------------------------------
# Prompt Context & Answer Post-processing
# ---------------------------------------------------------------------------


def build_page_context(chunks: list[ScoredChunk]) -> tuple[str, list[int | str]]:
    """
    Group chunks by page and render them with the page's mean relevance.

    Pages are in ascending order; chunks without a page are grouped under
    "Unknown" after the numbered pages.

    Returns:
        (context text, page labels in rendering order)
    """
    groups: dict[int | str, list[ScoredChunk]] = {}
    for chunk in chunks:
        key: int | str = chunk.page_number if chunk.page_number else "Unknown"
        groups.setdefault(key, []).append(chunk)

    pages: list[int | str] = sorted(k for k in groups if isinstance(k, int))
    if "Unknown" in groups:
        pages.append("Unknown")

    sections = []
    for page in pages:
        page_chunks = groups[page]
        body = "\n\n".join(c.text for c in page_chunks)
        relevance = sum(c.similarity for c in page_chunks) / len(page_chunks)
        sections.append(
            f"=== PAGE {page} (Relevance: {relevance:.3f}) ===\n"
            f"{body}\n"
            f"=== END OF PAGE {page} ==="
        )

    return "\n\n".join(sections), pages


def ensure_page_references(answer: str, pages: list[int | str]) -> str:
    """
    Append a source-pages note when the answer cites no page.

    An answer mentioning "page 3", "on page 3", "from page 3" or
    "according to page 3" (any case) is returned unchanged.
    """
    if PAGE_REFERENCE_PATTERN.search(answer):
        return answer

    numbered = [str(p) for p in pages if p != "Unknown"]
    if not numbered:
        return answer

    if len(numbered) == 1:
        page_list = f"page {numbered[0]}"
    else:
        page_list = f"pages {', '.join(numbered[:-1])} and {numbered[-1]}"

    return f"{answer}\n\n*Information sourced from {page_list} of the document.*"


def build_citations(chunks: list[ScoredChunk]) -> list[dict]:
    """Citation payloads for the client, one per chunk used in the prompt."""
    return [
        {
            "chunkIndex": chunk.chunk_index,
            "distance": 1 - chunk.similarity,
            "preview": chunk.text[:CITATION_PREVIEW_CHARS] + "...",
            "pageNumber": chunk.page_number,
            "relevance": chunk.similarity,
            "section": f"Page {chunk.page_number}",
            "fullText": chunk.text,
        }
        for chunk in chunks
    ]
