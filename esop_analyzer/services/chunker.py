# =============================================================================
# Page-Scoped Token Chunker — tiktoken
# =============================================================================
#
# Splits each page of a parsed document into token-based chunks. A chunk
# never spans two pages, so every chunk carries one exact page number for
# citations and the page-grouped prompt context.
#
# DESIGN DECISION: Token-based windows (tiktoken cl100k_base, the encoding
# of text-embedding-3-small) so chunk sizes match what the embedding model
# actually sees. A page that fits within chunk_size tokens is stored whole.
#
# Two token counters live here:
# - count_tokens(): exact tiktoken count, stored per chunk
# - estimate_tokens(): ceil(len/4), the provider-agnostic estimate used for
#   prompt budgets in retrieval and question answering
# =============================================================================

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field

import tiktoken

from esop_analyzer.services.parser import PageContent

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ChunkResult:
    """A single chunk ready for embedding and storage."""

    content: str
    page_number: int  # 1-indexed page this chunk belongs to
    chunk_index: int  # 0-indexed position within the document
    token_count: int
    metadata: dict = field(default_factory=dict)
    # metadata keys:
    #   content_type: "table" or "text"
    #   section_title: str | None
    #   page_chunk: position of this chunk within its page


# ---------------------------------------------------------------------------
# Tiktoken Encoder — Cached Singleton
# ---------------------------------------------------------------------------

_encoder: tiktoken.Encoding | None = None


def _get_encoder() -> tiktoken.Encoding:
    """Lazily initialize and cache the tiktoken encoder."""
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


def count_tokens(text: str) -> int:
    """Exact token count with the embedding model's tokenizer."""
    return len(_get_encoder().encode(text))


def estimate_tokens(text: str) -> int:
    """Rough prompt-size estimate: one token per four characters, rounded up."""
    return math.ceil(len(text) / 4)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def chunk_pages(
    pages: list[PageContent],
    chunk_size: int = 512,
    chunk_overlap: int = 50,
    section_titles: dict[int, str | None] | None = None,
) -> list[ChunkResult]:
    """
    Split pages into token-based chunks.

    Args:
        pages: Page contents from the parser, in page order.
        chunk_size: Maximum tokens per chunk.
        chunk_overlap: Token overlap between consecutive chunks of a page.
        section_titles: Optional page → first section title mapping.

    Returns:
        List of ChunkResult in document order with a document-wide index.

    Pipeline position: Step 2 of processing (parse → chunk → embed → store).
    """
    if chunk_overlap >= chunk_size:
        raise ValueError(
            f"chunk_overlap ({chunk_overlap}) must be smaller than "
            f"chunk_size ({chunk_size})"
        )

    encoder = _get_encoder()
    section_titles = section_titles or {}
    chunks: list[ChunkResult] = []
    step = chunk_size - chunk_overlap

    for page in pages:
        tokens = encoder.encode(page.content)
        if not tokens:
            continue

        content_type = "table" if page.contains_table else "text"

        if len(tokens) <= chunk_size:
            windows = [tokens]
        else:
            windows = []
            for start in range(0, len(tokens), step):
                windows.append(tokens[start:start + chunk_size])
                if start + chunk_size >= len(tokens):
                    break

        for page_chunk, window in enumerate(windows):
            text = page.content if len(windows) == 1 else encoder.decode(window)
            text = text.strip()
            if not text:
                continue
            chunks.append(ChunkResult(
                content=text,
                page_number=page.page_number,
                chunk_index=len(chunks),
                token_count=len(window),
                metadata={
                    "content_type": content_type,
                    "section_title": section_titles.get(page.page_number),
                    "page_chunk": page_chunk,
                },
            ))

    logger.info(
        "Chunked %d pages into %d chunks (chunk_size=%d, overlap=%d)",
        len(pages), len(chunks), chunk_size, chunk_overlap,
    )
    return chunks


def section_titles_by_page(elements: list) -> dict[int, str | None]:
    """Map each page to the first section title seen on it."""
    titles: dict[int, str | None] = {}
    for element in elements:
        if element.page_number > 0 and element.page_number not in titles:
            titles[element.page_number] = element.section_title
    return titles
