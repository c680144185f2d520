# =============================================================================
# Unit Tests — Retrieval Ranking, Packing and Citations
# =============================================================================
#
# Everything after the pgvector query is a pure function over ScoredChunk,
# so these tests need no database.
# =============================================================================

from types import SimpleNamespace

import pytest

from esop_analyzer.services.retrieval import (
    ScoredChunk,
    build_citations,
    build_page_context,
    cosine_similarity,
    ensure_page_references,
    pack_context,
    rank_chunks,
    select_chunks,
)


def _chunk(index: int, similarity: float, page: int | None = 1, text: str | None = None) -> ScoredChunk:
    return ScoredChunk(
        chunk_id=index + 100,
        chunk_index=index,
        page_number=page,
        text=text if text is not None else f"chunk {index}",
        similarity=similarity,
    )


def _row(index: int, embedding, page: int = 1):
    """Stand-in for a DocumentChunk row with its embedding loaded."""
    return SimpleNamespace(
        id=index + 100,
        chunk_index=index,
        page_number=page,
        chunk_text=f"row {index}",
        embedding=embedding,
        metadata_=None,
    )


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------


class TestCosineSimilarity:
    def test_identical_vectors(self):
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_orthogonal_vectors(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_opposite_vectors(self):
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_length_mismatch_is_zero(self):
        assert cosine_similarity([1.0, 2.0], [1.0]) == 0.0

    def test_empty_is_zero(self):
        assert cosine_similarity([], []) == 0.0

    def test_zero_norm_is_zero(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0


class TestRankChunks:
    def test_sorted_most_similar_first(self):
        rows = [_row(0, [0.0, 1.0]), _row(1, [1.0, 0.0]), _row(2, [1.0, 1.0])]
        ranked = rank_chunks([1.0, 0.0], rows)
        assert [c.chunk_index for c in ranked] == [1, 2, 0]

    def test_min_similarity_is_exclusive(self):
        rows = [_row(0, [0.0, 1.0]), _row(1, [1.0, 0.0])]
        ranked = rank_chunks([1.0, 0.0], rows, min_similarity=0.0)
        assert [c.chunk_index for c in ranked] == [1]

    def test_rows_without_embedding_skipped(self):
        rows = [_row(0, None), _row(1, [1.0, 0.0])]
        ranked = rank_chunks([1.0, 0.0], rows)
        assert len(ranked) == 1
        assert ranked[0].text == "row 1"
        assert ranked[0].metadata == {}


# ---------------------------------------------------------------------------
# Selection & Packing
# ---------------------------------------------------------------------------


class TestSelectChunks:
    def test_keeps_chunks_above_threshold(self):
        candidates = [_chunk(0, 0.9), _chunk(1, 0.8), _chunk(2, 0.5)]
        selected = select_chunks(candidates, threshold=0.7, max_chunks=5)
        assert [c.chunk_index for c in selected] == [0, 1]

    def test_threshold_is_strict(self):
        selected = select_chunks([_chunk(0, 0.7), _chunk(1, 0.75)], threshold=0.7, max_chunks=5)
        assert [c.chunk_index for c in selected] == [1]

    def test_falls_back_to_top_candidates(self):
        candidates = [_chunk(i, 0.3) for i in range(8)]
        selected = select_chunks(candidates, threshold=0.7, max_chunks=5)
        assert [c.chunk_index for c in selected] == [0, 1, 2, 3, 4]

    def test_caps_at_max_chunks(self):
        candidates = [_chunk(i, 0.95) for i in range(8)]
        assert len(select_chunks(candidates, threshold=0.7, max_chunks=3)) == 3


class TestPackContext:
    def test_stops_at_budget(self):
        # "PAGE 1: " + 40 chars + "\n\n" = 50 chars → 13 tokens each
        chunks = [_chunk(i, 0.9, text="a" * 40) for i in range(3)]
        packed = pack_context(chunks, chunks, budget=30, low_context=1, extra=0, extended_budget=30)
        assert len(packed.chunks) == 2
        assert packed.token_estimate == 26

    def test_renders_page_prefix(self):
        packed = pack_context([_chunk(0, 0.9, page=3, text="Value")], [], budget=100, low_context=1)
        assert packed.text == "PAGE 3: Value\n\n"
        assert packed.used_pages == {3}

    def test_unknown_page_prefix(self):
        packed = pack_context([_chunk(0, 0.9, page=None, text="Value")], [], budget=100, low_context=1)
        assert packed.text.startswith("PAGE Unknown: ")
        assert packed.used_pages == set()

    def test_thin_context_adds_extra_candidates(self):
        candidates = [_chunk(i, 0.9 - i * 0.1, text="short") for i in range(6)]
        selected = candidates[:1]
        packed = pack_context(
            selected, candidates,
            budget=1000, low_context=500, extra=3, extended_budget=2000,
        )
        assert [c.chunk_index for c in packed.chunks] == [0, 1, 2, 3]

    def test_extra_candidates_respect_extended_budget(self):
        candidates = [_chunk(i, 0.9, text="b" * 40) for i in range(4)]
        packed = pack_context(
            candidates[:1], candidates,
            budget=100, low_context=500, extra=3, extended_budget=26,
        )
        assert len(packed.chunks) == 2

    def test_no_extra_when_context_sufficient(self):
        candidates = [_chunk(i, 0.9, text="c" * 400) for i in range(4)]
        packed = pack_context(
            candidates[:1], candidates,
            budget=1000, low_context=50, extra=3, extended_budget=2000,
        )
        assert len(packed.chunks) == 1


# ---------------------------------------------------------------------------
# Prompt Context & Citations
# ---------------------------------------------------------------------------


class TestBuildPageContext:
    def test_groups_and_sorts_pages(self):
        chunks = [
            _chunk(0, 0.8, page=5, text="five"),
            _chunk(1, 0.6, page=2, text="two-a"),
            _chunk(2, 0.4, page=2, text="two-b"),
        ]
        context, pages = build_page_context(chunks)
        assert pages == [2, 5]
        assert context.index("=== PAGE 2") < context.index("=== PAGE 5")
        assert "=== PAGE 2 (Relevance: 0.500) ===\ntwo-a\n\ntwo-b\n=== END OF PAGE 2 ===" in context

    def test_unknown_page_last(self):
        chunks = [_chunk(0, 0.8, page=None, text="loose"), _chunk(1, 0.7, page=1, text="one")]
        _, pages = build_page_context(chunks)
        assert pages == [1, "Unknown"]

    def test_empty(self):
        assert build_page_context([]) == ("", [])


class TestEnsurePageReferences:
    def test_answer_with_reference_unchanged(self):
        answer = "According to Page 4, the value is $10."
        assert ensure_page_references(answer, [4]) == answer

    def test_single_page_note(self):
        result = ensure_page_references("The value is $10.", [4])
        assert result.endswith("*Information sourced from page 4 of the document.*")

    def test_multiple_pages_note(self):
        result = ensure_page_references("The value is $10.", [1, 3, 7])
        assert "pages 1, 3 and 7" in result

    def test_unknown_pages_ignored(self):
        assert ensure_page_references("No pages.", ["Unknown"]) == "No pages."


class TestBuildCitations:
    def test_citation_payload(self):
        chunk = _chunk(3, 0.82, page=6, text="x" * 300)
        [citation] = build_citations([chunk])
        assert citation["chunkIndex"] == 3
        assert citation["distance"] == pytest.approx(0.18)
        assert citation["relevance"] == pytest.approx(0.82)
        assert citation["pageNumber"] == 6
        assert citation["section"] == "Page 6"
        assert citation["preview"] == "x" * 200 + "..."
        assert citation["fullText"] == "x" * 300
