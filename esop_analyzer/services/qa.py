# =============================================================================
# Question Answering — RAG Over One Valuation Report
# =============================================================================
#
# FLOW (ask_document):
#   1. Embed the question (OpenAI embeddings, off the event loop)
#   2. Fetch the top candidates for the document (pgvector)
#   3. Select above-threshold chunks, pack them into the token budget
#   4. Render the page-grouped context
#   5. answer_question(): system prompt with citation rules and the
#      document's extracted metrics → primary LLM → fallback LLM →
#      keyword answer
#   6. Append a source-pages note if the answer cites no page
#   7. Build citations for the chunks that reached the prompt
#
# DESIGN DECISION: answer_question() never raises for LLM failures. The
# question endpoint should still return something grounded in the
# document when both providers are down, so the last resort is a regex
# answer over the retrieved context.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from esop_analyzer.config import settings
from esop_analyzer.db.models import DocumentChunk, ExtractedMetric
from esop_analyzer.services.chunker import estimate_tokens
from esop_analyzer.services.embedder import embed_query
from esop_analyzer.services.llm import LLMProvider, get_fallback_provider, get_llm_provider
from esop_analyzer.services.retrieval import (
    build_citations,
    build_page_context,
    ensure_page_references,
    get_similar_chunks,
    pack_context,
    rank_chunks,
    select_chunks,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT_TOKENS = 500
TRUNCATION_NOTE = "\n\n[Note: Content truncated to fit context limits]"
NOT_FOUND_ANSWER = (
    "I cannot find that specific information in the provided document content"
)


@dataclass
class QAResult:
    """Answer plus the citations of the chunks used to produce it."""

    question: str
    answer: str
    citations: list[dict] = field(default_factory=list)
    pages: list[int | str] = field(default_factory=list)
    context_tokens: int = 0


# ---------------------------------------------------------------------------
# Prompt Construction
# ---------------------------------------------------------------------------


def build_system_prompt(context: str, extracted_metrics: dict | None = None) -> str:
    """ESOP analyst system prompt with the document context embedded."""
    metrics_section = ""
    if extracted_metrics:
        metrics_section = (
            "The following metrics have been extracted from this document and "
            "are displayed on the dashboard:\n"
            f"{json.dumps(extracted_metrics, indent=2, default=str)}\n\n"
            "IMPORTANT: Your answer should be consistent with these extracted "
            "metrics. If there are discrepancies, prioritize the extracted "
            "metrics data and explain any differences."
        )

    return f"""You are an expert financial analyst specializing in ESOP (Employee Stock Ownership Plan) valuation reports.

VISUAL CONTENT HANDLING:
- When you see "TABLE X:" interpret and analyze the tabular data thoroughly
- When you see "CHART X:" describe the visualization and extract key insights
- Always reference both text content AND tables in your analysis
- For financial data, prioritize table values over narrative text
- When citing tables, mention both the element type AND page number

CRITICAL CITATION REQUIREMENTS:
- You MUST explicitly mention page numbers in your answer (e.g., "According to Page 2..." or "Table 1 on Page 2 shows...")
- Every factual claim MUST reference the specific page where that information appears
- Use the exact page numbers shown in the document content below (PAGE 1, PAGE 2, etc.)
- If information spans multiple pages, mention all relevant page numbers

IMPORTANT: You MUST answer based ONLY on the document content provided below. If the information is not in the provided content, say "{NOT_FOUND_ANSWER}" rather than making assumptions.

ALIGNMENT WITH DASHBOARD DATA:
{metrics_section}

When answering:
1. Start each key point with a page reference (e.g., "Table 1 on Page 3 indicates that...")
2. Use ONLY the information from the provided document pages and tables
3. If asked about something not in the content, clearly state it's not available
4. For financial figures, be precise with numbers, currency, AND source (table/page)
5. Explain complex financial concepts in clear terms with page citations
6. Ensure consistency with the extracted metrics data above

Document Content:
{context}

REMEMBER: Your answer must explicitly reference the page numbers that appear in the document content above. The user will see these same references in the citations, so they must match your analysis."""


def truncate_context(question: str, context: str, limit: int | None = None) -> str:
    """
    Trim the context so question + context + system prompt fit `limit` tokens.

    Whole `PAGE n` sections are kept while they fit; if not even the first
    section fits, the context is cut at the character limit. A truncation
    note is appended whenever content was dropped.
    """
    limit = limit or settings.prompt_token_limit
    question_tokens = estimate_tokens(question)
    total = question_tokens + estimate_tokens(context) + SYSTEM_PROMPT_TOKENS
    if total <= limit:
        return context

    max_chars = max((limit - question_tokens - SYSTEM_PROMPT_TOKENS) * 4, 0)
    logger.warning(
        "Context too large (%d estimated tokens); truncating to %d chars",
        total, max_chars,
    )

    # Split before each section opener ("PAGE n:" or "=== PAGE n (") at a
    # line start, keeping the opener with its section
    sections = re.split(r"(?=^(?:=== )?PAGE \d+(?: \(|:))", context, flags=re.MULTILINE)
    truncated = ""
    for section in sections:
        if len(truncated) + len(section) > max_chars:
            break
        truncated += section

    final = truncated or context[:max_chars]
    if len(final) < len(context):
        final += TRUNCATION_NOTE
    return final


# ---------------------------------------------------------------------------
# Answering
# ---------------------------------------------------------------------------


async def answer_question(
    question: str,
    context: str,
    extracted_metrics: dict | None = None,
    llm: LLMProvider | None = None,
    fallback_llm: LLMProvider | None = None,
) -> str:
    """
    Answer a question from the given document context.

    Tries the primary provider, then the fallback provider, then
    generate_mock_answer(). Providers default to the configured singletons;
    a provider whose API key is missing is skipped.
    """
    final_context = truncate_context(question, context)
    system = build_system_prompt(final_context, extracted_metrics)
    messages = [{"role": "user", "content": question}]

    providers: list[tuple[str, LLMProvider | None]] = [
        ("primary", llm if llm is not None else _configured(get_llm_provider)),
        ("fallback", fallback_llm if fallback_llm is not None else get_fallback_provider()),
    ]

    for name, provider in providers:
        if provider is None:
            continue
        try:
            response = await provider.complete(
                messages=messages,
                system=system,
                temperature=settings.llm_temperature,
                max_tokens=settings.llm_max_tokens,
            )
            logger.info(
                "Answered with %s provider (model=%s, %d in / %d out tokens)",
                name, response.model, response.input_tokens, response.output_tokens,
            )
            return response.content
        except Exception:
            logger.exception("%s LLM provider failed to answer", name.capitalize())

    logger.warning("All LLM providers unavailable; using keyword answer")
    return generate_mock_answer(question, context)


def _configured(factory) -> LLMProvider | None:
    try:
        return factory()
    except ValueError as exc:
        logger.warning("LLM provider not configured: %s", exc)
        return None


_AMOUNT = r"\$?([\d,]+(?:\.\d{2})?)"


def generate_mock_answer(question: str, context: str) -> str:
    """
    Keyword answer over the context, used when no LLM is reachable.

    Looks for the value the question asks about (valuation, per-share
    value, discount rate, ownership, revenue, EBITDA, shares outstanding)
    and falls back to a short excerpt of the context.
    """
    q = question.lower()
    has_table = "TABLE" in context
    has_chart = "CHART" in context

    valuation = re.search(r"valuation:?\s*" + _AMOUNT, context, re.IGNORECASE)
    per_share = re.search(r"per share value:?\s*" + _AMOUNT, context, re.IGNORECASE)
    discount = re.search(r"discount rate:?\s*([\d.]+)%?", context, re.IGNORECASE)
    ownership = re.search(r"(?:esop )?ownership:?\s*([\d.]+)%?", context, re.IGNORECASE)
    revenue = re.search(r"revenue:?\s*" + _AMOUNT, context, re.IGNORECASE)
    ebitda = re.search(r"ebitda:?\s*" + _AMOUNT, context, re.IGNORECASE)
    shares = re.search(r"shares outstanding:?\s*([\d,]+)", context, re.IGNORECASE)

    table = re.search(r"TABLE (\d+) \(Page (\d+)\)", context, re.IGNORECASE)
    chart = re.search(r"CHART (\d+) \(Page (\d+)\)", context, re.IGNORECASE)

    def source(default: str) -> str:
        if table:
            return f"Table {table.group(1)} on Page {table.group(2)}"
        if chart:
            return f"Chart {chart.group(1)} on Page {chart.group(2)}"
        return default

    if ("valuation" in q or "value" in q) and valuation:
        return (
            f"Based on {source('the document')}, the total company valuation is "
            f"${valuation.group(1)}. This represents the enterprise value as "
            "determined by the ESOP valuation analysis."
        )

    if "share" in q and "outstanding" not in q and per_share:
        return (
            f"According to {source('the valuation report')}, the per share value "
            f"is ${per_share.group(1)}. This price reflects the fair market value "
            "per share for ESOP participants."
        )

    if "discount" in q and discount:
        return (
            f"The discount rate used in the valuation is {discount.group(1)}%. "
            "This rate reflects the company's cost of capital and risk profile."
        )

    if ("ownership" in q or "percentage" in q) and ownership:
        return f"According to the document, the ESOP ownership percentage is {ownership.group(1)}%."

    if "revenue" in q and revenue:
        return f"The document shows company revenue of ${revenue.group(1)}."

    if "ebitda" in q and ebitda:
        return f"The EBITDA shown in the document is ${ebitda.group(1)}."

    if "shares" in q and "outstanding" in q and shares:
        return f"The total shares outstanding according to the document is {shares.group(1)}."

    if "table" in q and has_table:
        where = (
            f"Table {table.group(1)} appears on Page {table.group(2)}"
            if table else "Tables are present in the document"
        )
        return (
            f"The document contains tabular data. {where} with financial "
            "information. Please refer to the specific table content for "
            "detailed values."
        )

    if "chart" in q and has_chart:
        where = (
            f"Chart {chart.group(1)} appears on Page {chart.group(2)}"
            if chart else "Charts are present in the document"
        )
        return (
            f"The document contains chart visualizations. {where} showing "
            "financial trends and data."
        )

    visual_note = (
        " This document includes tables or charts that provide additional "
        "financial data."
        if has_table or has_chart else ""
    )
    return (
        f"Based on the document content, here's what I found: {context[:300]}..."
        f"{visual_note} Note: This analysis was produced without a language "
        "model, but is based on your actual document content."
    )


# ---------------------------------------------------------------------------
# Full RAG Flow
# ---------------------------------------------------------------------------


async def load_extracted_metrics(session: AsyncSession, document_id: int) -> dict | None:
    """The document's stored metrics keyed by metric type, or None."""
    result = await session.execute(
        select(ExtractedMetric.metric_type, ExtractedMetric.metric_data)
        .where(ExtractedMetric.document_id == document_id)
    )
    rows = result.all()
    if not rows:
        return None
    return {metric_type: data for metric_type, data in rows}


async def ask_document(
    session: AsyncSession,
    document_id: int,
    question: str,
) -> QAResult:
    """
    Answer a question about one document with page citations.

    Raises:
        LookupError: If the document has no embedded chunks.
        ValueError: If embeddings are not configured.
    """
    query_embedding = await asyncio.to_thread(embed_query, question)

    candidates = await get_similar_chunks(session, document_id, query_embedding)
    if not candidates:
        raise LookupError("No relevant content found for this question")

    selected = select_chunks(candidates)
    packed = pack_context(selected, candidates)

    logger.info(
        "Question on document %d: %d candidates, %d selected, %d packed "
        "(~%d tokens, top similarity %.3f)",
        document_id, len(candidates), len(selected), len(packed.chunks),
        packed.token_estimate, candidates[0].similarity,
    )

    context, pages = build_page_context(packed.chunks)
    metrics = await load_extracted_metrics(session, document_id)

    answer = await answer_question(question, context, extracted_metrics=metrics)
    answer = ensure_page_references(answer, pages)

    return QAResult(
        question=question,
        answer=answer,
        citations=build_citations(packed.chunks),
        pages=pages,
        context_tokens=packed.token_estimate,
    )


# ---------------------------------------------------------------------------
# Alignment Check
# ---------------------------------------------------------------------------

ALIGNMENT_QUESTIONS = [
    "What is the company valuation?",
    "What is the per share value?",
    "What is the discount rate?",
    "How many shares are outstanding?",
]
ALIGNMENT_TOP_CHUNKS = 3


async def check_alignment(session: AsyncSession, document_id: int) -> dict:
    """
    Answer sample questions to check QA agrees with the stored metrics.

    Each question is answered from the three most similar chunks above
    settings.alignment_similarity_threshold; questions with no such chunk
    are left out of the results. A failing question is reported with its
    error instead of aborting the check.
    """
    metrics = await load_extracted_metrics(session, document_id) or {}
    result = await session.execute(
        select(DocumentChunk)
        .where(DocumentChunk.document_id == document_id)
        .order_by(DocumentChunk.chunk_index)
    )
    chunks = list(result.scalars().all())

    results: list[dict] = []
    for question in ALIGNMENT_QUESTIONS:
        try:
            query_embedding = await asyncio.to_thread(embed_query, question)
            ranked = rank_chunks(
                query_embedding, chunks,
                min_similarity=settings.alignment_similarity_threshold,
            )
            if not ranked:
                continue
            context = "\n\n".join(c.text for c in ranked[:ALIGNMENT_TOP_CHUNKS])
            answer = await answer_question(question, context, extracted_metrics=metrics)
            results.append({
                "question": question,
                "answer": answer,
                "hasMetrics": bool(metrics),
                "metricsCount": len(metrics),
            })
        except Exception as exc:
            logger.warning("Alignment question failed: %s (%s)", question, exc)
            results.append({
                "question": question,
                "error": str(exc),
                "hasMetrics": bool(metrics),
            })

    return {
        "documentId": document_id,
        "extractedMetrics": metrics,
        "validationResults": results,
        "summary": {
            "totalMetrics": len(metrics),
            "successfulValidations": sum(1 for r in results if "error" not in r),
            "totalValidations": len(results),
        },
    }
