# =============================================================================
# Page-Wise LLM Metric Extraction
# =============================================================================
#
# Extracts the full ESOP metrics structure from a document by asking the LLM
# for a JSON object per page and merging the per-page answers.
#
# FLOW:
#   split_into_pages() → one LLM call per page (bounded concurrency)
#   → parse_json_response() per page → merge_metrics_results()
#   → MetricsCache
#
# DESIGN DECISION: Page-sized prompts (~2000 chars) instead of one prompt
# for the whole report. Each call is small and fast, calls run in parallel,
# and one failing page only loses that page's values.
#
# DESIGN DECISION: Conflict-aware merge. The first page that states a value
# wins; a different value on a later page lowers that key's confidence to
# 0.7 instead of overwriting it. The per-key scores travel with the result
# as `confidenceScores`.
# =============================================================================

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
from collections import OrderedDict

from esop_analyzer.config import settings
from esop_analyzer.services.heuristics import empty_metrics_structure
from esop_analyzer.services.llm import LLMProvider, get_llm_provider

logger = logging.getLogger(__name__)

CONFLICT_CONFIDENCE = 0.7

PAGE_SEPARATORS = [
    # "PAGE n:" headers of stored document text
    re.compile(r"(?:^|\n)\s*PAGE\s+\d+:\s*\n"),
    re.compile(r"\n\s*Page\s+\d+\s*\n", re.IGNORECASE),
    re.compile(r"\n\s*\d+\s*\n"),
    re.compile(r"\n\s*-\s*Page\s+\d+\s*-\s*\n", re.IGNORECASE),
    re.compile(r"\n\s*PAGE\s+\d+\s*\n", re.IGNORECASE),
]

EXTRACTION_SYSTEM_PROMPT = """You are an expert financial analyst. Extract ALL available ESOP valuation metrics from this document section. Be thorough and look for various ways these metrics might be expressed.

IMPORTANT: Look for these terms and their variations:
- Company Value/Valuation: "total value", "enterprise value", "company valuation", "fair market value", "firm value"
- Per Share Value: "per share", "share value", "price per share", "fair market value per share"
- Revenue: "annual revenue", "total revenue", "sales", "gross revenue"
- EBITDA: "earnings before", "operating income", "adjusted EBITDA"
- Discount Rate: "discount rate", "required rate", "cost of capital", "WACC", "weighted average"
- Shares: "outstanding shares", "total shares", "shares issued", "common shares"
- ESOP: "employee stock", "ESOP percentage", "employee ownership"
- Valuation Date: "valuation date", "as of", "effective date", "date of valuation"

CRITICAL: You MUST respond with ONLY valid JSON. No explanations, no text before or after the JSON.

Return a JSON object with this exact structure:
{
  "enterpriseValue": {"currentValue": numeric_value_or_null, "previousValue": numeric_value_or_null, "currency": "USD"},
  "valueOfEquity": {"currentValue": numeric_value_or_null, "previousValue": numeric_value_or_null, "currency": "USD"},
  "valuationPerShare": {"currentValue": numeric_value_or_null, "previousValue": numeric_value_or_null, "currency": "USD"},
  "keyFinancials": {"revenue": numeric_value_or_null, "ebitda": numeric_value_or_null, "weightedAverageCostOfCapital": numeric_value_or_null},
  "companyValuation": {"totalValue": numeric_value_or_null, "perShareValue": numeric_value_or_null, "currency": "USD"},
  "discountRates": {"discountRate": numeric_value_or_null, "riskFreeRate": numeric_value_or_null, "marketRiskPremium": numeric_value_or_null},
  "capitalStructure": {"totalShares": numeric_value_or_null, "esopShares": numeric_value_or_null, "esopPercentage": numeric_value_or_null},
  "valuationMultiples": {"revenueMultiple": numeric_value_or_null, "ebitdaMultiple": numeric_value_or_null},
  "valuationDate": {"date": "YYYY-MM-DD or null", "description": "text description of the valuation date"}
}

CRITICAL RULES:
1. Extract EXACT numeric values only (no $ signs, % symbols, or commas)
2. If enterprise value not found, use company/total valuation
3. If value of equity not found, use company valuation minus debt (or same as company value if no debt mentioned)
4. If WACC not found, use discount rate
5. Use null only if truly not available after thorough search
6. For valuation date: look for "Valuation Date:", "as of", "effective date". Convert to YYYY-MM-DD format if possible
7. RESPOND WITH ONLY THE JSON OBJECT - NO OTHER TEXT"""


# ---------------------------------------------------------------------------
# Page Splitting & Response Parsing
# ---------------------------------------------------------------------------


def split_into_pages(text: str, target_size: int | None = None) -> list[str]:
    """
    Split document text into extraction pages.

    The first separator pattern that splits the text wins; otherwise
    paragraphs are packed into pages of about `target_size` characters.
    """
    target_size = target_size or settings.metrics_page_size

    for separator in PAGE_SEPARATORS:
        pieces = separator.split(text)
        if len(pieces) > 1:
            pages = [p for p in pieces if p.strip()]
            if pages:
                return pages

    pages: list[str] = []
    current = ""
    for paragraph in re.split(r"\n\s*\n", text):
        if len(current) + len(paragraph) > target_size:
            if current.strip():
                pages.append(current.strip())
            current = paragraph
        else:
            current += "\n\n" + paragraph
    if current.strip():
        pages.append(current.strip())

    return pages or [text]


def parse_json_response(content: str) -> dict:
    """
    Parse an LLM JSON answer.

    Tries the whole response, then the outermost `{...}` span. Falls back to
    the all-null metrics structure when neither parses.
    """
    try:
        parsed = json.loads(content)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    match = re.search(r"\{[\s\S]*\}", content)
    if match:
        try:
            parsed = json.loads(match.group(0))
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError as exc:
            logger.debug("JSON extraction failed: %s", exc)

    logger.warning("No valid JSON found in extraction response")
    return empty_metrics_structure()


def merge_metrics_results(results: list[dict | None]) -> dict:
    """
    Merge per-page metric dicts.

    The first non-null value of each `section.key` wins with confidence 1.0.
    A later, different non-null value lowers that key to 0.7.
    """
    merged: dict = {
        "enterpriseValue": {"currency": "USD"},
        "valueOfEquity": {"currency": "USD"},
        "valuationPerShare": {"currency": "USD"},
        "keyFinancials": {},
        "companyValuation": {"currency": "USD"},
        "discountRates": {},
        "capitalStructure": {},
        "valuationMultiples": {},
        "valuationDate": {"date": None, "description": None},
    }
    confidence_scores: dict[str, float] = {}

    for result in results:
        if not result:
            continue
        for section, values in result.items():
            if not isinstance(values, dict):
                continue
            target = merged.setdefault(section, {})
            for key, value in values.items():
                if value is None:
                    continue
                metric_key = f"{section}.{key}"
                if target.get(key) is None:
                    target[key] = value
                    confidence_scores.setdefault(metric_key, 1.0)
                elif target[key] != value:
                    confidence_scores[metric_key] = min(
                        confidence_scores.get(metric_key, 1.0), CONFLICT_CONFIDENCE,
                    )
                    logger.info(
                        "Conflicting values for %s: %s vs %s",
                        metric_key, target[key], value,
                    )

    merged["confidenceScores"] = confidence_scores
    return merged


# ---------------------------------------------------------------------------
# Result Cache
# ---------------------------------------------------------------------------


class MetricsCache:
    """
    Small insertion-ordered cache of merged results keyed by document hash.

    Re-processing the same text (retries, duplicate uploads) skips the LLM
    calls entirely.
    """

    def __init__(self, max_size: int | None = None) -> None:
        self._max_size = max_size or settings.metrics_cache_size
        self._entries: OrderedDict[str, dict] = OrderedDict()

    @staticmethod
    def key_for(text: str) -> str:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    def get(self, text: str) -> dict | None:
        return self._entries.get(self.key_for(text))

    def set(self, text: str, value: dict) -> None:
        self._entries[self.key_for(text)] = value
        while len(self._entries) > self._max_size:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()
        logger.info("Metrics cache cleared")

    def __len__(self) -> int:
        return len(self._entries)


metrics_cache = MetricsCache()


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


async def _extract_page(
    llm: LLMProvider,
    page: str,
    page_index: int,
    semaphore: asyncio.Semaphore,
) -> dict | None:
    async with semaphore:
        try:
            response = await llm.complete(
                messages=[{
                    "role": "user",
                    "content": f"Page {page_index + 1} content:\n{page}",
                }],
                system=EXTRACTION_SYSTEM_PROMPT,
                temperature=0.1,
                max_tokens=1000,
            )
        except Exception:
            logger.exception("Metric extraction failed for page %d", page_index + 1)
            return None
    return parse_json_response(response.content.strip())


async def extract_metrics(
    text: str,
    llm: LLMProvider | None = None,
    cache: MetricsCache | None = None,
) -> dict | None:
    """
    Extract the metrics structure from document text, page by page.

    Returns None when no LLM provider is configured. Pages whose call fails
    contribute nothing to the merge.
    """
    cache = metrics_cache if cache is None else cache
    cached = cache.get(text)
    if cached is not None:
        logger.info("Using cached metrics result")
        return cached

    if llm is None:
        try:
            llm = get_llm_provider()
        except ValueError as exc:
            logger.warning("Skipping LLM metric extraction: %s", exc)
            return None

    pages = split_into_pages(text)
    logger.info("Extracting metrics from %d pages", len(pages))

    semaphore = asyncio.Semaphore(settings.metrics_concurrency_limit)
    results = await asyncio.gather(*(
        _extract_page(llm, page, i, semaphore) for i, page in enumerate(pages)
    ))

    merged = merge_metrics_results(list(results))
    cache.set(text, merged)
    logger.info(
        "Metrics extraction complete (%d/%d pages answered)",
        sum(1 for r in results if r is not None), len(pages),
    )
    return merged
