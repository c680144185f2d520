# =============================================================================
# Focused Metric Questions — Live, Validation and Section-Aware Queries
# =============================================================================
#
# Three ways of asking the LLM one metric at a time, all through the
# question-answering path (qa.answer_question) over the document text:
#
#   get_live_metrics()        /api/metrics/live: six dashboard questions,
#                             answers parsed with parse_numeric_answer()
#   validate_metrics()        /api/metrics/validate: the user's values checked
#                             against the document with a structured prompt
#   extract_focused_metrics() /api/metrics/ai: section-aware questions run
#                             in parallel, overall confidence from the count
#
# plus the automatic validation pass run after processing:
#
#   current_metric_values() → auto prompts → parse_validation_response()
#   → plan_metric_updates() → rows to update or create
# =============================================================================

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from esop_analyzer.services.heuristics import (
    find_best_number,
    find_relevant_sections,
    first_positive_number,
    parse_numeric_answer,
)

logger = logging.getLogger(__name__)

AnswerFn = Callable[[str, str], Awaitable[str]]

SECTION_SEPARATOR = "\n\n---SECTION---\n\n"
MAX_SECTIONS_CHARS = 8000


def _default_answer_fn() -> AnswerFn:
    from esop_analyzer.services.qa import answer_question

    return answer_question


# ---------------------------------------------------------------------------
# Live Metrics
# ---------------------------------------------------------------------------

LIVE_METRIC_QUESTIONS: list[dict[str, str]] = [
    {
        "key": "companyValue",
        "question": 'What is the total company valuation or enterprise value mentioned in this document? Please provide the answer in the format "X million" or "X billion" or the exact dollar amount like "$X,XXX,XXX".',
        "category": "companyValuation",
    },
    {
        "key": "perShareValue",
        "question": 'What is the fair market value per share or price per share mentioned in this document? Please provide the answer as a dollar amount like "$XX.XX".',
        "category": "companyValuation",
    },
    {
        "key": "esopPercentage",
        "question": 'What percentage of the company is owned by the ESOP or employees? Please provide the answer as "X%" or "X percent".',
        "category": "capitalStructure",
    },
    {
        "key": "discountRate",
        "question": 'What is the discount rate or WACC (weighted average cost of capital) mentioned in this document? Please provide the answer as "X%" or "X percent".',
        "category": "discountRates",
    },
    {
        "key": "revenue",
        "question": 'What is the annual revenue of the company mentioned in this document? Please provide the answer in the format "X million" or "X billion" or the exact dollar amount.',
        "category": "keyFinancials",
    },
    {
        "key": "ebitda",
        "question": 'What is the EBITDA (earnings before interest, taxes, depreciation, and amortization) mentioned in this document? Please provide the answer in the format "X million" or "X billion" or the exact dollar amount.',
        "category": "keyFinancials",
    },
]


async def get_live_metrics(
    text: str,
    answer_fn: AnswerFn | None = None,
) -> tuple[dict[str, dict], list[dict[str, str]]]:
    """
    Ask the six dashboard questions against the document text.

    Returns:
        (metrics grouped as {category: {"data": {key: value}}}, errors)
    """
    answer_fn = answer_fn or _default_answer_fn()
    metrics: dict[str, dict] = {}
    errors: list[dict[str, str]] = []

    for item in LIVE_METRIC_QUESTIONS:
        try:
            answer = await answer_fn(item["question"], text)
        except Exception as exc:
            logger.exception("Error getting live %s", item["key"])
            errors.append({"metric": item["key"], "error": str(exc)})
            continue
        value = parse_numeric_answer(answer)
        metrics.setdefault(item["category"], {"data": {}})["data"][item["key"]] = value
        logger.debug("Live %s: %s", item["key"], value)

    return metrics, errors


# ---------------------------------------------------------------------------
# Validation Queries
# ---------------------------------------------------------------------------

VALIDATION_QUERIES: list[dict[str, str]] = [
    {
        "key": "enterpriseValue",
        "question": "What is the total enterprise value or company valuation mentioned in this document? Please provide the exact number with units (millions/billions).",
    },
    {
        "key": "valueOfEquity",
        "question": "What is the total value of equity mentioned in this document? Please provide the exact number with units.",
    },
    {
        "key": "valuationPerShare",
        "question": "What is the fair market value per share or price per share mentioned in this document? Please provide the exact number.",
    },
    {
        "key": "revenue",
        "question": "What is the company's annual revenue mentioned in this document? Please provide the exact number with units.",
    },
    {
        "key": "ebitda",
        "question": "What is the company's EBITDA mentioned in this document? Please provide the exact number with units.",
    },
    {
        "key": "discountRate",
        "question": "What is the discount rate or weighted average cost of capital (WACC) mentioned in this document? Please provide the exact percentage.",
    },
]


def build_validation_prompt(question: str, current_value, auto: bool = False) -> str:
    """
    Structured prompt asking the LLM to confirm or replace a value.

    The automatic variant also covers metrics that have no current value.
    """
    if auto:
        shown = current_value if current_value else "None found"
        matches = "[Yes/No/N/A if no current value]"
    else:
        shown = current_value
        matches = "[Yes/No]"

    return f"""{question}

Current extracted value: {shown}

Please respond in this exact format:
EXTRACTED_VALUE: [the exact value you find in the document, or "NOT_FOUND" if not mentioned]
CONFIDENCE: [High/Medium/Low]
MATCHES_CURRENT: {matches}
EXPLANATION: [brief explanation of what you found and why it matches or doesn't match]"""


@dataclass
class ValidationAnswer:
    extracted_value: float | None = None
    confidence: str = "Unknown"
    matches: str = "Unknown"


def parse_validation_response(response: str) -> ValidationAnswer:
    """Read the EXTRACTED_VALUE, CONFIDENCE and MATCHES_CURRENT lines."""
    parsed = ValidationAnswer()
    for line in response.split("\n"):
        if line.startswith("EXTRACTED_VALUE:"):
            raw = line[len("EXTRACTED_VALUE:"):].strip()
            lowered = raw.lower()
            if "not_found" in lowered or "not found" in lowered or "unknown" in lowered:
                continue
            parsed.extracted_value = first_positive_number(raw)
        elif line.startswith("MATCHES_CURRENT:"):
            parsed.matches = line[len("MATCHES_CURRENT:"):].strip()
        elif line.startswith("CONFIDENCE:"):
            parsed.confidence = line[len("CONFIDENCE:"):].strip()
    return parsed


async def validate_metrics(
    text: str,
    metrics: dict,
    answer_fn: AnswerFn | None = None,
) -> dict[str, dict]:
    """
    Check user-supplied metric values against the document.

    Only keys present (and not None) in `metrics` are validated. A failed
    query is reported with `error: 'Validation failed'` instead of raising.
    """
    answer_fn = answer_fn or _default_answer_fn()
    results: dict[str, dict] = {}

    for query in VALIDATION_QUERIES:
        current = metrics.get(query["key"])
        if current is None:
            continue
        prompt = build_validation_prompt(query["question"], current)
        try:
            response = await answer_fn(prompt, text)
        except Exception:
            logger.exception("Error validating %s", query["key"])
            results[query["key"]] = {
                "currentValue": current,
                "error": "Validation failed",
                "query": query["question"],
            }
            continue
        results[query["key"]] = {
            "currentValue": current,
            "aiValidation": response,
            "query": query["question"],
        }

    return results


# ---------------------------------------------------------------------------
# Focused AI Metrics
# ---------------------------------------------------------------------------

FOCUSED_QUERIES: list[dict[str, str]] = [
    {
        "key": "enterpriseValue",
        "question": "Looking at this ESOP valuation document, what is the final concluded enterprise value, total company value, or business enterprise value? Look in executive summary, valuation conclusion, or final results sections. Respond with just the dollar amount number.",
    },
    {
        "key": "valueOfEquity",
        "question": "What is the concluded equity value, total equity value, or fair market value of equity mentioned in this ESOP valuation document? Look for final valuation conclusions. Respond with just the dollar amount number.",
    },
    {
        "key": "valuationPerShare",
        "question": "What is the fair market value per share, price per share, or per-share value concluded in this ESOP valuation? Look in the valuation conclusion or summary. Respond with just the dollar amount per share.",
    },
    {
        "key": "revenue",
        "question": "What is the company's most recent annual revenue, total revenue, or sales mentioned in this document? Look in financial statements or company overview sections. Respond with just the dollar amount number.",
    },
    {
        "key": "ebitda",
        "question": "What is the company's EBITDA, earnings before interest taxes depreciation and amortization, mentioned in this document? Look in financial analysis sections. Respond with just the dollar amount number.",
    },
    {
        "key": "discountRate",
        "question": "What discount rate, required rate of return, or weighted average cost of capital (WACC) was used in this valuation? Look in valuation methodology or assumptions sections. Respond with just the percentage number.",
    },
]


async def _focused_metric(
    text: str,
    key: str,
    question: str,
    answer_fn: AnswerFn,
) -> float | None:
    sections = find_relevant_sections(text, key)
    try:
        if sections:
            sections_text = SECTION_SEPARATOR.join(sections)[:MAX_SECTIONS_CHARS]
            logger.debug("Found %d relevant sections for %s", len(sections), key)
            response = await answer_fn(
                f"{question}\n\nFocus on these relevant sections from the document:\n"
                f"{sections_text}",
                sections_text,
            )
        else:
            response = await answer_fn(question, text)
    except Exception:
        logger.exception("Error extracting focused metric %s", key)
        return None

    value = find_best_number(response, include_any_number=False, allow_zero=False)
    if value is None:
        logger.info("Could not parse %s from focused answer", key)
    return value


def focused_confidence(found: int) -> str:
    if found >= 4:
        return "High"
    if found >= 2:
        return "Medium"
    return "Low"


async def extract_focused_metrics(
    text: str,
    answer_fn: AnswerFn | None = None,
) -> dict:
    """
    Ask the six focused questions in parallel.

    Each question is sent with the keyword sections relevant to its metric,
    or with the whole document when no section mentions it.
    """
    answer_fn = answer_fn or _default_answer_fn()
    values = await asyncio.gather(*(
        _focused_metric(text, q["key"], q["question"], answer_fn)
        for q in FOCUSED_QUERIES
    ))

    result: dict = {q["key"]: v for q, v in zip(FOCUSED_QUERIES, values)}
    found = sum(1 for v in values if v is not None)
    result["confidence"] = focused_confidence(found)
    result["notes"] = (
        f"Successfully extracted {found} out of {len(FOCUSED_QUERIES)} "
        "metrics using focused AI queries."
    )
    return result


# ---------------------------------------------------------------------------
# Automatic Validation Pass
# ---------------------------------------------------------------------------

METRIC_TYPE_MAP: dict[str, list[str]] = {
    "enterpriseValue": ["companyValuation", "enterpriseValue"],
    "valueOfEquity": ["valueOfEquity"],
    "valuationPerShare": ["companyValuation", "valuationPerShare"],
    "revenue": ["keyFinancials"],
    "ebitda": ["keyFinancials"],
    "discountRate": ["discountRates"],
}

DEFAULT_METRIC_DATA: dict[str, dict] = {
    "companyValuation": {"currency": "USD", "totalValue": None, "perShareValue": None},
    "enterpriseValue": {"currency": "USD", "currentValue": None, "previousValue": None},
    "valueOfEquity": {"currency": "USD", "currentValue": None, "previousValue": None},
    "valuationPerShare": {"currency": "USD", "currentValue": None, "previousValue": None},
    "keyFinancials": {"revenue": None, "ebitda": None, "weightedAverageCostOfCapital": None},
    "discountRates": {"discountRate": None, "riskFreeRate": None, "marketRiskPremium": None},
}

# (metric_type, validation key) → field of metric_data
_FIELD_MAP: dict[tuple[str, str], str] = {
    ("companyValuation", "enterpriseValue"): "totalValue",
    ("companyValuation", "valuationPerShare"): "perShareValue",
    ("enterpriseValue", "enterpriseValue"): "currentValue",
    ("valueOfEquity", "valueOfEquity"): "currentValue",
    ("valuationPerShare", "valuationPerShare"): "currentValue",
    ("keyFinancials", "revenue"): "revenue",
    ("keyFinancials", "ebitda"): "ebitda",
    ("discountRates", "discountRate"): "discountRate",
}

HIGH_CONFIDENCE_SCORE = 0.9
MEDIUM_CONFIDENCE_SCORE = 0.7


@dataclass
class MetricUpdate:
    metric_type: str
    key: str
    value: float
    confidence: float


def current_metric_values(rows: dict[str, dict | None]) -> dict[str, float]:
    """
    Current validation values from stored metric rows.

    `rows` maps metric_type to metric_data. Falsy values count as missing.
    """
    current: dict[str, float] = {}

    def take(key: str, data: dict | None, field_name: str) -> None:
        if data and data.get(field_name):
            current[key] = data[field_name]

    take("enterpriseValue", rows.get("companyValuation"), "totalValue")
    take("valuationPerShare", rows.get("companyValuation"), "perShareValue")
    take("valueOfEquity", rows.get("valueOfEquity"), "currentValue")
    take("enterpriseValue", rows.get("enterpriseValue"), "currentValue")
    take("valuationPerShare", rows.get("valuationPerShare"), "currentValue")
    take("revenue", rows.get("keyFinancials"), "revenue")
    take("ebitda", rows.get("keyFinancials"), "ebitda")
    take("discountRate", rows.get("discountRates"), "discountRate")
    return current


def should_update(answer: ValidationAnswer, current_value) -> bool:
    """A found value with High/Medium confidence that fills or replaces the current one."""
    if answer.extracted_value is None:
        return False
    if answer.confidence.lower() not in ("high", "medium"):
        return False
    return current_value is None or answer.matches.lower() in ("no", "n/a")


def plan_metric_updates(key: str, answer: ValidationAnswer) -> list[MetricUpdate]:
    score = (
        HIGH_CONFIDENCE_SCORE if answer.confidence.lower() == "high"
        else MEDIUM_CONFIDENCE_SCORE
    )
    return [
        MetricUpdate(metric_type=t, key=key, value=answer.extracted_value, confidence=score)
        for t in METRIC_TYPE_MAP.get(key, [])
    ]


def apply_metric_update(existing: dict | None, update: MetricUpdate) -> dict:
    """New metric_data for a row, starting from the default structure when absent."""
    if existing is not None:
        data = dict(existing)
    else:
        data = copy.deepcopy(DEFAULT_METRIC_DATA.get(update.metric_type, {}))
    field_name = _FIELD_MAP.get((update.metric_type, update.key))
    if field_name:
        data[field_name] = update.value
    return data


async def find_metric_updates(
    text: str,
    rows: dict[str, dict | None],
    answer_fn: AnswerFn | None = None,
) -> list[MetricUpdate]:
    """
    Run the automatic validation prompts for all six keys.

    Every key is queried, including those with no current value. Failed
    queries are logged and skipped.
    """
    answer_fn = answer_fn or _default_answer_fn()
    current = current_metric_values(rows)
    updates: list[MetricUpdate] = []

    for query in VALIDATION_QUERIES:
        key = query["key"]
        prompt = build_validation_prompt(query["question"], current.get(key), auto=True)
        try:
            response = await answer_fn(prompt, text)
        except Exception:
            logger.exception("Error in auto-validation for %s", key)
            continue

        answer = parse_validation_response(response)
        if should_update(answer, current.get(key)):
            logger.info(
                "Found better AI value for %s: %s (current: %s)",
                key, answer.extracted_value, current.get(key),
            )
            updates.extend(plan_metric_updates(key, answer))

    return updates
