# =============================================================================
# Heuristic Metric Extraction — Regex Patterns Over Report Text
# =============================================================================
#
# Pure-Python extraction used in three places:
#
# 1. extract_comprehensive_metrics(): the "comprehensive metrics" pass run on
#    every uploaded document. Table sections, table rows and multi-year
#    column tables are parsed first, then pattern families for valuation,
#    per-share value, revenue, EBITDA, discount rate, shares, ESOP
#    percentage and valuation multiples. Also the fallback when page-wise
#    AI extraction finds too little.
#
# 2. Number parsing for LLM answers: parse_numeric_answer() (live metrics),
#    find_best_number() (validation and focused AI metrics) and
#    first_positive_number() (automatic validation EXTRACTED_VALUE lines).
#
# 3. Metric structure helpers shared by the pipeline and the API.
#
# DESIGN DECISION: No I/O here. Every function takes text and returns
# plain dicts or floats, so the whole module is unit-tested directly.
# =============================================================================

from __future__ import annotations

import copy
import logging
import re

logger = logging.getLogger(__name__)

_NUMBER = r"([\d,]+(?:\.\d+)?)"
_UNITS = r"(?:\s*(?:million|billion|m|b))?"


# ---------------------------------------------------------------------------
# Metric Structures
# ---------------------------------------------------------------------------

EMPTY_METRICS: dict[str, dict] = {
    "enterpriseValue": {"currentValue": None, "previousValue": None, "currency": "USD"},
    "valueOfEquity": {"currentValue": None, "previousValue": None, "currency": "USD"},
    "valuationPerShare": {"currentValue": None, "previousValue": None, "currency": "USD"},
    "keyFinancials": {"revenue": None, "ebitda": None, "weightedAverageCostOfCapital": None},
    "companyValuation": {"totalValue": None, "perShareValue": None, "currency": "USD"},
    "discountRates": {"discountRate": None, "riskFreeRate": None, "marketRiskPremium": None},
    "capitalStructure": {"totalShares": None, "esopShares": None, "esopPercentage": None},
    "valuationMultiples": {"revenueMultiple": None, "ebitdaMultiple": None},
    "valuationDate": {"date": None, "description": None},
}

# A metrics dict counts as usable when at least 2 of these are set
KEY_METRIC_PATHS = [
    "enterpriseValue.currentValue",
    "valueOfEquity.currentValue",
    "valuationPerShare.currentValue",
    "companyValuation.totalValue",
    "companyValuation.perShareValue",
    "keyFinancials.revenue",
    "keyFinancials.ebitda",
]


def empty_metrics_structure() -> dict[str, dict]:
    """A fresh all-null metrics structure."""
    return copy.deepcopy(EMPTY_METRICS)


def get_nested_value(data: dict, path: str):
    current = data
    for key in path.split("."):
        if not isinstance(current, dict) or key not in current:
            return None
        current = current[key]
    return current


def has_valid_metrics(metrics: dict | None, minimum: int = 2) -> bool:
    """True when at least `minimum` key metric paths are non-null and non-zero."""
    if not metrics or not isinstance(metrics, dict):
        return False
    valid = 0
    for path in KEY_METRIC_PATHS:
        value = get_nested_value(metrics, path)
        if value is not None and value != 0:
            valid += 1
    return valid >= minimum


# ---------------------------------------------------------------------------
# Number Parsing
# ---------------------------------------------------------------------------


def _to_float(text: str) -> float | None:
    try:
        return float(text)
    except ValueError:
        return None


def parse_number(text: str | None) -> float | None:
    """
    Parse the leading number of a string after removing `$`, commas,
    whitespace and `%`. "12.5x" parses as 12.5.
    """
    if not text:
        return None
    cleaned = re.sub(r"[$,\s%]", "", text)
    match = re.match(r"[-+]?(?:\d+\.?\d*|\.\d+)", cleaned)
    return _to_float(match.group(0)) if match else None


def parse_value_with_units(text: str | None) -> float | None:
    """
    Parse the first number in a string and apply its unit.

    million / " m" → ×1e6, billion / " b" → ×1e9, thousand / " k" → ×1e3.
    """
    if not text:
        return None
    match = re.search(r"\$?" + _NUMBER, text)
    if not match:
        return None
    base = _to_float(match.group(1).replace(",", ""))
    if base is None:
        return None

    lower = text.lower()
    if "million" in lower or " m " in lower or lower.endswith(" m"):
        multiplier = 1_000_000
    elif "billion" in lower or " b " in lower or lower.endswith(" b"):
        multiplier = 1_000_000_000
    elif "thousand" in lower or " k " in lower or lower.endswith(" k"):
        multiplier = 1_000
    else:
        multiplier = 1
    return base * multiplier


def _unit_multiplier(matched: str) -> int:
    lower = matched.lower()
    if "million" in lower or lower.endswith(" m") or " m " in lower:
        return 1_000_000
    if "billion" in lower or lower.endswith(" b") or " b " in lower:
        return 1_000_000_000
    return 1


# Patterns for LLM answers that state a single metric
VALUE_PATTERNS = [
    re.compile(r"\$\s*" + _NUMBER + r"\s*(?:million|m)\b", re.IGNORECASE),
    re.compile(r"\$\s*" + _NUMBER + r"\s*(?:billion|b)\b", re.IGNORECASE),
    re.compile(_NUMBER + r"\s*(?:million|m)\s*(?:dollars?)?", re.IGNORECASE),
    re.compile(_NUMBER + r"\s*(?:billion|b)\s*(?:dollars?)?", re.IGNORECASE),
    re.compile(r"\$\s*" + _NUMBER + r"\b"),
    re.compile(_NUMBER + r"%"),
    re.compile(_NUMBER + r"\s*percent", re.IGNORECASE),
    re.compile(r"\b([\d,]{4,}(?:\.\d+)?)\b"),
]
ANY_NUMBER_PATTERN = re.compile(r"\b" + _NUMBER + r"\b")


def find_best_number(
    text: str,
    include_any_number: bool = True,
    allow_zero: bool = True,
) -> float | None:
    """
    Best number in an LLM answer.

    Matches with a unit word or `$` (priority 2) beat bare numbers
    (priority 1); among equal priority the first match wins.
    """
    patterns = VALUE_PATTERNS + ([ANY_NUMBER_PATTERN] if include_any_number else [])
    best_value: float | None = None
    best_priority = 0

    for pattern in patterns:
        for match in pattern.finditer(text):
            value = _to_float(match.group(1).replace(",", ""))
            if value is None:
                continue
            matched = match.group(0).lower()
            value *= _unit_multiplier(matched)
            if value < 0 or (value == 0 and not allow_zero):
                continue
            has_units = "million" in matched or "billion" in matched or "$" in matched
            priority = 2 if has_units else 1
            if priority > best_priority:
                best_value = value
                best_priority = priority

    return best_value


def first_positive_number(text: str) -> float | None:
    """First positive number found by VALUE_PATTERNS, patterns tried in order."""
    for pattern in VALUE_PATTERNS:
        for match in pattern.finditer(text):
            value = _to_float(match.group(1).replace(",", ""))
            if value is None:
                continue
            value *= _unit_multiplier(match.group(0))
            if value > 0:
                return value
    return None


_NEGATIVE_PHRASES = (
    "not found", "not mentioned", "unclear", "not specified", "n/a", "unavailable",
)

# (pattern, multiplier), most specific first
NUMERIC_ANSWER_PATTERNS = [
    (re.compile(r"\$\s*" + _NUMBER + r"\s*billion"), 1_000_000_000),
    (re.compile(r"\$\s*" + _NUMBER + r"\s*b\b"), 1_000_000_000),
    (re.compile(r"\$\s*" + _NUMBER + r"\s*million"), 1_000_000),
    (re.compile(r"\$\s*" + _NUMBER + r"\s*m\b"), 1_000_000),
    (re.compile(_NUMBER + r"\s*billion"), 1_000_000_000),
    (re.compile(_NUMBER + r"\s*b\b"), 1_000_000_000),
    (re.compile(_NUMBER + r"\s*million"), 1_000_000),
    (re.compile(_NUMBER + r"\s*m\b"), 1_000_000),
    (re.compile(_NUMBER + r"(?:%|\s*percent)"), 1),
    (re.compile(r"\$\s*" + _NUMBER), 1),
    (re.compile(r"\b([\d,]{4,}(?:\.\d+)?)\b"), 1),
    (re.compile(r"\b" + _NUMBER + r"\b"), 1),
]


def parse_numeric_answer(answer: str | None) -> float | None:
    """
    Numeric value of a live-metric answer.

    Answers saying the value was not found return None. Otherwise the
    first match of the first pattern that matches wins, scaled by that
    pattern's unit.
    """
    if not answer or not isinstance(answer, str):
        return None
    cleaned = answer.strip().lower()

    if any(phrase in cleaned for phrase in _NEGATIVE_PHRASES):
        return None

    for pattern, multiplier in NUMERIC_ANSWER_PATTERNS:
        match = pattern.search(cleaned)
        if match:
            value = _to_float(match.group(1).replace(",", ""))
            if value is not None:
                return value * multiplier
    return None


# ---------------------------------------------------------------------------
# Relevant Sections
# ---------------------------------------------------------------------------

SECTION_KEYWORDS: dict[str, list[str]] = {
    "enterpriseValue": [
        "enterprise value", "business value", "company value", "total value",
        "concluded value", "valuation conclusion",
    ],
    "valueOfEquity": [
        "equity value", "fair market value", "shareholder value", "equity conclusion",
    ],
    "valuationPerShare": ["per share", "share value", "price per share", "value per share"],
    "revenue": ["revenue", "sales", "income statement", "financial statements"],
    "ebitda": ["ebitda", "earnings", "cash flow", "financial analysis"],
    "discountRate": ["discount rate", "required return", "wacc", "cost of capital", "assumptions"],
}


def find_relevant_sections(text: str, metric: str, max_sections: int = 3) -> list[str]:
    """
    Text windows around the metric's keywords.

    Each window spans up to 500 characters before and 1000 after a keyword
    on the same line. Keywords are searched in order; at most
    `max_sections` windows are returned.
    """
    sections: list[str] = []
    for keyword in SECTION_KEYWORDS.get(metric, []):
        pattern = re.compile(
            r".{0,500}" + re.escape(keyword) + r".{0,1000}", re.IGNORECASE,
        )
        sections.extend(m.group(0) for m in pattern.finditer(text))
    return sections[:max_sections]


# ---------------------------------------------------------------------------
# Comprehensive Extraction
# ---------------------------------------------------------------------------

_TABLE_SECTION_PATTERNS = [
    re.compile(r"financial\s+metrics\s*\([^)]*\)\s*:?\s*\n\s*([\s\S]*?)(?=\n\s*[A-Z]|$)", re.IGNORECASE),
    re.compile(r"(?:revenue|ebitda|financial)\s*:?\s*\n\s*([\s\S]*?)(?=\n\s*[A-Z]|$)", re.IGNORECASE),
    re.compile(r"capital\s+structure\s*:?\s*\n\s*([\s\S]*?)(?=\n\s*[A-Z]|$)", re.IGNORECASE),
    re.compile(r"ownership\s+category\s*:?\s*\n\s*([\s\S]*?)(?=\n\s*[A-Z]|$)", re.IGNORECASE),
]

_VALUATION_PATTERNS = [
    re.compile(r"total\s+company\s+value:?\s*\$?" + _NUMBER + _UNITS, re.IGNORECASE),
    re.compile(r"total\s+company\s+valuation:?\s*\$?" + _NUMBER + _UNITS, re.IGNORECASE),
    re.compile(r"company\s+valuation:?\s*\$?" + _NUMBER + _UNITS, re.IGNORECASE),
    re.compile(r"enterprise\s+value:?\s*\$?" + _NUMBER + _UNITS, re.IGNORECASE),
    re.compile(r"total\s+(?:value|valuation):?\s*\$?" + _NUMBER + _UNITS, re.IGNORECASE),
    re.compile(r"fair\s+market\s+value:?\s*\$?" + _NUMBER + _UNITS, re.IGNORECASE),
]

_BULLET_VALUATION_PATTERNS = [
    re.compile(r"•\s*total\s+company\s+value:?\s*\$?" + _NUMBER, re.IGNORECASE),
    re.compile(r"•\s*company\s+valuation:?\s*\$?" + _NUMBER, re.IGNORECASE),
    re.compile(r"•\s*total\s+value:?\s*\$?" + _NUMBER, re.IGNORECASE),
]

_PER_SHARE_PATTERNS = [
    re.compile(r"per\s+share\s+value:?\s*\$?" + _NUMBER, re.IGNORECASE),
    re.compile(r"share\s+value:?\s*\$?" + _NUMBER, re.IGNORECASE),
    re.compile(r"price\s+per\s+share:?\s*\$?" + _NUMBER, re.IGNORECASE),
    re.compile(r"fair\s+market\s+value\s+per\s+share:?\s*\$?" + _NUMBER, re.IGNORECASE),
]

_REVENUE_PATTERNS = [
    re.compile(r"revenue:?\s*\$?" + _NUMBER + _UNITS, re.IGNORECASE),
    re.compile(r"annual\s+revenue:?\s*\$?" + _NUMBER + _UNITS, re.IGNORECASE),
    re.compile(r"total\s+revenue:?\s*\$?" + _NUMBER + _UNITS, re.IGNORECASE),
    re.compile(r"sales:?\s*\$?" + _NUMBER + _UNITS, re.IGNORECASE),
]

_EBITDA_PATTERNS = [
    re.compile(r"ebitda:?\s*\$?" + _NUMBER + _UNITS, re.IGNORECASE),
    re.compile(r"earnings\s+before:?\s*\$?" + _NUMBER + _UNITS, re.IGNORECASE),
    re.compile(r"operating\s+income:?\s*\$?" + _NUMBER + _UNITS, re.IGNORECASE),
]

_DISCOUNT_RATE_PATTERNS = [
    re.compile(r"discount\s+rate\s+applied:?\s*([\d.]+)%?", re.IGNORECASE),
    re.compile(r"discount\s+rate:?\s*([\d.]+)%?", re.IGNORECASE),
    re.compile(r"wacc:?\s*([\d.]+)%?", re.IGNORECASE),
    re.compile(r"weighted\s+average\s+cost:?\s*([\d.]+)%?", re.IGNORECASE),
    re.compile(r"cost\s+of\s+capital:?\s*([\d.]+)%?", re.IGNORECASE),
]

_SHARES_PATTERNS = [
    re.compile(r"total\s+shares\s+outstanding:?\s*([\d,]+)", re.IGNORECASE),
    re.compile(r"shares\s+outstanding:?\s*([\d,]+)", re.IGNORECASE),
    re.compile(r"outstanding\s+shares:?\s*([\d,]+)", re.IGNORECASE),
    re.compile(r"total\s+shares:?\s*([\d,]+)", re.IGNORECASE),
]

_ESOP_PATTERNS = [
    re.compile(r"esop\s+ownership\s+percentage:?\s*([\d.]+)%?", re.IGNORECASE),
    re.compile(r"esop\s+percentage:?\s*([\d.]+)%?", re.IGNORECASE),
    re.compile(r"employee\s+ownership:?\s*([\d.]+)%?", re.IGNORECASE),
    re.compile(r"ownership\s+percentage:?\s*([\d.]+)%?", re.IGNORECASE),
]

_REVENUE_MULTIPLE_PATTERNS = [
    re.compile(r"revenue\s+multiple(?:\s+(?:is|of|:))?\s*([\d.]+)x?", re.IGNORECASE),
    re.compile(r"([\d.]+)x?\s+revenue\s+multiple", re.IGNORECASE),
]

_EBITDA_MULTIPLE_PATTERNS = [
    re.compile(r"ebitda\s+multiple(?:\s+(?:is|of|:))?\s*([\d.]+)x?", re.IGNORECASE),
    re.compile(r"([\d.]+)x?\s+ebitda\s+multiple", re.IGNORECASE),
]

_YEAR_HEADER = re.compile(r"\d{4}\s+\d{4}\s+\d{4}")
_AMOUNT = re.compile(r"\$?" + _NUMBER)


def _valid_shares(value: float | None) -> bool:
    return bool(value) and value > 1000


def _valid_percentage(value: float | None) -> bool:
    return bool(value) and 0 < value <= 100


def _parse_table_sections(text: str, metrics: dict) -> None:
    financials = metrics["keyFinancials"]
    capital = metrics["capitalStructure"]

    for pattern in _TABLE_SECTION_PATTERNS:
        for match in pattern.finditer(text):
            table = match.group(1)

            revenue = re.search(r"revenue\s+\$?" + _NUMBER, table, re.IGNORECASE)
            if revenue and not financials.get("revenue"):
                value = parse_value_with_units(revenue.group(0))
                if value:
                    financials["revenue"] = value

            ebitda = re.search(r"ebitda\s+\$?" + _NUMBER, table, re.IGNORECASE)
            if ebitda and not financials.get("ebitda"):
                value = parse_value_with_units(ebitda.group(0))
                if value:
                    financials["ebitda"] = value

            shares = re.search(r"total\s+\$?([\d,]+)", table, re.IGNORECASE)
            if shares and not capital.get("totalShares"):
                value = parse_number(shares.group(1))
                if _valid_shares(value):
                    capital["totalShares"] = value

            esop = re.search(r"esop\s+[^%]*?(\d+(?:\.\d+)?)%", table, re.IGNORECASE)
            if esop and not capital.get("esopPercentage"):
                value = parse_number(esop.group(1))
                if _valid_percentage(value):
                    capital["esopPercentage"] = value


def _parse_table_rows(text: str, metrics: dict) -> None:
    financials = metrics["keyFinancials"]
    capital = metrics["capitalStructure"]

    for raw_line in text.split("\n"):
        line = raw_line.strip()
        lower = line.lower()

        if "revenue" in lower and not financials.get("revenue") and _AMOUNT.search(line):
            value = parse_value_with_units(line)
            if value:
                financials["revenue"] = value

        if "ebitda" in lower and not financials.get("ebitda") and _AMOUNT.search(line):
            value = parse_value_with_units(line)
            if value:
                financials["ebitda"] = value

        if "total" in lower and "shares" in lower and not capital.get("totalShares"):
            shares = re.search(r"(\d{1,3}(?:,\d{3})*)", line)
            if shares:
                value = parse_number(shares.group(1))
                if _valid_shares(value):
                    capital["totalShares"] = value

        if "esop" in lower and "%" in line and not capital.get("esopPercentage"):
            percent = re.search(r"(\d+(?:\.\d+)?)%", line)
            if percent:
                value = parse_number(percent.group(1))
                if _valid_percentage(value):
                    capital["esopPercentage"] = value


def _parse_multi_column_tables(text: str, metrics: dict) -> None:
    """Rows under a 'YYYY YYYY YYYY' header; the first column is the latest year."""
    financials = metrics["keyFinancials"]
    lines = text.split("\n")

    for i, line in enumerate(lines):
        if not _YEAR_HEADER.search(line):
            continue
        for data_line in lines[i + 1:i + 10]:
            lower = data_line.lower()
            for key in ("revenue", "ebitda"):
                if key in lower and not financials.get(key):
                    first = _AMOUNT.search(data_line)
                    if first:
                        value = parse_value_with_units(first.group(0))
                        if value:
                            financials[key] = value


def _with_units(match: re.Match) -> float | None:
    return parse_value_with_units(match.group(0))


def _group_number(match: re.Match) -> float | None:
    return parse_number(match.group(1))


def _first_pattern_value(patterns: list[re.Pattern], text: str, parse) -> float | None:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            value = parse(match)
            if value:
                return value
    return None


def extract_comprehensive_metrics(text: str) -> dict[str, dict]:
    """
    Extract ESOP valuation metrics from report text with regex heuristics.

    Returns the metrics structure without a valuationDate section. Values
    found in tables take precedence over the free-text pattern families
    for revenue, EBITDA, shares and ESOP percentage.
    """
    metrics: dict[str, dict] = {
        "enterpriseValue": {"currency": "USD"},
        "valueOfEquity": {"currency": "USD"},
        "valuationPerShare": {"currency": "USD"},
        "keyFinancials": {},
        "companyValuation": {"currency": "USD"},
        "discountRates": {},
        "capitalStructure": {},
        "valuationMultiples": {},
    }
    financials = metrics["keyFinancials"]
    capital = metrics["capitalStructure"]

    _parse_table_sections(text, metrics)
    _parse_table_rows(text, metrics)
    _parse_multi_column_tables(text, metrics)

    # Company valuation; equity assumed equal to enterprise value until
    # a debt figure says otherwise
    total = _first_pattern_value(_VALUATION_PATTERNS, text, _with_units)
    if total is None:
        total = _first_pattern_value(_BULLET_VALUATION_PATTERNS, text, _with_units)
    if total is not None:
        metrics["companyValuation"]["totalValue"] = total
        metrics["enterpriseValue"]["currentValue"] = total
        metrics["valueOfEquity"]["currentValue"] = total

    per_share = _first_pattern_value(
        _PER_SHARE_PATTERNS, text, _group_number,
    )
    if per_share is not None:
        metrics["companyValuation"]["perShareValue"] = per_share
        metrics["valuationPerShare"]["currentValue"] = per_share

    if not financials.get("revenue"):
        revenue = _first_pattern_value(_REVENUE_PATTERNS, text, _with_units)
        if revenue is not None:
            financials["revenue"] = revenue

    if not financials.get("ebitda"):
        ebitda = _first_pattern_value(_EBITDA_PATTERNS, text, _with_units)
        if ebitda is not None:
            financials["ebitda"] = ebitda

    discount = _first_pattern_value(
        _DISCOUNT_RATE_PATTERNS, text, _group_number,
    )
    if discount is not None:
        metrics["discountRates"]["discountRate"] = discount
        financials["weightedAverageCostOfCapital"] = discount

    if not capital.get("totalShares"):
        shares = _first_pattern_value(
            _SHARES_PATTERNS, text, _group_number,
        )
        if shares is not None:
            capital["totalShares"] = shares

    if not capital.get("esopPercentage"):
        esop = _first_pattern_value(
            _ESOP_PATTERNS, text, _group_number,
        )
        if esop is not None:
            capital["esopPercentage"] = esop

    revenue_multiple = _first_pattern_value(
        _REVENUE_MULTIPLE_PATTERNS, text, _group_number,
    )
    if revenue_multiple is not None:
        metrics["valuationMultiples"]["revenueMultiple"] = revenue_multiple

    ebitda_multiple = _first_pattern_value(
        _EBITDA_MULTIPLE_PATTERNS, text, _group_number,
    )
    if ebitda_multiple is not None:
        metrics["valuationMultiples"]["ebitdaMultiple"] = ebitda_multiple

    if capital.get("totalShares") and capital.get("esopPercentage"):
        capital["esopShares"] = round(
            capital["totalShares"] * capital["esopPercentage"] / 100
        )

    logger.debug("Comprehensive extraction results: %s", metrics)
    return metrics
