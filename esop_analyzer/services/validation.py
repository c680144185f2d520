# =============================================================================
# Enhanced AI Validation — Multi-Pass Extraction With Cross-Checks
# =============================================================================
#
# Extracts eight headline metrics with one focused question each, then
# checks them against each other:
#
#   Step 1: primary prompt per metric → parse_metric_response(), retried
#           with the secondary prompt when nothing was found
#   Step 2: cross_validate(): enterprise value vs equity value
#           - implied debt in (0, 0.8·EV) → debt recorded as corrected
#           - implied debt ≤ 0 → correction prompt, adopt corrected EV/equity
#   Step 3: validate_relationships(): EBITDA margin and EV/EBITDA sanity
#   Step 4: apply_corrections() → final metrics
#   Step 5: calculate_confidence() → integer percentage
#
# DESIGN DECISION: The answer function is injected. Production uses
# qa.answer_question over the full document text (with its provider
# fallback chain); tests pass an AsyncMock returning canned answers.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from esop_analyzer.services.heuristics import find_best_number

logger = logging.getLogger(__name__)

AnswerFn = Callable[[str, str], Awaitable[str]]

DEBT_RATIO_LIMIT = 0.8

_NOT_FOUND_RULE = (
    'Respond with ONLY the numeric value (no $ signs, commas, or text). '
    'If not found, respond with "NOT_FOUND".'
)

VALIDATION_PROMPTS: dict[str, dict[str, str]] = {
    "enterpriseValue": {
        "primary": f"""Extract the ENTERPRISE VALUE (total business value including debt) from this ESOP valuation document.

Look for terms like:
- "Enterprise Value"
- "Total Business Value"
- "Business Enterprise Value"
- "Total Company Value" (if it includes debt)

IMPORTANT: Enterprise Value = Equity Value + Debt. This is the total value of the business.

{_NOT_FOUND_RULE}""",
        "secondary": """Find the ENTERPRISE VALUE in this document. This is the total value of the business including debt.

Look in:
- Executive Summary
- Valuation Conclusion
- Final Results
- Business Enterprise Value sections

Enterprise Value = Equity Value + Debt Value

Respond with ONLY the number. If not found, respond with "NOT_FOUND".""",
    },
    "valueOfEquity": {
        "primary": f"""Extract the EQUITY VALUE (value of shareholders' equity only) from this ESOP valuation document.

Look for terms like:
- "Equity Value"
- "Fair Market Value of Equity"
- "Shareholder Value"
- "Value of Equity"
- "Total Equity Value"

IMPORTANT: Equity Value = Enterprise Value - Debt. This is the value available to shareholders.

{_NOT_FOUND_RULE}""",
        "secondary": """Find the EQUITY VALUE in this document. This is the value of shareholders' equity only.

Look in:
- Equity Valuation sections
- Shareholder Value sections
- Fair Market Value of Equity
- Capital Structure analysis

Equity Value = Enterprise Value - Debt Value

Respond with ONLY the number. If not found, respond with "NOT_FOUND".""",
    },
    "debtValue": {
        "primary": f"""Extract the DEBT VALUE from this ESOP valuation document.

Look for terms like:
- "Total Debt"
- "Outstanding Debt"
- "Interest-Bearing Debt"
- "Long-term Debt"
- "Short-term Debt"

{_NOT_FOUND_RULE}""",
    },
    "revenue": {
        "primary": f"""Extract the ANNUAL REVENUE from this ESOP valuation document.

Look for terms like:
- "Annual Revenue"
- "Total Revenue"
- "Sales"
- "Gross Revenue"

Use the most recent year's data if multiple years are shown.

{_NOT_FOUND_RULE}""",
    },
    "ebitda": {
        "primary": f"""Extract the EBITDA (Earnings Before Interest, Taxes, Depreciation, and Amortization) from this ESOP valuation document.

Look for terms like:
- "EBITDA"
- "Earnings Before Interest, Taxes, Depreciation, and Amortization"
- "Adjusted EBITDA"
- "Normalized EBITDA"

Use the most recent year's data if multiple years are shown.

{_NOT_FOUND_RULE}""",
    },
    "discountRate": {
        "primary": """Extract the DISCOUNT RATE or WACC (Weighted Average Cost of Capital) from this ESOP valuation document.

Look for terms like:
- "Discount Rate"
- "WACC"
- "Weighted Average Cost of Capital"
- "Required Rate of Return"
- "Cost of Capital"

Respond with ONLY the percentage number (no % symbol). If not found, respond with "NOT_FOUND".""",
    },
    "totalShares": {
        "primary": """Extract the TOTAL SHARES OUTSTANDING from this ESOP valuation document.

Look for terms like:
- "Total Shares Outstanding"
- "Shares Outstanding"
- "Common Shares Outstanding"
- "Total Outstanding Shares"

Respond with ONLY the numeric value (no commas or text). If not found, respond with "NOT_FOUND".""",
    },
    "esopPercentage": {
        "primary": """Extract the ESOP OWNERSHIP PERCENTAGE from this ESOP valuation document.

Look for terms like:
- "ESOP Ownership Percentage"
- "Employee Ownership Percentage"
- "ESOP Percentage"
- "Employee Stock Ownership Percentage"

Respond with ONLY the percentage number (no % symbol). If not found, respond with "NOT_FOUND".""",
    },
}

_NOT_FOUND_MARKERS = ("not_found", "not found", "unknown", "unavailable")


@dataclass
class CheckedValue:
    """One metric's cross-validation record."""

    original: float | None
    corrected: float | None = None
    reason: str | None = None

    def to_dict(self) -> dict:
        return {"original": self.original, "corrected": self.corrected, "reason": self.reason}


@dataclass
class RelationshipCheck:
    ebitda_margin: float | None = None
    ev_ebitda_multiple: float | None = None
    issues: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "ebitdaMargin": self.ebitda_margin,
            "valuationMultiples": (
                {"evEbitdaMultiple": self.ev_ebitda_multiple}
                if self.ev_ebitda_multiple is not None else None
            ),
            "issues": list(self.issues),
        }


@dataclass
class ValidationOutcome:
    metrics: dict[str, float | None]
    cross_validation: dict[str, CheckedValue]
    relationship_validation: RelationshipCheck
    confidence: int

    def to_dict(self) -> dict:
        return {
            "metrics": dict(self.metrics),
            "validation": {
                "crossValidation": {
                    name: check.to_dict() for name, check in self.cross_validation.items()
                },
                "relationshipValidation": self.relationship_validation.to_dict(),
            },
            "confidence": self.confidence,
        }


def _default_answer_fn() -> AnswerFn:
    from esop_analyzer.services.qa import answer_question

    return answer_question


class EnhancedAIValidation:
    """Multi-pass metric extraction with enterprise/equity cross-validation."""

    def __init__(self, answer_fn: AnswerFn | None = None) -> None:
        self._answer = answer_fn or _default_answer_fn()
        self.prompts = VALIDATION_PROMPTS

    # -- parsing -----------------------------------------------------------

    @staticmethod
    def parse_metric_response(response: str | None) -> float | None:
        """
        Numeric value of a single-metric answer.

        NOT_FOUND / unknown / unavailable answers give None. Values with
        units or a `$` beat bare numbers; among equals the first wins.
        """
        if not response:
            return None
        cleaned = response.strip().lower()
        if any(marker in cleaned for marker in _NOT_FOUND_MARKERS):
            return None
        return find_best_number(cleaned)

    @classmethod
    def parse_correction_response(cls, response: str) -> dict[str, float | None]:
        """Read ENTERPRISE_VALUE / EQUITY_VALUE / DEBT_VALUE lines."""
        result: dict[str, float | None] = {}
        labels = {
            "ENTERPRISE_VALUE:": "enterpriseValue",
            "EQUITY_VALUE:": "valueOfEquity",
            "DEBT_VALUE:": "debtValue",
        }
        for line in response.split("\n"):
            for label, key in labels.items():
                if line.startswith(label):
                    result[key] = cls.parse_metric_response(line[len(label):].strip())
        return result

    # -- passes ------------------------------------------------------------

    async def extract_single_metric(self, text: str, prompt: str, name: str) -> float | None:
        try:
            response = await self._answer(prompt, text)
        except Exception:
            logger.exception("Error extracting %s", name)
            return None
        value = self.parse_metric_response(response)
        logger.debug("Parsed %s: %s", name, value)
        return value

    async def cross_validate(
        self,
        text: str,
        results: dict[str, float | None],
    ) -> dict[str, CheckedValue]:
        """Check enterprise value against equity value via the implied debt."""
        validation = {
            "enterpriseValue": CheckedValue(original=results.get("enterpriseValue")),
            "valueOfEquity": CheckedValue(original=results.get("valueOfEquity")),
            "debtValue": CheckedValue(original=results.get("debtValue")),
        }

        ev = results.get("enterpriseValue")
        equity = results.get("valueOfEquity")
        if not ev or not equity:
            return validation

        implied_debt = ev - equity
        if 0 < implied_debt < ev * DEBT_RATIO_LIMIT:
            logger.info(
                "Cross-validation: EV %s - equity %s = debt %s", ev, equity, implied_debt,
            )
            validation["debtValue"].corrected = implied_debt
            validation["debtValue"].reason = "Calculated from Enterprise Value - Equity Value"

        elif implied_debt <= 0:
            logger.warning("Cross-validation issue: negative debt implied (%s)", implied_debt)
            prompt = f"""In this ESOP valuation document, I need to clarify the relationship between Enterprise Value and Equity Value.

Current extracted values:
- Enterprise Value: {ev}
- Equity Value: {equity}

This creates a negative debt value, which is impossible. Please help me find the correct values.

Look for:
1. Enterprise Value (total business value including debt)
2. Equity Value (value available to shareholders)
3. Total Debt (if mentioned separately)

Please respond with:
ENTERPRISE_VALUE: [number]
EQUITY_VALUE: [number]
DEBT_VALUE: [number or "NOT_FOUND"]

If you can't find separate values, respond with "INSUFFICIENT_DATA"."""
            try:
                response = await self._answer(prompt, text)
            except Exception:
                logger.exception("Error in cross-validation correction")
                return validation

            corrected = self.parse_correction_response(response)
            if corrected.get("enterpriseValue") and corrected.get("valueOfEquity"):
                reason = "Corrected due to cross-validation failure"
                validation["enterpriseValue"].corrected = corrected["enterpriseValue"]
                validation["enterpriseValue"].reason = reason
                validation["valueOfEquity"].corrected = corrected["valueOfEquity"]
                validation["valueOfEquity"].reason = reason
                validation["debtValue"].corrected = corrected.get("debtValue")

        return validation

    @staticmethod
    def validate_relationships(results: dict[str, float | None]) -> RelationshipCheck:
        """Flag unusual EBITDA margins and EV/EBITDA multiples."""
        check = RelationshipCheck()
        revenue = results.get("revenue")
        ebitda = results.get("ebitda")
        ev = results.get("enterpriseValue")

        if revenue and ebitda:
            margin = ebitda / revenue * 100
            check.ebitda_margin = margin
            if margin > 50:
                check.issues.append("Unusually high EBITDA margin (>50%)")
            elif margin < 5:
                check.issues.append("Unusually low EBITDA margin (<5%)")

        if ev and ebitda:
            multiple = ev / ebitda
            check.ev_ebitda_multiple = multiple
            if multiple > 20:
                check.issues.append("Unusually high EV/EBITDA multiple (>20x)")
            elif multiple < 3:
                check.issues.append("Unusually low EV/EBITDA multiple (<3x)")

        return check

    @staticmethod
    def apply_corrections(
        results: dict[str, float | None],
        cross_validation: dict[str, CheckedValue],
    ) -> dict[str, float | None]:
        corrected = dict(results)
        for name, check in cross_validation.items():
            if check.corrected is not None:
                logger.info(
                    "Corrected %s: %s → %s (%s)",
                    name, check.original, check.corrected, check.reason,
                )
                corrected[name] = check.corrected
        return corrected

    @staticmethod
    def calculate_confidence(
        results: dict[str, float | None],
        cross_validation: dict[str, CheckedValue],
        relationships: RelationshipCheck,
    ) -> int:
        """
        Weighted score as an integer percentage:
        40% extracted fraction, 30% consistent cross-validation,
        30% no relationship issues.
        """
        score = 0.0
        if results:
            extracted = sum(1 for v in results.values() if v is not None)
            score += extracted / len(results) * 0.4

        consistent = all(
            check.corrected is None or check.reason is not None
            for check in cross_validation.values()
        )
        if consistent:
            score += 0.3
        if not relationships.issues:
            score += 0.3
        return round(score * 100)

    # -- entry point -------------------------------------------------------

    async def run(self, text: str) -> ValidationOutcome:
        """Run all passes over the document text."""
        results: dict[str, float | None] = {}
        for name, prompts in self.prompts.items():
            value = await self.extract_single_metric(text, prompts["primary"], name)
            if value is None and "secondary" in prompts:
                logger.debug("Retrying %s with the secondary prompt", name)
                value = await self.extract_single_metric(text, prompts["secondary"], name)
            results[name] = value

        cross_validation = await self.cross_validate(text, results)
        relationships = self.validate_relationships(results)
        if relationships.issues:
            logger.warning(
                "Financial relationship issues detected: %s",
                ", ".join(relationships.issues),
            )

        final = self.apply_corrections(results, cross_validation)
        confidence = self.calculate_confidence(final, cross_validation, relationships)
        logger.info("Enhanced validation complete (confidence=%d%%)", confidence)

        return ValidationOutcome(
            metrics=final,
            cross_validation=cross_validation,
            relationship_validation=relationships,
            confidence=confidence,
        )
