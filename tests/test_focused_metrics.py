# =============================================================================
# Unit Tests — Live, Validation and Focused Metric Questions
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from esop_analyzer.services.focused_metrics import (
    DEFAULT_METRIC_DATA,
    FOCUSED_QUERIES,
    LIVE_METRIC_QUESTIONS,
    MetricUpdate,
    ValidationAnswer,
    apply_metric_update,
    build_validation_prompt,
    current_metric_values,
    extract_focused_metrics,
    find_metric_updates,
    focused_confidence,
    get_live_metrics,
    parse_validation_response,
    plan_metric_updates,
    should_update,
    validate_metrics,
)


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.get_event_loop().run_until_complete(coro)


# ---------------------------------------------------------------------------
# Live Metrics
# ---------------------------------------------------------------------------


class TestLiveMetrics:
    def test_groups_answers_by_category(self):
        answers = {
            "companyValue": "The enterprise value is $50 million.",
            "perShareValue": "The price per share is $25.50.",
            "esopPercentage": "The ESOP owns 30%.",
            "discountRate": "The WACC is 12.5%.",
            "revenue": "Revenue was 80 million.",
            "ebitda": "EBITDA is not mentioned in the document.",
        }
        by_question = {q["question"]: answers[q["key"]] for q in LIVE_METRIC_QUESTIONS}
        answer_fn = AsyncMock(side_effect=lambda question, text: by_question[question])

        metrics, errors = _run(get_live_metrics("document text", answer_fn))

        assert errors == []
        assert metrics["companyValuation"]["data"]["companyValue"] == pytest.approx(50_000_000)
        assert metrics["companyValuation"]["data"]["perShareValue"] == pytest.approx(25.5)
        assert metrics["capitalStructure"]["data"]["esopPercentage"] == pytest.approx(30)
        assert metrics["discountRates"]["data"]["discountRate"] == pytest.approx(12.5)
        assert metrics["keyFinancials"]["data"]["revenue"] == pytest.approx(80_000_000)
        assert metrics["keyFinancials"]["data"]["ebitda"] is None

    def test_errors_collected(self):
        answer_fn = AsyncMock(side_effect=RuntimeError("rate limited"))
        metrics, errors = _run(get_live_metrics("text", answer_fn))
        assert metrics == {}
        assert len(errors) == len(LIVE_METRIC_QUESTIONS)
        assert errors[0] == {"metric": "companyValue", "error": "rate limited"}


# ---------------------------------------------------------------------------
# Validation Queries
# ---------------------------------------------------------------------------


class TestValidationPrompt:
    def test_manual_prompt(self):
        prompt = build_validation_prompt("What is revenue?", 80000000)
        assert prompt.startswith("What is revenue?")
        assert "Current extracted value: 80000000" in prompt
        assert "MATCHES_CURRENT: [Yes/No]" in prompt

    def test_auto_prompt_without_value(self):
        prompt = build_validation_prompt("What is revenue?", None, auto=True)
        assert "Current extracted value: None found" in prompt
        assert "MATCHES_CURRENT: [Yes/No/N/A if no current value]" in prompt


class TestParseValidationResponse:
    def test_all_fields(self):
        answer = parse_validation_response(
            "EXTRACTED_VALUE: $52,000,000\nCONFIDENCE: High\nMATCHES_CURRENT: No\nEXPLANATION: differs"
        )
        assert answer.extracted_value == 52_000_000
        assert answer.confidence == "High"
        assert answer.matches == "No"

    def test_not_found_value(self):
        answer = parse_validation_response("EXTRACTED_VALUE: NOT_FOUND\nCONFIDENCE: Low")
        assert answer.extracted_value is None
        assert answer.confidence == "Low"

    def test_defaults(self):
        answer = parse_validation_response("Unstructured answer")
        assert answer == ValidationAnswer()


class TestValidateMetrics:
    def test_only_supplied_metrics_checked(self):
        answer_fn = AsyncMock(return_value="EXTRACTED_VALUE: 80000000\nCONFIDENCE: High")
        results = _run(validate_metrics("text", {"revenue": 80000000, "ebitda": None}, answer_fn))

        assert list(results) == ["revenue"]
        assert results["revenue"]["currentValue"] == 80000000
        assert results["revenue"]["aiValidation"].startswith("EXTRACTED_VALUE")
        assert "revenue" in results["revenue"]["query"]

    def test_failure_reported(self):
        answer_fn = AsyncMock(side_effect=RuntimeError("down"))
        results = _run(validate_metrics("text", {"discountRate": 12.5}, answer_fn))
        assert results["discountRate"]["error"] == "Validation failed"


# ---------------------------------------------------------------------------
# Focused AI Metrics
# ---------------------------------------------------------------------------


class TestFocusedMetrics:
    def test_confidence_levels(self):
        assert focused_confidence(6) == "High"
        assert focused_confidence(4) == "High"
        assert focused_confidence(3) == "Medium"
        assert focused_confidence(2) == "Medium"
        assert focused_confidence(1) == "Low"
        assert focused_confidence(0) == "Low"

    def test_uses_relevant_sections(self):
        text = "Conclusion\nThe enterprise value is $40 million.\nEnd"
        answer_fn = AsyncMock(return_value="$40 million")
        result = _run(extract_focused_metrics(text, answer_fn))

        assert result["enterpriseValue"] == pytest.approx(40_000_000)
        ev_call = next(
            c for c in answer_fn.call_args_list
            if c.args[0].startswith(FOCUSED_QUERIES[0]["question"])
        )
        assert "Focus on these relevant sections" in ev_call.args[0]
        assert ev_call.args[1] == "The enterprise value is $40 million."

    def test_whole_text_without_sections(self):
        answer_fn = AsyncMock(return_value="NOT_FOUND")
        result = _run(extract_focused_metrics("nothing relevant here", answer_fn))

        assert all(c.args[1] == "nothing relevant here" for c in answer_fn.call_args_list)
        assert result["confidence"] == "Low"
        assert result["notes"] == (
            "Successfully extracted 0 out of 6 metrics using focused AI queries."
        )

    def test_bare_and_zero_numbers_rejected(self):
        answer_fn = AsyncMock(return_value="0")
        result = _run(extract_focused_metrics("text", answer_fn))
        assert result["revenue"] is None

    def test_failed_query_is_none(self):
        answer_fn = AsyncMock(side_effect=RuntimeError("down"))
        result = _run(extract_focused_metrics("text", answer_fn))
        assert all(result[q["key"]] is None for q in FOCUSED_QUERIES)


# ---------------------------------------------------------------------------
# Automatic Validation Pass
# ---------------------------------------------------------------------------


class TestAutoValidation:
    def test_current_values_from_rows(self):
        rows = {
            "companyValuation": {"totalValue": 50.0, "perShareValue": 10.0},
            "enterpriseValue": {"currentValue": 55.0},
            "keyFinancials": {"revenue": 80.0, "ebitda": None},
            "discountRates": {"discountRate": 0},
        }
        assert current_metric_values(rows) == {
            "enterpriseValue": 55.0,
            "valuationPerShare": 10.0,
            "revenue": 80.0,
        }

    def test_should_update(self):
        high_no = ValidationAnswer(extracted_value=5.0, confidence="High", matches="No")
        assert should_update(high_no, 4.0)
        assert should_update(ValidationAnswer(5.0, "Medium", "Yes"), None)
        assert not should_update(ValidationAnswer(5.0, "High", "Yes"), 5.0)
        assert not should_update(ValidationAnswer(5.0, "Low", "No"), 4.0)
        assert not should_update(ValidationAnswer(None, "High", "No"), 4.0)

    def test_plan_updates_all_mapped_types(self):
        updates = plan_metric_updates("enterpriseValue", ValidationAnswer(60.0, "High", "No"))
        assert [u.metric_type for u in updates] == ["companyValuation", "enterpriseValue"]
        assert all(u.confidence == 0.9 for u in updates)

    def test_medium_confidence_score(self):
        [update] = plan_metric_updates("discountRate", ValidationAnswer(12.0, "Medium", "N/A"))
        assert update.confidence == 0.7

    def test_apply_update_to_existing(self):
        update = MetricUpdate(metric_type="companyValuation", key="enterpriseValue", value=60.0, confidence=0.9)
        data = apply_metric_update({"totalValue": 50.0, "currency": "USD"}, update)
        assert data == {"totalValue": 60.0, "currency": "USD"}

    def test_apply_update_creates_default(self):
        update = MetricUpdate(metric_type="keyFinancials", key="ebitda", value=9.0, confidence=0.7)
        data = apply_metric_update(None, update)
        assert data["ebitda"] == 9.0
        assert data["revenue"] is None
        assert DEFAULT_METRIC_DATA["keyFinancials"]["ebitda"] is None

    def test_find_updates(self):
        responses = {
            "enterpriseValue": "EXTRACTED_VALUE: $60,000,000\nCONFIDENCE: High\nMATCHES_CURRENT: No",
            "revenue": "EXTRACTED_VALUE: $80,000,000\nCONFIDENCE: High\nMATCHES_CURRENT: Yes",
        }

        async def answer(prompt: str, text: str) -> str:
            for key, response in responses.items():
                if key == "enterpriseValue" and "enterprise value" in prompt:
                    return response
                if key == "revenue" and "annual revenue" in prompt:
                    return response
            return "EXTRACTED_VALUE: NOT_FOUND\nCONFIDENCE: Low"

        rows = {
            "companyValuation": {"totalValue": 50_000_000},
            "keyFinancials": {"revenue": 80_000_000},
        }
        updates = _run(find_metric_updates("text", rows, AsyncMock(side_effect=answer)))

        assert {(u.metric_type, u.key) for u in updates} == {
            ("companyValuation", "enterpriseValue"),
            ("enterpriseValue", "enterpriseValue"),
        }
        assert all(u.value == 60_000_000 for u in updates)
