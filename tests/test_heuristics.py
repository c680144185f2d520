# =============================================================================
# Unit Tests — Heuristic Metric Extraction
# =============================================================================
#
# Regex extraction over report text and the number parsers used for LLM
# answers. Pure functions, no external dependencies.
# =============================================================================

import pytest

from esop_analyzer.services.heuristics import (
    empty_metrics_structure,
    extract_comprehensive_metrics,
    find_best_number,
    find_relevant_sections,
    first_positive_number,
    has_valid_metrics,
    parse_number,
    parse_numeric_answer,
    parse_value_with_units,
)

SAMPLE_REPORT = """Valuation Summary
Enterprise Value: $50 million
Per Share Value: $25.50
Discount Rate: 12.5%
Shares Outstanding: 2,000,000
ESOP Ownership Percentage: 30%
"""


# ---------------------------------------------------------------------------
# Metric Structures
# ---------------------------------------------------------------------------


class TestMetricStructures:
    def test_empty_structure_is_all_null(self):
        empty = empty_metrics_structure()
        assert empty["enterpriseValue"]["currentValue"] is None
        assert empty["valuationDate"] == {"date": None, "description": None}

    def test_empty_structure_is_a_fresh_copy(self):
        first = empty_metrics_structure()
        first["keyFinancials"]["revenue"] = 1
        assert empty_metrics_structure()["keyFinancials"]["revenue"] is None

    def test_has_valid_metrics_needs_two(self):
        metrics = {"enterpriseValue": {"currentValue": 5.0}}
        assert not has_valid_metrics(metrics)
        metrics["keyFinancials"] = {"revenue": 10.0}
        assert has_valid_metrics(metrics)

    def test_zero_values_do_not_count(self):
        metrics = {
            "enterpriseValue": {"currentValue": 0},
            "keyFinancials": {"revenue": 10.0, "ebitda": 0},
        }
        assert not has_valid_metrics(metrics)

    def test_has_valid_metrics_rejects_none(self):
        assert not has_valid_metrics(None)
        assert not has_valid_metrics({})


# ---------------------------------------------------------------------------
# Number Parsing
# ---------------------------------------------------------------------------


class TestParseNumber:
    def test_strips_symbols(self):
        assert parse_number("$1,234.50") == 1234.5
        assert parse_number("12.5%") == 12.5

    def test_multiple_suffix(self):
        assert parse_number("6.5x") == 6.5

    def test_no_number(self):
        assert parse_number("n/a") is None
        assert parse_number(None) is None

    def test_units(self):
        assert parse_value_with_units("$12.5 million") == pytest.approx(12_500_000)
        assert parse_value_with_units("1.2 billion") == pytest.approx(1_200_000_000)
        assert parse_value_with_units("$750 thousand") == pytest.approx(750_000)
        assert parse_value_with_units("$1,500") == 1500


class TestParseNumericAnswer:
    def test_dollar_millions(self):
        assert parse_numeric_answer("The enterprise value is $45.2 million.") == pytest.approx(45_200_000)

    def test_billions(self):
        assert parse_numeric_answer("About 1.5 billion dollars") == pytest.approx(1_500_000_000)

    def test_percentage(self):
        assert parse_numeric_answer("The discount rate is 12.5%.") == pytest.approx(12.5)

    def test_percent_word(self):
        assert parse_numeric_answer("The ESOP owns 30 percent of the company") == pytest.approx(30)

    def test_plain_dollars(self):
        assert parse_numeric_answer("Fair market value per share is $25.50") == pytest.approx(25.5)

    def test_not_found_phrases(self):
        assert parse_numeric_answer("The revenue is not mentioned in the document") is None
        assert parse_numeric_answer("N/A") is None

    def test_empty(self):
        assert parse_numeric_answer("") is None
        assert parse_numeric_answer(None) is None


class TestFindBestNumber:
    def test_units_beat_bare_numbers(self):
        value = find_best_number("Using 3 methods the value is $2.5 million")
        assert value == pytest.approx(2_500_000)

    def test_bare_number_when_allowed(self):
        assert find_best_number("approximately 15") == 15

    def test_bare_number_excluded(self):
        assert find_best_number("approximately 15", include_any_number=False) is None

    def test_zero_excluded(self):
        assert find_best_number("0", allow_zero=False) is None
        assert find_best_number("0") == 0

    def test_first_positive_number(self):
        assert first_positive_number("$1,250,000") == 1_250_000
        assert first_positive_number("none here") is None


class TestFindRelevantSections:
    def test_windows_around_keywords(self):
        text = "Intro line\nThe enterprise value was concluded at $40 million.\nOther"
        sections = find_relevant_sections(text, "enterpriseValue")
        assert sections == ["The enterprise value was concluded at $40 million."]

    def test_caps_sections(self):
        text = "\n".join(["revenue line"] * 10)
        assert len(find_relevant_sections(text, "revenue", max_sections=3)) == 3

    def test_unknown_metric(self):
        assert find_relevant_sections("anything", "unknownMetric") == []


# ---------------------------------------------------------------------------
# Comprehensive Extraction
# ---------------------------------------------------------------------------


class TestExtractComprehensiveMetrics:
    def test_headline_values(self):
        metrics = extract_comprehensive_metrics(SAMPLE_REPORT)

        assert metrics["companyValuation"]["totalValue"] == pytest.approx(50_000_000)
        assert metrics["enterpriseValue"]["currentValue"] == pytest.approx(50_000_000)
        assert metrics["valueOfEquity"]["currentValue"] == pytest.approx(50_000_000)
        assert metrics["valuationPerShare"]["currentValue"] == pytest.approx(25.5)
        assert metrics["discountRates"]["discountRate"] == pytest.approx(12.5)
        assert metrics["keyFinancials"]["weightedAverageCostOfCapital"] == pytest.approx(12.5)

    def test_capital_structure(self):
        capital = extract_comprehensive_metrics(SAMPLE_REPORT)["capitalStructure"]
        assert capital["totalShares"] == 2_000_000
        assert capital["esopPercentage"] == 30
        assert capital["esopShares"] == 600_000

    def test_table_rows(self):
        text = "Key figures\nRevenue $12.5 million\nEBITDA $3 million\n"
        financials = extract_comprehensive_metrics(text)["keyFinancials"]
        assert financials["revenue"] == pytest.approx(12_500_000)
        assert financials["ebitda"] == pytest.approx(3_000_000)

    def test_multi_year_table_uses_latest_column(self):
        text = "Income Summary 2023 2022 2021\nRevenue $10,000,000 $9,000,000 $8,000,000\n"
        financials = extract_comprehensive_metrics(text)["keyFinancials"]
        assert financials["revenue"] == 10_000_000

    def test_valuation_multiples(self):
        text = "The revenue multiple of 1.8x and an EBITDA multiple of 7.5x were applied."
        multiples = extract_comprehensive_metrics(text)["valuationMultiples"]
        assert multiples["revenueMultiple"] == pytest.approx(1.8)
        assert multiples["ebitdaMultiple"] == pytest.approx(7.5)

    def test_out_of_range_esop_percentage_rejected(self):
        text = "ESOP 150%\n"
        assert "esopPercentage" not in extract_comprehensive_metrics(text)["capitalStructure"]

    def test_no_valuation_date_section(self):
        assert "valuationDate" not in extract_comprehensive_metrics(SAMPLE_REPORT)

    def test_empty_text(self):
        metrics = extract_comprehensive_metrics("")
        assert metrics["keyFinancials"] == {}
        assert metrics["companyValuation"] == {"currency": "USD"}
