# =============================================================================
# Unit Tests — Worker Tasks
# =============================================================================
#
# The pure metric-selection helpers are tested directly. The task bodies run
# with the sync session, the parser/embedder and the LLM steps patched out.
# =============================================================================

from contextlib import ExitStack
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from esop_analyzer.db.models import ExtractedMetric, JobStatus
from esop_analyzer.services.focused_metrics import MetricUpdate
from esop_analyzer.services.heuristics import empty_metrics_structure
from esop_analyzer.workers.tasks import (
    COMPREHENSIVE_CONFIDENCE,
    _store_document,
    auto_validate_document,
    choose_final_metrics,
    metric_rows,
    process_document,
)

AI_METRICS = {
    "enterpriseValue": {"currentValue": 50_000_000},
    "keyFinancials": {"revenue": 80_000_000, "ebitda": 12_000_000},
    "confidenceScores": {
        "enterpriseValue.currentValue": 1.0,
        "keyFinancials.revenue": 1.0,
        "keyFinancials.ebitda": 0.7,
    },
}

COMPREHENSIVE = {
    "companyValuation": {"totalValue": 40_000_000, "currency": "USD"},
    "keyFinancials": {"revenue": 75_000_000},
}


class TestChooseFinalMetrics:
    def test_ai_preferred(self):
        metrics, source = choose_final_metrics(AI_METRICS, COMPREHENSIVE)
        assert source == "ai"
        assert metrics is AI_METRICS

    def test_heuristic_fallback(self):
        sparse = {"enterpriseValue": {"currentValue": 50_000_000}}
        metrics, source = choose_final_metrics(sparse, COMPREHENSIVE)
        assert source == "comprehensive"
        assert metrics is COMPREHENSIVE

    def test_failed_ai_extraction(self):
        _, source = choose_final_metrics(None, COMPREHENSIVE)
        assert source == "comprehensive"

    def test_nothing_found(self):
        metrics, source = choose_final_metrics(None, {"keyFinancials": {}})
        assert source == "empty"
        assert metrics == empty_metrics_structure()


class TestMetricRows:
    def test_ai_confidence_is_section_minimum(self):
        rows = {r.metric_type: r for r in metric_rows(3, AI_METRICS, "ai")}

        assert set(rows) == {"enterpriseValue", "keyFinancials"}
        assert rows["enterpriseValue"].confidence_score == 1.0
        assert rows["keyFinancials"].confidence_score == pytest.approx(0.7)
        assert rows["keyFinancials"].metric_data == AI_METRICS["keyFinancials"]
        assert all(r.document_id == 3 for r in rows.values())

    def test_ai_section_without_scores(self):
        metrics = {"valuationDate": {"date": "2025-12-31"}, "confidenceScores": {}}
        [row] = metric_rows(1, metrics, "ai")
        assert row.confidence_score == 0.0

    def test_comprehensive_confidence(self):
        rows = metric_rows(1, COMPREHENSIVE, "comprehensive")
        assert [r.confidence_score for r in rows] == [COMPREHENSIVE_CONFIDENCE] * 2

    def test_empty_rows(self):
        rows = metric_rows(1, empty_metrics_structure(), "empty")
        assert rows
        assert all(r.confidence_score == 0.0 for r in rows)

    def test_non_dict_sections_skipped(self):
        rows = metric_rows(1, {"notes": "text", "keyFinancials": {"revenue": 1}}, "comprehensive")
        assert [r.metric_type for r in rows] == ["keyFinancials"]


# ---------------------------------------------------------------------------
# Task Bodies
# ---------------------------------------------------------------------------
# The database is a MagicMock session behind a patched get_sync_session;
# async service calls go through a patched _run_async.
# ---------------------------------------------------------------------------

TASKS = "esop_analyzer.workers.tasks"

FILE_VALIDATION = {
    "isValid": True,
    "errors": [],
    "warnings": ["File unusually small for a PDF document"],
    "fileInfo": {"size": 900, "pdfVersion": "1.7"},
}

STATS = {"totalChunks": 4, "processingTime": 1200, "parseMethod": "docling"}


def _session_factory(*sessions: MagicMock) -> MagicMock:
    """
    Stand-in for get_sync_session.

    One session is reused for every `with` block; several are handed out
    in order, one per block.
    """
    factory = MagicMock()
    if len(sessions) == 1:
        factory.return_value.__enter__.return_value = sessions[0]
    else:
        factory.return_value.__enter__.side_effect = list(sessions)
    return factory


class TestStoreDocument:
    def test_file_validation_recorded_in_metadata(self, tmp_path):
        pdf = tmp_path / "report.pdf"
        pdf.write_bytes(b"%PDF-1.7\n" + b"0" * 100)
        parsed = SimpleNamespace(
            elements=[], pages=[], page_count=1, parse_method="docling",
            table_count=0, full_text="PAGE 1:\nRevenue $10M",
        )
        chunk = SimpleNamespace(
            content="Revenue $10M", chunk_index=0, page_number=1, token_count=5, metadata={},
        )

        added = []
        session = MagicMock()
        session.add.side_effect = added.append
        session.flush.side_effect = lambda: setattr(added[0], "id", 11)

        with patch(f"{TASKS}.parse_pdf", return_value=parsed), \
             patch(f"{TASKS}.chunk_pages", return_value=[chunk]), \
             patch(f"{TASKS}.embed_batch", return_value=[[0.1, 0.2]]), \
             patch(f"{TASKS}.get_sync_session", _session_factory(session)):
            document_id, text, stats = _store_document("job-1", str(pdf), "report.pdf", FILE_VALIDATION)

        document = added[0]
        assert document_id == 11
        assert text == "PAGE 1:\nRevenue $10M"
        assert stats["totalChunks"] == 1
        assert document.metadata_["fileValidation"] == FILE_VALIDATION
        assert document.metadata_["pageCount"] == 1
        assert "fileValidation" not in stats
        session.commit.assert_called_once()

    def test_empty_document_rejected(self, tmp_path):
        parsed = SimpleNamespace(elements=[], pages=[], page_count=0, parse_method="docling")
        with patch(f"{TASKS}.parse_pdf", return_value=parsed), \
             patch(f"{TASKS}.chunk_pages", return_value=[]):
            with pytest.raises(ValueError, match="No chunks produced"):
                _store_document("job-1", str(tmp_path / "x.pdf"), "x.pdf")


class TestProcessDocument:
    def _patches(self, store):
        enhanced = SimpleNamespace(to_dict=lambda: {"confidence": 80}, confidence=80)
        return [
            patch(f"{TASKS}._discard_partial_document"),
            patch(f"{TASKS}._store_document", store),
            patch(f"{TASKS}.extract_comprehensive_metrics", return_value=COMPREHENSIVE),
            patch(f"{TASKS}._run_async", side_effect=[AI_METRICS, enhanced]),
            patch(f"{TASKS}.get_sync_session", _session_factory(MagicMock())),
            patch(f"{TASKS}.auto_validate_document"),
            patch("esop_analyzer.services.jobs.update_job"),
        ]

    def test_progress_sequence_and_summary(self):
        store = MagicMock(return_value=(11, "document text", STATS))
        patches = self._patches(store)
        with ExitStack() as stack:
            mocks = [stack.enter_context(p) for p in patches]
            summary = process_document("job-1", "/uploads/r.pdf", "r.pdf", FILE_VALIDATION)
        auto_validate, update_job = mocks[5], mocks[6]

        store.assert_called_once_with("job-1", "/uploads/r.pdf", "r.pdf", FILE_VALIDATION)
        assert [c.kwargs["progress"] for c in update_job.call_args_list] == [10, 40, 70, 90, 100]
        final = update_job.call_args_list[-1].kwargs
        assert final["status"] == JobStatus.COMPLETED
        assert final["result"] == summary
        assert summary["documentId"] == 11
        assert summary["metricsSource"] == "ai"
        assert summary["enhancedConfidence"] == 80
        auto_validate.delay.assert_called_once_with(11)

    def test_failure_marks_job_failed_and_raises(self):
        store = MagicMock(side_effect=RuntimeError("Docling conversion failed"))
        patches = self._patches(store)
        with ExitStack() as stack:
            mocks = [stack.enter_context(p) for p in patches]
            with pytest.raises(RuntimeError, match="Docling conversion failed"):
                process_document("job-1", "/uploads/r.pdf", "r.pdf")
        auto_validate, update_job = mocks[5], mocks[6]

        final = update_job.call_args_list[-1].kwargs
        assert final["status"] == JobStatus.FAILED
        assert final["error_message"] == "Docling conversion failed"
        auto_validate.delay.assert_not_called()


class TestAutoValidateDocument:
    def _read_session(self, rows: list[ExtractedMetric]) -> MagicMock:
        session = MagicMock()
        session.get.return_value = SimpleNamespace(content_text="document text")
        session.execute.return_value.scalars.return_value = rows
        return session

    def test_shared_rows_updated_and_missing_rows_created(self):
        valuation = ExtractedMetric(
            document_id=11, metric_type="companyValuation",
            metric_data={"totalValue": 50.0, "currency": "USD"}, confidence_score=0.95,
        )
        financials = ExtractedMetric(
            document_id=11, metric_type="keyFinancials",
            metric_data={"revenue": 80.0, "ebitda": None}, confidence_score=0.95,
        )
        updates = [
            MetricUpdate("companyValuation", "enterpriseValue", 60.0, 0.9),
            MetricUpdate("enterpriseValue", "enterpriseValue", 60.0, 0.9),
            MetricUpdate("keyFinancials", "ebitda", 9.0, 0.7),
        ]
        write = MagicMock()
        write.execute.return_value.scalars.return_value.first.side_effect = [valuation, None, financials]

        with patch(f"{TASKS}.get_sync_session",
                   _session_factory(self._read_session([valuation, financials]), write)), \
             patch(f"{TASKS}._run_async", return_value=updates):
            applied = auto_validate_document(11)

        assert applied == 3
        assert valuation.metric_data == {"totalValue": 60.0, "currency": "USD"}
        assert valuation.confidence_score == 0.9
        assert financials.metric_data == {"revenue": 80.0, "ebitda": 9.0}
        assert financials.confidence_score == 0.7
        [created] = [c.args[0] for c in write.add.call_args_list]
        assert created.metric_type == "enterpriseValue"
        assert created.confidence_score == 0.9
        assert write.commit.call_count == 3

    def test_failed_row_rolled_back_and_skipped(self):
        financials = ExtractedMetric(
            document_id=11, metric_type="keyFinancials", metric_data={"ebitda": None},
        )
        write = MagicMock()
        write.execute.return_value.scalars.return_value.first.side_effect = [
            RuntimeError("deadlock detected"), financials,
        ]
        updates = [
            MetricUpdate("companyValuation", "enterpriseValue", 60.0, 0.9),
            MetricUpdate("keyFinancials", "ebitda", 9.0, 0.7),
        ]

        with patch(f"{TASKS}.get_sync_session", _session_factory(self._read_session([]), write)), \
             patch(f"{TASKS}._run_async", return_value=updates):
            applied = auto_validate_document(11)

        assert applied == 1
        write.rollback.assert_called_once()
        assert financials.metric_data == {"ebitda": 9.0}

    def test_missing_document(self):
        session = MagicMock()
        session.get.return_value = None
        with patch(f"{TASKS}.get_sync_session", _session_factory(session)), \
             patch(f"{TASKS}._run_async") as run_async:
            assert auto_validate_document(99) == 0
        run_async.assert_not_called()

    def test_no_updates(self):
        with patch(f"{TASKS}.get_sync_session", _session_factory(self._read_session([]))), \
             patch(f"{TASKS}._run_async", return_value=[]):
            assert auto_validate_document(11) == 0
