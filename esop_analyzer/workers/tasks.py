# =============================================================================
# Celery Task Definitions — Report Processing Pipeline
# =============================================================================
#
# process_document: the full pipeline for one uploaded valuation report.
#
#   10%  Parse PDF (Docling) → chunk (tiktoken) → embed (OpenAI)
#        → store document + chunks
#   40%  Heuristic comprehensive metrics → stored as comprehensive_metrics
#   70%  Page-wise AI extraction (falls back to the heuristic result when it
#        finds too little) → one extracted_metrics row per metric type
#        → enhanced AI validation (cross-checked)
#   90%  Upsert ai_metrics_cache with the validation result
#  100%  Job completed; automatic validation pass queued
#
# IMPORTANT: Celery workers are SYNCHRONOUS. Database work uses the sync
# engine; the async LLM services run inside one asyncio.run() per step.
#
# RETRY STRATEGY:
# max_retries=3, 60s between attempts. The job is marked failed on every
# failed attempt so the client sees the error while a retry is pending.
# =============================================================================

import asyncio
import logging
import time
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert

from esop_analyzer.config import settings
from esop_analyzer.db.engine import get_sync_session
from esop_analyzer.db.models import (
    AIMetricsCache,
    Document,
    DocumentChunk,
    ExtractedMetric,
    JobStatus,
    ProcessingJob,
)
from esop_analyzer.services import jobs
from esop_analyzer.services.chunker import chunk_pages, section_titles_by_page
from esop_analyzer.services.embedder import embed_batch
from esop_analyzer.services.focused_metrics import apply_metric_update, find_metric_updates
from esop_analyzer.services.heuristics import (
    empty_metrics_structure,
    extract_comprehensive_metrics,
    has_valid_metrics,
)
from esop_analyzer.services.llm import reset_providers
from esop_analyzer.services.metrics_extraction import extract_metrics
from esop_analyzer.services.parser import parse_pdf
from esop_analyzer.services.validation import EnhancedAIValidation
from esop_analyzer.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

COMPREHENSIVE_METRIC_TYPE = "comprehensive_metrics"
COMPREHENSIVE_CONFIDENCE = 0.95


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _run_async(coro_factory):
    """Run an async service call from a sync task on a fresh event loop."""
    reset_providers()
    return asyncio.run(coro_factory())


def _progress(job_id: str, progress: int, message: str, **values) -> None:
    with get_sync_session() as session:
        jobs.update_job(
            session, job_id,
            status=values.pop("status", JobStatus.PROCESSING),
            progress=progress,
            message=message,
            **values,
        )


def _discard_partial_document(job_id: str) -> None:
    """Remove the document a failed earlier attempt of this job stored."""
    with get_sync_session() as session:
        job = session.get(ProcessingJob, job_id)
        if job is not None and job.document_id is not None:
            document_id = job.document_id
            # Detach first: the job row itself cascades with the document
            job.document_id = None
            session.flush()
            document = session.get(Document, document_id)
            if document is not None:
                logger.info("[%s] Discarding document %d from a previous attempt", job_id, document_id)
                session.delete(document)


def _store_document(
    job_id: str,
    file_path: str,
    filename: str,
    file_validation: dict | None = None,
) -> tuple[int, str, dict]:
    """
    Parse, chunk, embed and store a report.

    Returns:
        (document id, stored document text, processing stats)
    """
    started = time.monotonic()

    parsed = parse_pdf(file_path)
    logger.info(
        "[%s] Parsed %s: %d elements, %d pages (%s)",
        job_id, filename, len(parsed.elements), parsed.page_count, parsed.parse_method,
    )

    chunks = chunk_pages(
        parsed.pages,
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
        section_titles=section_titles_by_page(parsed.elements),
    )
    if not chunks:
        raise ValueError("No chunks produced from document: PDF may be empty or unreadable")

    embeddings = embed_batch([c.content for c in chunks])
    content_text = parsed.full_text

    stats = {
        "parseMethod": parsed.parse_method,
        "pageCount": parsed.page_count,
        "totalChunks": len(chunks),
        "tableCount": parsed.table_count,
        "embeddingModel": settings.embedding_model,
        "embeddingDimensions": settings.embedding_dimensions,
        "averageChunkTokens": round(sum(c.token_count for c in chunks) / len(chunks)),
    }

    with get_sync_session() as session:
        document = Document(
            filename=filename,
            file_path=file_path,
            file_size=Path(file_path).stat().st_size,
            page_count=parsed.page_count,
            content_text=content_text,
        )
        session.add(document)
        session.flush()

        session.add_all([
            DocumentChunk(
                document_id=document.id,
                chunk_text=chunk.content,
                chunk_index=chunk.chunk_index,
                page_number=chunk.page_number or None,
                token_count=chunk.token_count,
                embedding=embedding,
                metadata_=chunk.metadata,
            )
            for chunk, embedding in zip(chunks, embeddings)
        ])

        stats["processingTime"] = round((time.monotonic() - started) * 1000)
        metadata = dict(stats)
        if file_validation:
            metadata["fileValidation"] = file_validation
        document.metadata_ = metadata
        document.processed_at = datetime.now(timezone.utc)
        session.commit()
        document_id = document.id

    logger.info("[%s] Stored document %d with %d chunks", job_id, document_id, len(chunks))
    return document_id, content_text, stats


def choose_final_metrics(ai_metrics: dict | None, comprehensive: dict) -> tuple[dict, str]:
    """
    Pick the metrics stored per metric type.

    AI extraction when it found at least two key metrics, else the heuristic
    result when it did, else the all-null structure.
    """
    if ai_metrics and has_valid_metrics(ai_metrics):
        return ai_metrics, "ai"
    if has_valid_metrics(comprehensive):
        return comprehensive, "comprehensive"
    return empty_metrics_structure(), "empty"


def metric_rows(document_id: int, metrics: dict, source: str) -> list[ExtractedMetric]:
    """One ExtractedMetric per metric section, with its confidence."""
    scores = metrics.get("confidenceScores", {})
    rows = []
    for metric_type, data in metrics.items():
        if metric_type == "confidenceScores" or not isinstance(data, dict):
            continue
        if source == "ai":
            section = [v for k, v in scores.items() if k.startswith(f"{metric_type}.")]
            confidence = min(section) if section else 0.0
        elif source == "comprehensive":
            confidence = COMPREHENSIVE_CONFIDENCE
        else:
            confidence = 0.0
        rows.append(ExtractedMetric(
            document_id=document_id,
            metric_type=metric_type,
            metric_data=data,
            confidence_score=confidence,
        ))
    return rows


# ---------------------------------------------------------------------------
# Processing Task
# ---------------------------------------------------------------------------


@celery_app.task(
    bind=True,
    name="process_document",
    max_retries=3,
    default_retry_delay=60,
)
def process_document(
    self,
    job_id: str,
    file_path: str,
    filename: str,
    file_validation: dict | None = None,
) -> dict:
    """
    Process an uploaded report and record progress on its job row.

    Returns:
        dict summary stored as the job result.
    """
    task_id = self.request.id
    logger.info("Starting processing: job=%s file=%s task=%s", job_id, file_path, task_id)

    try:
        # --- 10%: parse, chunk, embed, store ---
        _discard_partial_document(job_id)
        _progress(job_id, 10, "Starting PDF processing...")
        document_id, content_text, stats = _store_document(
            job_id, file_path, filename, file_validation,
        )

        # --- 40%: heuristic metrics ---
        _progress(
            job_id, 40, "PDF processing complete, extracting metrics...",
            document_id=document_id,
        )
        comprehensive = extract_comprehensive_metrics(content_text)
        with get_sync_session() as session:
            session.add(ExtractedMetric(
                document_id=document_id,
                metric_type=COMPREHENSIVE_METRIC_TYPE,
                metric_value="comprehensive",
                metric_data=comprehensive,
                confidence_score=COMPREHENSIVE_CONFIDENCE,
            ))
            session.commit()

        # --- 70%: AI extraction + enhanced validation ---
        _progress(
            job_id, 70,
            "Comprehensive metrics extracted, performing AI validation...",
        )
        ai_metrics = _run_async(lambda: extract_metrics(content_text))
        final_metrics, source = choose_final_metrics(ai_metrics, comprehensive)
        logger.info("[%s] Storing %s metrics for document %d", job_id, source, document_id)
        with get_sync_session() as session:
            session.add_all(metric_rows(document_id, final_metrics, source))
            session.commit()

        enhanced = _run_async(lambda: EnhancedAIValidation().run(content_text))

        # --- 90%: cache ---
        _progress(job_id, 90, "AI validation complete, finalizing...")
        cache_blob = {
            "comprehensiveMetrics": comprehensive,
            "enhancedValidation": enhanced.to_dict(),
            "processingStats": {
                "totalChunks": stats["totalChunks"],
                "processingTime": stats["processingTime"],
                "parseMethod": stats["parseMethod"],
            },
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        with get_sync_session() as session:
            stmt = insert(AIMetricsCache).values(document_id=document_id, ai_metrics=cache_blob)
            session.execute(stmt.on_conflict_do_update(
                index_elements=[AIMetricsCache.document_id],
                set_={"ai_metrics": cache_blob, "created_at": datetime.now(timezone.utc)},
            ))
            session.commit()

        # --- 100%: done ---
        summary = {
            "documentId": document_id,
            "filename": filename,
            "totalChunks": stats["totalChunks"],
            "processingTime": stats["processingTime"],
            "metricsSource": source,
            "enhancedConfidence": enhanced.confidence,
        }
        _progress(
            job_id, 100, "Processing complete!",
            status=JobStatus.COMPLETED, result=summary,
        )
        auto_validate_document.delay(document_id)
        logger.info("[%s] Processing complete: %s", job_id, summary)
        return summary

    except Exception as exc:
        logger.exception("[%s] Processing failed for job %s: %s", task_id, job_id, exc)
        with get_sync_session() as session:
            jobs.update_job(
                session, job_id,
                status=JobStatus.FAILED,
                error_message=str(exc)[:1000],
            )
        raise self.retry(exc=exc)


# ---------------------------------------------------------------------------
# Automatic Validation
# ---------------------------------------------------------------------------


@celery_app.task(name="auto_validate_document")
def auto_validate_document(document_id: int) -> int:
    """
    Re-ask the six validation questions and write better values back.

    Returns the number of metric rows updated or created. Failures of a
    single row are logged and skipped.
    """
    with get_sync_session() as session:
        document = session.get(Document, document_id)
        if document is None or not document.content_text:
            logger.info("Document %d not found for auto validation", document_id)
            return 0
        text = document.content_text
        rows = {
            m.metric_type: m.metric_data
            for m in session.execute(
                select(ExtractedMetric).where(ExtractedMetric.document_id == document_id)
            ).scalars()
        }

    updates = _run_async(lambda: find_metric_updates(text, rows))
    if not updates:
        logger.info("No better AI values found for document %d", document_id)
        return 0

    applied = 0
    with get_sync_session() as session:
        for update in updates:
            try:
                row = session.execute(
                    select(ExtractedMetric).where(
                        ExtractedMetric.document_id == document_id,
                        ExtractedMetric.metric_type == update.metric_type,
                    )
                ).scalars().first()
                if row is None:
                    session.add(ExtractedMetric(
                        document_id=document_id,
                        metric_type=update.metric_type,
                        metric_data=apply_metric_update(None, update),
                        confidence_score=update.confidence,
                    ))
                else:
                    row.metric_data = apply_metric_update(row.metric_data, update)
                    row.confidence_score = update.confidence
                    row.extracted_at = datetime.now(timezone.utc)
                session.commit()
                applied += 1
            except Exception:
                session.rollback()
                logger.warning(
                    "Failed to update %s.%s for document %d",
                    update.metric_type, update.key, document_id, exc_info=True,
                )

    logger.info("Auto-updated %d metrics for document %d", applied, document_id)
    return applied


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


@celery_app.task(name="cleanup_old_jobs")
def cleanup_old_jobs(days: int | None = None) -> int:
    with get_sync_session() as session:
        return jobs.cleanup_old_jobs(session, days)
