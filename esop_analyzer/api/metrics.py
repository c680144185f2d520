# =============================================================================
# Metrics API — Stored, Live, Validated and AI Metrics
# =============================================================================
#
# ENDPOINTS (mounted under /api/metrics):
#   GET  /live/{id}       — six dashboard questions answered now
#   GET  /summary/{id}    — which metric types were extracted
#   POST /validate/{id}   — check user-supplied values against the document
#   GET  /ai/{id}         — focused AI metrics, cached for one hour
#   GET  /enhanced/{id}   — cross-validated metrics from processing
#   GET  /{id}            — metrics stored by the processing pipeline
#
# Literal prefixes are registered before /{id} so they are never captured
# by the catch-all route.
#
# DESIGN DECISION: One ai_metrics_cache row per document holds both the
# processing result (enhancedValidation, comprehensiveMetrics,
# processingStats) and the focused AI metrics (focusedMetrics +
# focusedAt). Refreshing one never discards the other.
# =============================================================================

import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from esop_analyzer.api.deps import (
    get_document_or_404,
    get_document_text_or_404,
    get_metric_rows,
    service_error,
)
from esop_analyzer.config import settings
from esop_analyzer.db.engine import get_async_session
from esop_analyzer.db.models import AIMetricsCache, Document, ExtractedMetric
from esop_analyzer.models.requests import ValidateMetricsRequest
from esop_analyzer.models.responses import (
    AIMetricsResponse,
    EnhancedMetricsResponse,
    LiveMetricsResponse,
    MetricsResponse,
    MetricsSummaryResponse,
    MetricsValidationResponse,
    StoredMetric,
)
from esop_analyzer.services.focused_metrics import (
    extract_focused_metrics,
    get_live_metrics,
    validate_metrics,
)
from esop_analyzer.services.rate_limiter import limit_api

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/metrics", tags=["Metrics"], dependencies=[Depends(limit_api)])


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _valuation_date(rows: list[ExtractedMetric]) -> str | None:
    for row in rows:
        if row.metric_type == "valuationDate" and row.metric_data:
            date = row.metric_data.get("date")
            if date:
                return str(date)
    return None


# ---------------------------------------------------------------------------
# GET /live/{id}
# ---------------------------------------------------------------------------


@router.get(
    "/live/{document_id}",
    response_model=LiveMetricsResponse,
    summary="Answer the dashboard metric questions now",
)
async def live_metrics(
    document_id: int,
    session: AsyncSession = Depends(get_async_session),
) -> LiveMetricsResponse:
    document, text = await get_document_text_or_404(session, document_id)
    metrics, errors = await get_live_metrics(text)
    return LiveMetricsResponse(
        document_id=document_id,
        filename=document.filename,
        metrics=metrics,
        extracted_at=_now(),
        errors=errors or None,
    )


# ---------------------------------------------------------------------------
# GET /summary/{id}
# ---------------------------------------------------------------------------


@router.get(
    "/summary/{document_id}",
    response_model=MetricsSummaryResponse,
    summary="Extracted metric types for a document",
)
async def metrics_summary(
    document_id: int,
    session: AsyncSession = Depends(get_async_session),
) -> MetricsSummaryResponse:
    document = await get_document_or_404(session, document_id)
    result = await session.execute(
        select(ExtractedMetric.metric_type)
        .where(ExtractedMetric.document_id == document_id)
        .order_by(ExtractedMetric.id)
    )
    metric_types = list(result.scalars().all())
    return MetricsSummaryResponse(
        document_id=document_id,
        filename=document.filename,
        upload_date=document.upload_date,
        metrics_extracted=len(metric_types),
        available_metrics=metric_types,
    )


# ---------------------------------------------------------------------------
# POST /validate/{id}
# ---------------------------------------------------------------------------


@router.post(
    "/validate/{document_id}",
    response_model=MetricsValidationResponse,
    summary="Validate metric values against the document",
)
async def validate_document_metrics(
    document_id: int,
    request: ValidateMetricsRequest,
    session: AsyncSession = Depends(get_async_session),
) -> MetricsValidationResponse:
    _, text = await get_document_text_or_404(session, document_id)
    results = await validate_metrics(text, request.metrics)
    return MetricsValidationResponse(
        document_id=document_id,
        validation_results=results,
        timestamp=_now(),
    )


# ---------------------------------------------------------------------------
# GET /ai/{id}
# ---------------------------------------------------------------------------


def _fresh_focused(cache: AIMetricsCache | None) -> dict | None:
    """Cached focused metrics when younger than the cache TTL."""
    if cache is None or not cache.ai_metrics:
        return None
    focused = cache.ai_metrics.get("focusedMetrics")
    focused_at = cache.ai_metrics.get("focusedAt")
    if not focused or not focused_at:
        return None
    age = _now() - datetime.fromisoformat(focused_at)
    if age > timedelta(seconds=settings.ai_metrics_cache_ttl_seconds):
        return None
    return focused


@router.get(
    "/ai/{document_id}",
    response_model=AIMetricsResponse,
    summary="Focused AI metrics (cached for one hour)",
)
async def ai_metrics(
    document_id: int,
    session: AsyncSession = Depends(get_async_session),
) -> AIMetricsResponse:
    document, text = await get_document_text_or_404(session, document_id)

    cache = await session.scalar(
        select(AIMetricsCache).where(AIMetricsCache.document_id == document_id)
    )
    focused = _fresh_focused(cache)

    if focused is not None:
        logger.info("Using cached AI metrics for document %d", document_id)
    else:
        logger.info("Generating focused AI metrics for document %d", document_id)
        try:
            focused = await extract_focused_metrics(text)
        except Exception as exc:
            raise service_error(exc, "AI metrics extraction") from exc

        blob = dict(cache.ai_metrics) if cache is not None and cache.ai_metrics else {}
        blob["focusedMetrics"] = focused
        blob["focusedAt"] = _now().isoformat()
        stmt = insert(AIMetricsCache).values(document_id=document_id, ai_metrics=blob)
        await session.execute(stmt.on_conflict_do_update(
            index_elements=[AIMetricsCache.document_id],
            set_={"ai_metrics": blob, "created_at": func.now()},
        ))

    rows = await get_metric_rows(session, document_id)
    return AIMetricsResponse(
        document_id=document_id,
        filename=document.filename,
        upload_date=document.upload_date,
        valuation_date=_valuation_date(rows),
        metrics=focused,
        timestamp=_now(),
    )


# ---------------------------------------------------------------------------
# GET /enhanced/{id}
# ---------------------------------------------------------------------------


@router.get(
    "/enhanced/{document_id}",
    response_model=EnhancedMetricsResponse,
    summary="Cross-validated metrics from processing",
)
async def enhanced_metrics(
    document_id: int,
    session: AsyncSession = Depends(get_async_session),
) -> EnhancedMetricsResponse:
    document = await get_document_or_404(session, document_id)
    cache = await session.scalar(
        select(AIMetricsCache).where(AIMetricsCache.document_id == document_id)
    )
    blob = cache.ai_metrics if cache is not None else None
    if not blob or "enhancedValidation" not in blob:
        raise HTTPException(
            status_code=404,
            detail="Enhanced metrics not found. Document may still be processing.",
        )

    return EnhancedMetricsResponse(
        document_id=document_id,
        filename=document.filename,
        processed_at=document.processed_at,
        enhanced_metrics=blob["enhancedValidation"],
        comprehensive_metrics=blob.get("comprehensiveMetrics"),
        processing_stats=blob.get("processingStats"),
        generated_at=cache.created_at,
    )


# ---------------------------------------------------------------------------
# GET /{id}
# ---------------------------------------------------------------------------


@router.get(
    "/{document_id}",
    response_model=MetricsResponse,
    summary="Metrics stored for a document",
)
async def stored_metrics(
    document_id: int,
    session: AsyncSession = Depends(get_async_session),
) -> MetricsResponse:
    document: Document = await get_document_or_404(session, document_id)
    rows = await get_metric_rows(session, document_id)

    return MetricsResponse(
        document_id=document_id,
        filename=document.filename,
        upload_date=document.upload_date,
        valuation_date=_valuation_date(rows),
        metrics={
            row.metric_type: StoredMetric(
                data=row.metric_data,
                confidence=row.confidence_score,
                extracted_at=row.extracted_at,
            )
            for row in rows
        },
    )
