# =============================================================================
# Shared Route Helpers
# =============================================================================
#
# Document lookups used by several routers, and the mapping from service
# exceptions to HTTP errors:
#   LookupError → 404, ValueError (configuration) → 503, other → 502
# =============================================================================

from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from esop_analyzer.db.models import Document, ExtractedMetric

logger = logging.getLogger(__name__)


async def get_document_or_404(session: AsyncSession, document_id: int) -> Document:
    document = await session.get(Document, document_id)
    if document is None:
        raise HTTPException(status_code=404, detail="Document not found")
    return document


async def get_document_text_or_404(session: AsyncSession, document_id: int) -> tuple[Document, str]:
    """The document and its stored text; 404 when either is missing."""
    document = await get_document_or_404(session, document_id)
    if not document.content_text:
        raise HTTPException(status_code=404, detail="Document has no extracted text")
    return document, document.content_text


async def get_metric_rows(session: AsyncSession, document_id: int) -> list[ExtractedMetric]:
    result = await session.execute(
        select(ExtractedMetric)
        .where(ExtractedMetric.document_id == document_id)
        .order_by(ExtractedMetric.id)
    )
    return list(result.scalars().all())


def set_audit_context(
    request: Request,
    document_id: int | None = None,
    question: str | None = None,
    answer: str | None = None,
) -> None:
    """Attach audit details for AuditLoggingMiddleware to persist."""
    if document_id is not None:
        request.state.audit_document_id = document_id
    if question is not None:
        request.state.audit_question = question
    if answer is not None:
        request.state.audit_answer = answer


def service_error(exc: Exception, action: str) -> HTTPException:
    """HTTP error for a failed service call."""
    if isinstance(exc, LookupError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(
            status_code=503,
            detail=f"Service not configured: {exc}",
        )
    logger.exception("%s failed: %s", action, exc)
    return HTTPException(
        status_code=502,
        detail=f"{action} failed. Please try again later.",
    )
