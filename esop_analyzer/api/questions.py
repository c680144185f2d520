# =============================================================================
# Questions API — RAG Over One Valuation Report
# =============================================================================
#
# ENDPOINTS (mounted under /api/questions):
#   POST /ask                      — answer with page citations
#   GET  /validate/{document_id}   — sample questions vs stored metrics
#   GET  /history/{document_id}    — questions asked about a document
#
# Errors:
#   404 — unknown document, or no chunks to answer from
#   503 — embeddings not configured (missing OpenAI key)
#   502 — embedding call failed
# LLM failures never surface here: answering falls back to the second
# provider and then to a keyword answer over the retrieved context.
# =============================================================================

import logging

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from esop_analyzer.api.deps import get_document_or_404, service_error, set_audit_context
from esop_analyzer.db.engine import get_async_session
from esop_analyzer.db.models import AuditLog
from esop_analyzer.models.requests import AskRequest
from esop_analyzer.models.responses import (
    AlignmentResponse,
    AskResponse,
    QuestionHistoryItem,
    QuestionHistoryResponse,
)
from esop_analyzer.services.qa import ask_document, check_alignment
from esop_analyzer.services.rate_limiter import limit_api

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/questions", tags=["Questions"], dependencies=[Depends(limit_api)])


@router.post(
    "/ask",
    response_model=AskResponse,
    summary="Ask a question about a valuation report",
    description=(
        "Retrieves the most relevant chunks of the document, answers from "
        "them with page references, and returns the chunks as citations."
    ),
)
async def ask(
    request: AskRequest,
    http_request: Request,
    session: AsyncSession = Depends(get_async_session),
) -> AskResponse:
    set_audit_context(http_request, document_id=request.document_id, question=request.question)
    await get_document_or_404(session, request.document_id)

    try:
        result = await ask_document(session, request.document_id, request.question)
    except Exception as exc:
        raise service_error(exc, "Answering the question") from exc

    set_audit_context(http_request, answer=result.answer)
    logger.info(
        "Answered question on document %d with %d citations",
        request.document_id, len(result.citations),
    )

    return AskResponse(
        question=result.question,
        answer=result.answer,
        citations=result.citations,
        document_id=request.document_id,
    )


@router.get(
    "/validate/{document_id}",
    response_model=AlignmentResponse,
    summary="Check QA answers against extracted metrics",
)
async def validate_alignment(
    document_id: int,
    session: AsyncSession = Depends(get_async_session),
) -> AlignmentResponse:
    await get_document_or_404(session, document_id)
    report = await check_alignment(session, document_id)
    return AlignmentResponse.model_validate(report)


@router.get(
    "/history/{document_id}",
    response_model=QuestionHistoryResponse,
    summary="Questions asked about a document",
)
async def question_history(
    document_id: int,
    limit: int = Query(default=50, ge=1, le=200),
    session: AsyncSession = Depends(get_async_session),
) -> QuestionHistoryResponse:
    await get_document_or_404(session, document_id)
    result = await session.execute(
        select(AuditLog)
        .where(
            AuditLog.document_id == document_id,
            AuditLog.question.is_not(None),
            AuditLog.status_code == 200,
        )
        .order_by(AuditLog.created_at.desc())
        .limit(limit)
    )
    return QuestionHistoryResponse(
        document_id=document_id,
        questions=[
            QuestionHistoryItem(question=row.question, answer=row.answer, asked_at=row.created_at)
            for row in result.scalars().all()
        ],
    )
