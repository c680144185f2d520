# =============================================================================
# Document API — Upload, Job Polling, Document Listing
# =============================================================================
#
# ENDPOINTS (mounted under /api/pdf):
#   POST /upload          — validate + store PDF, queue processing (202)
#   GET  /job/{job_id}    — poll processing progress
#   GET  /documents       — list processed documents
#   GET  /documents/{id}  — one document with chunk/metric counts
#
# DESIGN DECISION: 202 Accepted for uploads. Parsing, embedding and the
# metric passes take minutes; the client polls the job until it reports
# completed (with the documentId) or failed (with the errorMessage).
# =============================================================================

import logging
from pathlib import Path

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from esop_analyzer.api.deps import get_document_or_404
from esop_analyzer.config import settings
from esop_analyzer.db.engine import get_async_session
from esop_analyzer.db.models import Document, DocumentChunk, ExtractedMetric
from esop_analyzer.models.responses import (
    DocumentDetailResponse,
    DocumentListResponse,
    DocumentSummary,
    JobStatusResponse,
    UploadResponse,
)
from esop_analyzer.services import jobs
from esop_analyzer.services.file_validation import cleanup_file, secure_filename, validate_pdf
from esop_analyzer.services.rate_limiter import client_ip, limit_upload
from esop_analyzer.workers.tasks import process_document

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pdf", tags=["Documents"])


# ---------------------------------------------------------------------------
# POST /upload — Upload a valuation report
# ---------------------------------------------------------------------------


@router.post(
    "/upload",
    response_model=UploadResponse,
    status_code=202,
    summary="Upload an ESOP valuation report",
    description=(
        "Upload a PDF to be parsed, embedded and analysed. Returns a job id "
        "immediately; the document is available once the job completes."
    ),
    dependencies=[Depends(limit_upload)],
)
async def upload_pdf(
    request: Request,
    pdf: UploadFile = File(..., description="ESOP valuation report (PDF)"),
    session: AsyncSession = Depends(get_async_session),
) -> UploadResponse:
    if not pdf.filename:
        raise HTTPException(status_code=400, detail="No PDF file uploaded")
    if pdf.content_type != "application/pdf" and not pdf.filename.lower().endswith(".pdf"):
        logger.warning(
            "SECURITY_EVENT event=FILE_MIME_REJECTED ip=%s details=mime=%s",
            client_ip(request), pdf.content_type,
        )
        raise HTTPException(status_code=400, detail="Only PDF files are allowed")

    content = await pdf.read()
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")
    if len(content) > settings.max_file_size:
        raise HTTPException(
            status_code=413,
            detail=f"File too large. Maximum size is {settings.max_file_size // (1024 * 1024)}MB.",
        )

    upload_dir = Path(settings.upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    file_path = upload_dir / secure_filename(pdf.filename)
    file_path.write_bytes(content)

    validation = validate_pdf(str(file_path), client_ip=client_ip(request))
    if not validation.is_valid:
        cleanup_file(str(file_path))
        raise HTTPException(
            status_code=400,
            detail={
                "error": "File validation failed",
                "details": validation.errors,
                "warnings": validation.warnings,
            },
        )

    job = await jobs.create_job(session, filename=pdf.filename, file_path=str(file_path))
    # The worker reads the job row; it must be visible before dispatch
    await session.commit()
    task = process_document.delay(
        job.id, str(file_path), pdf.filename, validation.to_dict(),
    )
    job.celery_task_id = task.id

    logger.info(
        "Queued processing: job=%s task=%s file=%s (%d bytes)",
        job.id, task.id, pdf.filename, len(content),
    )

    return UploadResponse(
        job_id=job.id,
        filename=pdf.filename,
        status="processing",
        message="PDF upload received, processing in background",
        warnings=validation.warnings,
    )


# ---------------------------------------------------------------------------
# GET /job/{job_id} — Poll processing status
# ---------------------------------------------------------------------------


@router.get(
    "/job/{job_id}",
    response_model=JobStatusResponse,
    summary="Check processing job status",
)
async def get_job(
    job_id: str,
    session: AsyncSession = Depends(get_async_session),
) -> JobStatusResponse:
    status = await jobs.get_job_status(session, job_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobStatusResponse.model_validate(status)


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


@router.get(
    "/documents",
    response_model=DocumentListResponse,
    summary="List processed documents",
)
async def list_documents(
    session: AsyncSession = Depends(get_async_session),
) -> DocumentListResponse:
    result = await session.execute(
        select(Document).order_by(Document.upload_date.desc())
    )
    return DocumentListResponse(
        documents=[DocumentSummary.model_validate(d) for d in result.scalars().all()],
    )


@router.get(
    "/documents/{document_id}",
    response_model=DocumentDetailResponse,
    summary="Get a document",
)
async def get_document(
    document_id: int,
    session: AsyncSession = Depends(get_async_session),
) -> DocumentDetailResponse:
    document = await get_document_or_404(session, document_id)

    chunk_count = await session.scalar(
        select(func.count(DocumentChunk.id)).where(DocumentChunk.document_id == document_id)
    )
    metric_count = await session.scalar(
        select(func.count(ExtractedMetric.id)).where(ExtractedMetric.document_id == document_id)
    )

    return DocumentDetailResponse(
        id=document.id,
        filename=document.filename,
        file_size=document.file_size,
        page_count=document.page_count,
        upload_date=document.upload_date,
        processed_at=document.processed_at,
        metadata=document.metadata_,
        chunk_count=chunk_count or 0,
        metrics_extracted=metric_count or 0,
    )
