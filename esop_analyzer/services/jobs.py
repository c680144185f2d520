# =============================================================================
# Processing Jobs — Upload Progress Tracking
# =============================================================================
#
# A job row is created by the upload endpoint (async session) and advanced
# by the Celery worker (sync session). The client polls
# GET /api/pdf/job/{job_id} until the status is completed or failed.
#
#   pending (0) → processing (10 … 90) → completed (100)
#                                      ↘ failed
# =============================================================================

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from esop_analyzer.config import settings
from esop_analyzer.db.models import JobStatus, ProcessingJob

logger = logging.getLogger(__name__)

INITIAL_PROGRESS_MESSAGE = "Job created, starting processing..."


def _now() -> datetime:
    return datetime.now(timezone.utc)


def job_to_status(job: ProcessingJob) -> dict:
    """Client-facing status payload for a job row."""
    return {
        "id": job.id,
        "status": job.status.value if isinstance(job.status, JobStatus) else job.status,
        "progress": job.progress,
        "progressMessage": job.progress_message,
        "documentId": job.document_id,
        "result": job.result,
        "errorMessage": job.error_message,
        "createdAt": job.created_at,
        "completedAt": job.completed_at,
    }


async def create_job(
    session: AsyncSession,
    filename: str,
    file_path: str,
    job_type: str = "pdf_processing",
) -> ProcessingJob:
    """Insert a pending job and return it (id assigned, not yet committed)."""
    job = ProcessingJob(
        id=str(uuid.uuid4()),
        filename=filename,
        file_path=file_path,
        job_type=job_type,
        status=JobStatus.PENDING,
        progress=0,
        progress_message=INITIAL_PROGRESS_MESSAGE,
    )
    session.add(job)
    await session.flush()
    logger.info("Created job %s for %s", job.id, filename)
    return job


async def get_job_status(session: AsyncSession, job_id: str) -> dict | None:
    job = await session.get(ProcessingJob, job_id)
    if job is None:
        return None
    return job_to_status(job)


def update_job(
    session: Session,
    job_id: str,
    *,
    status: JobStatus | None = None,
    progress: int | None = None,
    message: str | None = None,
    document_id: int | None = None,
    result: dict | None = None,
    error_message: str | None = None,
) -> None:
    """
    Apply a progress update from the worker and commit it immediately.

    `completed_at` is stamped when the job reaches completed or failed.
    """
    job = session.get(ProcessingJob, job_id)
    if job is None:
        logger.warning("Job %s not found for update", job_id)
        return

    if status is not None:
        job.status = status
        if status in (JobStatus.COMPLETED, JobStatus.FAILED):
            job.completed_at = _now()
    if progress is not None:
        job.progress = progress
    if message is not None:
        job.progress_message = message
    if document_id is not None:
        job.document_id = document_id
    if result is not None:
        job.result = result
    if error_message is not None:
        job.error_message = error_message

    session.commit()
    logger.debug("Job %s: status=%s progress=%s %s", job_id, job.status, job.progress, message or "")


def cleanup_old_jobs(session: Session, days: int | None = None) -> int:
    """Delete jobs created more than `days` ago. Returns the number removed."""
    days = days or settings.job_retention_days
    cutoff = _now() - timedelta(days=days)
    result = session.execute(
        delete(ProcessingJob).where(ProcessingJob.created_at < cutoff)
    )
    session.commit()
    removed = result.rowcount or 0
    logger.info("Cleaned up %d jobs older than %d days", removed, days)
    return removed
