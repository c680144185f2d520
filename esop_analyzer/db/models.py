# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌────────────────┐      ┌──────────────────────────────┐
# │ documents      │──1:N─▶ document_chunks              │
# │ id, filename   │      │ chunk_text, page_number,      │
# │ content_text   │      │ embedding vector(1536)        │
# │ metadata       │      └──────────────────────────────┘
# │ processed_at   │──1:N─▶ extracted_metrics (metric_type, metric_data,
# │                │          confidence_score)
# │                │──1:1─▶ ai_metrics_cache (ai_metrics JSONB blob)
# │                │──1:N─▶ processing_jobs (status, progress, result)
# └────────────────┘
#   audit_logs: one row per API request (questions included)
#
# DESIGN DECISIONS:
#
# 1. `content_text` keeps the full extracted text on the document row.
#    Metric extraction and validation read the whole document, not chunks.
#
# 2. `extracted_metrics.metric_data` is JSONB: each metric type
#    (enterpriseValue, keyFinancials, capitalStructure, ...) has its own
#    nested shape, so one flexible column beats a column per field.
#
# 3. `ai_metrics_cache.document_id` is UNIQUE: the pipeline and the
#    /metrics/ai endpoint both upsert a single cached blob per document.
#
# 4. Processing job ids are UUID strings, generated before the document
#    exists, so clients can poll from the moment the upload is accepted.
# =============================================================================

import enum
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from esop_analyzer.config import settings


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class for all ORM models."""

    pass


class JobStatus(str, enum.Enum):
    """
    Processing job state.

    State machine:
        PENDING → PROCESSING → COMPLETED
                             → FAILED
    """

    PENDING = "pending"          # Upload accepted, waiting for a worker
    PROCESSING = "processing"    # Parsing / embedding / extracting metrics
    COMPLETED = "completed"      # Document and metrics stored
    FAILED = "failed"            # See error_message


class Document(Base):
    """An uploaded ESOP valuation report and its extracted text."""

    __tablename__ = "documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    file_path: Mapped[str] = mapped_column(String(500), nullable=False)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    page_count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Full extracted text, rendered as "PAGE n:" sections
    content_text: Mapped[str | None] = mapped_column(Text, nullable=True)

    # parseMethod, pageCount, totalChunks, embedding stats, file validation
    metadata_: Mapped[dict | None] = mapped_column(
        "metadata",
        JSONB,
        nullable=True,
        default=dict,
    )

    upload_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # lazy="noload": chunks carry 1536-dim vectors; never load them implicitly
    chunks: Mapped[list["DocumentChunk"]] = relationship(
        "DocumentChunk",
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="noload",
    )
    metrics: Mapped[list["ExtractedMetric"]] = relationship(
        "ExtractedMetric",
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Document(id={self.id}, filename='{self.filename}')>"


class DocumentChunk(Base):
    """
    A page-scoped chunk of document text with its embedding.

    Every chunk belongs to exactly one page so that citations and the
    page-grouped prompt context can name the page precisely.
    """

    __tablename__ = "document_chunks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    document_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )

    chunk_text: Mapped[str] = mapped_column(Text, nullable=False)

    # 0-indexed position within the document
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)

    # 1-indexed page number; null when the source had no page information
    page_number: Mapped[int | None] = mapped_column(Integer, nullable=True)

    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    embedding: Mapped[list[float] | None] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=True,
    )

    # content_type ("text" / "table"), section_title
    metadata_: Mapped[dict | None] = mapped_column(
        "metadata",
        JSONB,
        nullable=True,
        default=dict,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    document: Mapped["Document"] = relationship("Document", back_populates="chunks")

    def __repr__(self) -> str:
        return (
            f"<DocumentChunk(id={self.id}, doc_id={self.document_id}, "
            f"index={self.chunk_index}, page={self.page_number})>"
        )


class ExtractedMetric(Base):
    """
    One metric type extracted from a document.

    metric_type is a section of the metrics structure (enterpriseValue,
    keyFinancials, capitalStructure, valuationDate, ...) or the special
    `comprehensive_metrics` row holding the full heuristic result.
    """

    __tablename__ = "extracted_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    document_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )

    metric_type: Mapped[str] = mapped_column(String(100), nullable=False)
    metric_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    metric_data: Mapped[dict | None] = mapped_column(JSONB, nullable=True, default=dict)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    extracted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    document: Mapped["Document"] = relationship("Document", back_populates="metrics")

    def __repr__(self) -> str:
        return (
            f"<ExtractedMetric(doc_id={self.document_id}, "
            f"type='{self.metric_type}', confidence={self.confidence_score})>"
        )


class AIMetricsCache(Base):
    """Cached AI metric results for a document (one row per document)."""

    __tablename__ = "ai_metrics_cache"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    document_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    ai_metrics: Mapped[dict] = mapped_column(JSONB, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class ProcessingJob(Base):
    """Background processing job for an uploaded PDF."""

    __tablename__ = "processing_jobs"

    # uuid4 string, generated in the upload handler
    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    document_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=True,
    )

    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    file_path: Mapped[str] = mapped_column(String(500), nullable=False)
    job_type: Mapped[str] = mapped_column(
        String(50), nullable=False, default="pdf_processing",
    )

    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus),
        nullable=False,
        default=JobStatus.PENDING,
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Result summary written on completion
    result: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    celery_task_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return (
            f"<ProcessingJob(id='{self.id}', status={self.status}, "
            f"progress={self.progress})>"
        )


class AuditLog(Base):
    """
    Audit trail of API requests.

    Question endpoints also record the question and the answer, which
    backs the per-document question history.
    """

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    endpoint: Mapped[str] = mapped_column(String(200), nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    path: Mapped[str] = mapped_column(String(500), nullable=False)

    document_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    question: Mapped[str | None] = mapped_column(Text, nullable=True)
    answer: Mapped[str | None] = mapped_column(Text, nullable=True)

    # IPv6-safe: max 45 chars
    client_ip: Mapped[str | None] = mapped_column(String(45), nullable=True)

    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


# =============================================================================
# Database Indexes
# =============================================================================
#
# HNSW with `vector_cosine_ops` serves the per-document cosine-distance
# ordering used by retrieval. The document_id B-tree indexes keep the
# per-document filters cheap for every table.
# =============================================================================

chunk_embedding_idx = Index(
    "idx_document_chunks_embedding_hnsw",
    DocumentChunk.embedding,
    postgresql_using="hnsw",
    postgresql_with={"m": 16, "ef_construction": 64},
    postgresql_ops={"embedding": "vector_cosine_ops"},
)

chunk_document_idx = Index(
    "idx_document_chunks_document_id",
    DocumentChunk.document_id,
)

metric_document_idx = Index(
    "idx_extracted_metrics_document_id",
    ExtractedMetric.document_id,
)

job_created_idx = Index(
    "idx_processing_jobs_created_at",
    ProcessingJob.created_at,
)

audit_log_document_idx = Index(
    "idx_audit_log_document_created",
    AuditLog.document_id,
    AuditLog.created_at,
)
