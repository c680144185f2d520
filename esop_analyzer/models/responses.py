# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# The shape of data going OUT of the API. Documents are returned without
# their raw text and chunks are never returned with their embeddings.
#
# Metric payloads (metric_data, the AI metrics blob, validation results) are
# free-form JSON produced by the extraction services, so they are typed as
# plain dicts rather than modelled field by field.
# =============================================================================

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    status: str = "OK"
    version: str
    service: str
    timestamp: datetime


# ---------------------------------------------------------------------------
# Documents & Jobs
# ---------------------------------------------------------------------------


class UploadResponse(CamelModel):
    """
    Response for POST /api/pdf/upload.

    Processing has only been queued; poll GET /api/pdf/job/{job_id}.
    """

    job_id: str = Field(description="ID of the processing job to poll")
    filename: str
    status: str = "pending"
    message: str = "File uploaded successfully. Processing started."
    warnings: list[str] = Field(default_factory=list)


class JobStatusResponse(CamelModel):
    id: str
    status: str = Field(description="pending, processing, completed or failed")
    progress: int = 0
    progress_message: str | None = None
    document_id: int | None = None
    result: dict | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None


class DocumentSummary(CamelModel):
    id: int
    filename: str
    file_size: int | None = None
    page_count: int | None = None
    upload_date: datetime
    processed_at: datetime | None = None


class DocumentListResponse(BaseModel):
    documents: list[DocumentSummary]


class DocumentDetailResponse(DocumentSummary):
    metadata: dict | None = None
    chunk_count: int = 0
    metrics_extracted: int = 0


# ---------------------------------------------------------------------------
# Questions
# ---------------------------------------------------------------------------


class Citation(CamelModel):
    chunk_index: int
    distance: float
    preview: str
    page_number: int | None = None
    relevance: float
    section: str
    full_text: str


class AskResponse(CamelModel):
    question: str
    answer: str
    citations: list[Citation] = Field(default_factory=list)
    document_id: int


class AlignmentResult(CamelModel):
    question: str
    answer: str | None = None
    has_metrics: bool = False
    metrics_count: int = 0
    error: str | None = None


class AlignmentSummary(CamelModel):
    total_metrics: int
    successful_validations: int
    total_validations: int


class AlignmentResponse(CamelModel):
    document_id: int
    extracted_metrics: dict | None = None
    validation_results: list[AlignmentResult]
    summary: AlignmentSummary


class QuestionHistoryItem(CamelModel):
    question: str
    answer: str | None = None
    asked_at: datetime


class QuestionHistoryResponse(CamelModel):
    document_id: int
    questions: list[QuestionHistoryItem]


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class StoredMetric(CamelModel):
    data: dict | None = None
    confidence: float | None = None
    extracted_at: datetime | None = None


class MetricsResponse(CamelModel):
    document_id: int
    filename: str
    upload_date: datetime
    valuation_date: str | None = None
    metrics: dict[str, StoredMetric]


class LiveMetricsResponse(CamelModel):
    document_id: int
    filename: str
    type: str = "live"
    metrics: dict[str, dict]
    extracted_at: datetime
    errors: list[dict[str, str]] | None = None


class MetricsSummaryResponse(CamelModel):
    document_id: int
    filename: str
    upload_date: datetime
    metrics_extracted: int
    available_metrics: list[str]


class MetricsValidationResponse(CamelModel):
    document_id: int
    validation_results: dict[str, dict]
    timestamp: datetime


class AIMetricsResponse(CamelModel):
    document_id: int
    filename: str
    upload_date: datetime
    valuation_date: str | None = None
    metrics: dict
    source: str = "ai"
    timestamp: datetime


class EnhancedMetricsResponse(CamelModel):
    document_id: int
    filename: str
    processed_at: datetime | None = None
    enhanced_metrics: dict | None = None
    comprehensive_metrics: dict | None = None
    processing_stats: dict | None = None
    generated_at: datetime
