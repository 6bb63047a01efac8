# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes returned by the processing and batch-session endpoints. All row
# models are built straight from ORM objects (`from_attributes=True`).
#
# DESIGN DECISION: chunk responses never include the embedding vector.
# 1536 floats per chunk are useless to a client polling progress; only
# `has_embedding` is exposed.
# =============================================================================

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.db.models import (
    BatchSessionStatus,
    ChunkStatus,
    ChunkType,
    JobStatus,
    JobType,
)


class HealthResponse(BaseModel):
    """Response for GET /health — confirms the API and database are up."""

    status: str = "ok"
    version: str
    service: str
    database: str = Field(description="'ok' or the connection error")


class JobResponse(BaseModel):
    """A processing job and its unit counters."""

    id: int
    case_id: str | None
    document_id: int | None
    job_type: JobType
    status: JobStatus
    total_units: int
    completed_units: int
    failed_units: int
    progress_percentage: float = Field(description="completed_units / total_units × 100")
    metadata: dict | None = Field(default=None, validation_alias="metadata_")
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    estimated_completion: datetime | None = None

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class ChunkResponse(BaseModel):
    id: int
    document_id: int
    processing_job_id: int | None
    chunk_index: int
    chunk_type: ChunkType
    processing_status: ChunkStatus
    content: str | None = None
    has_embedding: bool = False
    extraction_method: str | None = None
    extraction_confidence: float | None = None
    error_log: dict | None = None
    processing_attempts: int = 0
    metadata: dict | None = Field(default=None, validation_alias="metadata_")
    processed_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    @classmethod
    def from_chunk(cls, chunk) -> "ChunkResponse":
        response = cls.model_validate(chunk)
        response.has_embedding = chunk.embedding is not None
        return response


class ChunkStatsResponse(BaseModel):
    total: int
    pending: int
    processing: int
    completed: int
    failed: int
    skipped: int
    total_characters: int
    average_confidence: float | None
    progress_percentage: float

    model_config = ConfigDict(from_attributes=True)


class JobProgressResponse(BaseModel):
    """Response for GET /processing-jobs/{job_id}."""

    job: JobResponse
    chunks: ChunkStatsResponse
    failed_chunks: list[ChunkResponse] = Field(default_factory=list)


class RetryResponse(BaseModel):
    job_id: int
    reset_chunk_ids: list[int]
    dispatched: int


class CaseStatsResponse(BaseModel):
    """Response for GET /cases/{case_id}/stats."""

    case_id: str
    total_documents: int
    chunked_documents: int
    total_chunks: int
    completed_chunks: int
    failed_chunks: int
    total_characters: int
    average_confidence: float | None
    completion_percentage: float

    model_config = ConfigDict(from_attributes=True)


class ReprocessResponse(BaseModel):
    case_id: str
    job_ids: list[int]
    cancelled_job_ids: list[int]
    deleted_chunks: int


class CleanupResponse(BaseModel):
    """Response for GET/POST /processing-jobs/cleanup."""

    threshold_hours: int
    cutoff: datetime
    dry_run: bool
    mode: str | None = Field(description="None for a dry run")
    jobs: list[JobResponse]
    deleted_chunks: int = 0


class BatchSessionResponse(BaseModel):
    id: int
    case_id: str | None
    status: BatchSessionStatus
    document_ids: list[int]
    batch_size: int
    options: dict | None = None
    total_documents: int
    documents_processed: int
    documents_succeeded: int
    documents_failed: int
    progress_percentage: float
    total_batches: int
    current_batch_number: int
    last_checkpoint: datetime | None = None
    error_message: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    paused_at: datetime | None = None
    completed_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class BatchProgressResponse(BaseModel):
    """Response for GET /batch-sessions/{session_id}."""

    session: BatchSessionResponse
    counts: dict[str, int] = Field(description="Documents per status (pending, processing, completed, failed)")
    remaining: int
    avg_processing_time_ms: float | None = Field(
        default=None, description="Mean wall time of finished documents; null until one finishes"
    )
    documents_per_minute: float = 0.0
    estimated_seconds_remaining: float | None = None


class BatchRetryResponse(BaseModel):
    session_id: int
    reset_document_ids: list[int]


class BatchErrorResponse(BaseModel):
    id: int
    session_id: int
    document_id: int | None
    error_message: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
