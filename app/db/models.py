# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# Schema for the case file processing pipeline.
#
# SCHEMA OVERVIEW:
#
# ┌────────────────┐      ┌───────────────────┐      ┌──────────────────────┐
# │ case_documents │─1:N─▶│ processing_jobs   │─1:N─▶│ document_chunks      │
# ├────────────────┤      ├───────────────────┤      ├──────────────────────┤
# │ id (PK)        │      │ id (PK)           │      │ id (PK)              │
# │ case_id        │      │ document_id (FK)  │      │ document_id (FK)     │
# │ filename       │      │ job_type, status  │      │ processing_job_id(FK)│
# │ storage_path   │      │ total_units       │      │ chunk_index          │
# │ extracted_text │      │ completed_units   │      │ processing_status    │
# │ status         │      │ failed_units      │      │ content, embedding   │
# └────────────────┘      │ metadata_ (json)  │      │ metadata_ (json)     │
#                         └───────────────────┘      └──────────────────────┘
#
# ┌────────────────┐      ┌─────────────────────────┐
# │ batch_sessions │─1:N─▶│ batch_document_statuses │  (one row per document)
# │                │─1:N─▶│ batch_processing_errors │  (append-only error log)
# └────────────────┘      └─────────────────────────┘
#
# DESIGN DECISIONS:
#
# 1. Every `status` column is a closed string enum persisted by value.
#    Legal moves between values live in app/services/transitions.py; the
#    row stores only apply moves listed there.
#
# 2. Portable column types. JSON columns are JSONB on PostgreSQL and plain
#    JSON elsewhere; the embedding column is a pgvector `Vector(dim)` on
#    PostgreSQL and JSON elsewhere. The test suite runs on SQLite.
#
# 3. Timestamps are written by Python (`utcnow`) with a server default as
#    fallback, so age comparisons made by the reaper use one clock.
#
# 4. `metadata_` (trailing underscore) avoids the collision with
#    SQLAlchemy's declarative `.metadata` attribute.
# =============================================================================

import enum
from datetime import UTC, datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.config import settings


def utcnow() -> datetime:
    return datetime.now(UTC)


# none_as_null: Python None is stored as SQL NULL, not the JSON literal null.
JsonType = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")
EmbeddingType = JSON(none_as_null=True).with_variant(Vector(settings.embedding_dimensions), "postgresql")


def _enum_column(enum_cls: type[enum.Enum]) -> Enum:
    # Persist `.value` ("sliding-window"), not the member name.
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class for every pipeline table."""

    pass


# =============================================================================
# Status Enumerations
# =============================================================================


class DocumentStatus(str, enum.Enum):
    """Extraction state of a whole case document."""

    PENDING = "pending"          # Uploaded, not yet chunked/extracted
    PROCESSING = "processing"    # A chunking job or batch session is working on it
    COMPLETED = "completed"      # extracted_text holds the aggregated content
    FAILED = "failed"            # See error_message


class JobType(str, enum.Enum):
    DOCUMENT_CHUNK = "document-chunk"
    AI_ANALYSIS = "ai-analysis"
    EMBEDDING_GENERATION = "embedding-generation"


class JobStatus(str, enum.Enum):
    """
    Lifecycle of a processing job.

    State machine:
        PENDING → RUNNING → COMPLETED
                          → FAILED
                          → CANCELLED
    (PENDING may also go straight to FAILED or CANCELLED.)
    """

    PENDING = "pending"          # Recorded, waiting for its first unit to start
    RUNNING = "running"          # At least one unit has started
    COMPLETED = "completed"      # All units terminal, failures within tolerance
    FAILED = "failed"            # Structural error or failures over tolerance
    CANCELLED = "cancelled"      # Explicitly cancelled; counters frozen


class ChunkStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"          # Left unprocessed because the job was cancelled


class ChunkType(str, enum.Enum):
    PAGE = "page"
    SECTION = "section"
    SLIDING_WINDOW = "sliding-window"


class BatchSessionStatus(str, enum.Enum):
    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class BatchDocumentState(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# =============================================================================
# Case Documents
# =============================================================================


class Document(Base):
    """
    A file belonging to a case.

    The pipeline reads `storage_path` through the extraction contract and
    writes the aggregated text back once every chunk is processed.
    """

    __tablename__ = "case_documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Owning case (external entity; only used for grouping)
    case_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Original filename (e.g., "deposition_smith.pdf")
    filename: Mapped[str] = mapped_column(String(500), nullable=False)

    # Storage locator, relative to settings.storage_dir
    storage_path: Mapped[str] = mapped_column(String(1000), nullable=False)

    # File size in bytes; drives the chunking strategy
    file_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    page_count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    status: Mapped[DocumentStatus] = mapped_column(
        _enum_column(DocumentStatus),
        nullable=False,
        default=DocumentStatus.PENDING,
    )

    # Aggregated content, written when a chunking job completes or when a
    # batch session extracts the document
    extracted_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    extraction_method: Mapped[str | None] = mapped_column(String(64), nullable=True)
    extraction_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    metadata_: Mapped[dict | None] = mapped_column(JsonType, nullable=True, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    @property
    def extension(self) -> str:
        dot = self.filename.rfind(".")
        return self.filename[dot:].lower() if dot != -1 else ""

    def __repr__(self) -> str:
        return f"<Document(id={self.id}, case={self.case_id!r}, filename='{self.filename}')>"


# =============================================================================
# Processing Jobs
# =============================================================================


class ProcessingJob(Base):
    """
    A tracked unit of asynchronous work with aggregate progress counters.

    Invariant: completed_units + failed_units <= total_units. Counters are
    only changed with SQL-side increments (see app/db/job_store.py) and are
    frozen once the job reaches a terminal status.
    """

    __tablename__ = "processing_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    case_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    # Nullable so jobs survive deletion of their document
    document_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("case_documents.id", ondelete="SET NULL"),
        nullable=True,
    )

    job_type: Mapped[JobType] = mapped_column(
        _enum_column(JobType), nullable=False, default=JobType.DOCUMENT_CHUNK
    )
    status: Mapped[JobStatus] = mapped_column(
        _enum_column(JobStatus), nullable=False, default=JobStatus.PENDING
    )

    total_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Free-form: chunking_strategy, failure_tolerance, generate_embedding, error
    metadata_: Mapped[dict | None] = mapped_column(JsonType, nullable=True, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    estimated_completion: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    @property
    def progress_percentage(self) -> float:
        if not self.total_units:
            return 0.0
        return round(self.completed_units / self.total_units * 100, 2)

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

    def __repr__(self) -> str:
        return (
            f"<ProcessingJob(id={self.id}, status={self.status}, "
            f"{self.completed_units}+{self.failed_units}/{self.total_units})>"
        )


# =============================================================================
# Document Chunks
# =============================================================================


class DocumentChunk(Base):
    """
    A bounded slice of a document's content; the unit of extraction work.

    `chunk_index` is zero-based and contiguous per document. Chunks are
    processed out of order; readers must sort by `chunk_index`.
    """

    __tablename__ = "document_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_chunk_document_index"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    document_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("case_documents.id", ondelete="CASCADE"),
        nullable=False,
    )

    # No ON DELETE cascade: the reaper deletes chunks before the job row
    processing_job_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("processing_jobs.id"),
        nullable=True,
    )

    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)

    chunk_type: Mapped[ChunkType] = mapped_column(
        _enum_column(ChunkType), nullable=False, default=ChunkType.PAGE
    )

    processing_status: Mapped[ChunkStatus] = mapped_column(
        _enum_column(ChunkStatus), nullable=False, default=ChunkStatus.PENDING
    )

    content: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Null until the chunk is embedded
    embedding: Mapped[list[float] | None] = mapped_column(EmbeddingType, nullable=True)

    extraction_method: Mapped[str | None] = mapped_column(String(64), nullable=True)
    extraction_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Structured error record {code, message, details, timestamp} of the last failure
    error_log: Mapped[dict | None] = mapped_column(JsonType, nullable=True)

    processing_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # pageNumber/totalPages, startChar/endChar, sectionTitle, fileName, needsReview
    metadata_: Mapped[dict | None] = mapped_column(JsonType, nullable=True, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<DocumentChunk(id={self.id}, doc_id={self.document_id}, "
            f"index={self.chunk_index}, status={self.processing_status})>"
        )


# =============================================================================
# Batch Sessions
# =============================================================================


class BatchSession(Base):
    """
    Many documents processed together with checkpoint/resume semantics.

    Invariant at every checkpoint:
        documents_processed = documents_succeeded + documents_failed
    """

    __tablename__ = "batch_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    case_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    status: Mapped[BatchSessionStatus] = mapped_column(
        _enum_column(BatchSessionStatus), nullable=False, default=BatchSessionStatus.CREATED
    )

    # Ordered, de-duplicated list of document ids
    document_ids: Mapped[list] = mapped_column(JsonType, nullable=False, default=list)

    batch_size: Mapped[int] = mapped_column(Integer, nullable=False, default=10)

    # Feature flags: extract_entities, parse_statements, ...
    options: Mapped[dict | None] = mapped_column(JsonType, nullable=True, default=dict)

    total_documents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    documents_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    documents_succeeded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    documents_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    total_batches: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_batch_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Last durably flushed aggregate state
    last_checkpoint: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    checkpoint_data: Mapped[dict | None] = mapped_column(JsonType, nullable=True)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paused_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<BatchSession(id={self.id}, status={self.status}, "
            f"{self.documents_processed}/{self.total_documents})>"
        )


class BatchDocumentStatus(Base):
    """Per-document, per-session status; read before processing to support resume."""

    __tablename__ = "batch_document_statuses"
    __table_args__ = (
        UniqueConstraint("session_id", "document_id", name="uq_batch_doc_session_document"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("batch_sessions.id", ondelete="CASCADE"), nullable=False
    )
    document_id: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[BatchDocumentState] = mapped_column(
        _enum_column(BatchDocumentState), nullable=False, default=BatchDocumentState.PENDING
    )

    # Snapshot of the last successful run: {extractedChars, pageCount, ...}
    result: Mapped[dict | None] = mapped_column(JsonType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )


class BatchProcessingError(Base):
    """Append-only error log scoped to a batch session."""

    __tablename__ = "batch_processing_errors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("batch_sessions.id", ondelete="CASCADE"), nullable=False
    )
    document_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    error_stack: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )


# =============================================================================
# Database Indexes
# =============================================================================
# The reaper filters jobs by (status, created_at); chunk listing and the
# processor filter chunks by (processing_job_id, processing_status).
# =============================================================================

job_status_created_idx = Index(
    "idx_processing_job_status_created",
    ProcessingJob.status,
    ProcessingJob.created_at,
)

chunk_job_status_idx = Index(
    "idx_document_chunk_job_status",
    DocumentChunk.processing_job_id,
    DocumentChunk.processing_status,
)

batch_doc_session_status_idx = Index(
    "idx_batch_document_session_status",
    BatchDocumentStatus.session_id,
    BatchDocumentStatus.status,
)
