# =============================================================================
# Job Orchestrator — Processing Job Lifecycle
# =============================================================================
#
# Owns the ProcessingJob state machine for document chunking:
#
#   request_chunking ──▶ [pending] ──start_job──▶ chunks created, units queued
#                          │
#            first chunk claimed (chunk processor)
#                          ▼
#                       [running] ──every chunk terminal──▶ finalize_if_done
#                          │                                  ├─▶ [completed]
#                          │                                  └─▶ [failed]
#                          └── cancel_job ──▶ [cancelled]
#
# COMMANDS (trigger boundary; may raise app.pipeline.errors.*):
#   request_chunking, retry_failed_chunks, cancel_job, reprocess_case,
#   request_embedding_backfill
#
# HANDLERS (dispatch targets; never raise across the job boundary except
# for storage errors, which the worker retries):
#   start_job, handle_chunk, generate_missing_embeddings
#
# FAILURE TOLERANCE:
# A finished job is `completed` when failed_units / total_units is at or
# below its tolerance, otherwise `failed`. Tolerance comes from
# metadata["failure_tolerance"] (set per request) or
# settings.job_failure_tolerance (default 0.0: any failed chunk fails the
# job, leaving it retryable through retry_failed_chunks).
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from app.config import Settings
from app.db import chunk_store, job_store
from app.db.chunk_store import CaseChunkStats, ChunkStats
from app.db.models import (
    ChunkStatus,
    ChunkType,
    Document,
    DocumentChunk,
    DocumentStatus,
    JobStatus,
    JobType,
    ProcessingJob,
    utcnow,
)
from app.pipeline.chunk_processor import ChunkProcessingResult, ChunkProcessor
from app.pipeline.errors import DocumentNotFoundError, InvalidTransitionError, JobNotFoundError
from app.services.chunking import (
    ChunkingStrategy,
    estimate_processing_seconds,
    plan_chunks,
    select_strategy,
)
from app.services.dispatch import Dispatcher
from app.services.extractor import Extractor
from app.services.transitions import JOB_RETRY_TRANSITIONS, JOB_TRANSITIONS, ensure_transition

logger = logging.getLogger(__name__)


@dataclass
class JobProgress:
    job: ProcessingJob
    stats: ChunkStats
    failed_chunks: list[DocumentChunk] = field(default_factory=list)


@dataclass
class RetryResult:
    job_id: int
    reset_chunk_ids: list[int]
    dispatched: int


@dataclass
class ReprocessResult:
    case_id: str
    job_ids: list[int]
    cancelled_job_ids: list[int]
    deleted_chunks: int


class JobOrchestrator:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        dispatcher: Dispatcher,
        processor: ChunkProcessor,
        extractor: Extractor,
        config: Settings,
        embed_many: Callable[[list[str]], list[list[float]]] | None = None,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.processor = processor
        self.extractor = extractor
        self.config = config
        self.embed_many = embed_many

    # =======================================================================
    # Commands
    # =======================================================================

    def request_chunking(
        self,
        document_id: int,
        *,
        strategy: ChunkingStrategy | None = None,
        generate_embedding: bool = True,
        failure_tolerance: float | None = None,
    ) -> ProcessingJob:
        """
        Durably record a pending chunking job and dispatch its start.

        Idempotent per document: if a pending/running chunking job already
        exists it is returned and nothing new is dispatched.
        """
        metadata: dict = {"generate_embedding": generate_embedding}
        if failure_tolerance is not None:
            if not 0.0 <= failure_tolerance <= 1.0:
                raise ValueError("failure_tolerance must be between 0 and 1")
            metadata["failure_tolerance"] = failure_tolerance
        if strategy is not None:
            metadata["chunking_strategy"] = strategy.as_metadata()

        with self.session_factory.begin() as session:
            document = session.get(Document, document_id)
            if document is None:
                raise DocumentNotFoundError(document_id)

            existing = job_store.find_active_job(session, document_id)
            if existing is not None:
                logger.info(
                    "[job=%s] Chunking already active for document %s", existing.id, document_id
                )
                return existing

            job = job_store.create_job(
                session,
                document_id=document_id,
                case_id=document.case_id,
                job_type=JobType.DOCUMENT_CHUNK,
                metadata=metadata,
            )
            document.status = DocumentStatus.PROCESSING

        logger.info("[job=%s] Chunking requested for document %s", job.id, document_id)
        self._dispatch_quietly(job.id, lambda: self.dispatcher.dispatch_job(job.id))
        return job

    def retry_failed_chunks(self, job_id: int) -> RetryResult:
        """
        Reset exactly the job's `failed` chunks to `pending`, take them off
        `failed_units`, reopen the job and dispatch one unit per reset chunk.
        """
        with self.session_factory.begin() as session:
            job = job_store.get_job(session, job_id, for_update=True)
            if job is None:
                raise JobNotFoundError(job_id)

            reset_ids = chunk_store.reset_failed_chunks(session, job_id)
            if not reset_ids:
                logger.info("[job=%s] Retry requested but no failed chunks", job_id)
                return RetryResult(job_id, [], 0)

            ensure_transition(JOB_RETRY_TRANSITIONS, job.status, JobStatus.RUNNING, "job")
            if not job_store.reopen_for_retry(session, job_id, len(reset_ids)):
                raise InvalidTransitionError("job", job.status.value, JobStatus.RUNNING.value)

            generate_embedding = bool((job.metadata_ or {}).get("generate_embedding", True))

        logger.info("[job=%s] Retrying %d failed chunks", job_id, len(reset_ids))
        dispatched = self._dispatch_quietly(
            job_id,
            lambda: self.dispatcher.dispatch_chunks(reset_ids, generate_embedding=generate_embedding),
        )
        return RetryResult(job_id, reset_ids, dispatched or 0)

    def cancel_job(self, job_id: int) -> ProcessingJob:
        """
        `pending|running → cancelled`. Remaining pending chunks become
        `skipped`; chunks already in flight finish but no longer count.
        """
        with self.session_factory.begin() as session:
            job = job_store.get_job(session, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            ensure_transition(JOB_TRANSITIONS, job.status, JobStatus.CANCELLED, "job")
            if not job_store.transition_job(session, job_id, JobStatus.CANCELLED):
                raise InvalidTransitionError("job", job.status.value, JobStatus.CANCELLED.value)
            skipped = chunk_store.skip_pending_chunks(session, job_id)
            self._set_document_status(session, job.document_id, DocumentStatus.PENDING)

        logger.info("[job=%s] Cancelled (%d pending chunks skipped)", job_id, skipped)
        return self.get_job(job_id)

    def reprocess_case(self, case_id: str, *, generate_embedding: bool = True) -> ReprocessResult:
        """
        Re-chunk every document of a case from scratch: cancel active jobs,
        delete the documents' chunks, clear extracted text, request chunking.
        """
        cancelled: list[int] = []
        with self.session_factory.begin() as session:
            documents = list(
                session.scalars(
                    select(Document).where(Document.case_id == case_id).order_by(Document.id)
                )
            )
            document_ids = [doc.id for doc in documents]

            for job in job_store.list_jobs(
                session, case_id=case_id, statuses=job_store.ACTIVE_JOB_STATUSES
            ):
                if job_store.transition_job(session, job.id, JobStatus.CANCELLED):
                    chunk_store.skip_pending_chunks(session, job.id)
                    cancelled.append(job.id)

            deleted = chunk_store.delete_chunks_for_documents(session, document_ids)
            if document_ids:
                session.execute(
                    update(Document)
                    .where(Document.id.in_(document_ids))
                    .values(
                        extracted_text=None,
                        extraction_method=None,
                        extraction_confidence=None,
                        error_message=None,
                        status=DocumentStatus.PENDING,
                    )
                    .execution_options(synchronize_session=False)
                )

        logger.info(
            "Reprocessing case %s: %d documents, %d chunks deleted, %d jobs cancelled",
            case_id,
            len(document_ids),
            deleted,
            len(cancelled),
        )
        job_ids = [
            self.request_chunking(doc_id, generate_embedding=generate_embedding).id
            for doc_id in document_ids
        ]
        return ReprocessResult(case_id, job_ids, cancelled, deleted)

    def request_embedding_backfill(self, job_id: int | None = None) -> bool:
        """Queue an embedding backfill. False if the dispatch did not go out."""
        if job_id is not None:
            self.get_job(job_id)
        try:
            self.dispatcher.dispatch_embedding_backfill(job_id)
        except Exception:
            logger.exception("[job=%s] Embedding backfill dispatch failed", job_id)
            return False
        return True

    # =======================================================================
    # Dispatch handlers
    # =======================================================================

    def start_job(self, job_id: int) -> ProcessingJob | None:
        """
        Create the job's chunks and dispatch one unit per pending chunk.

        Safe to re-deliver: a job that is no longer pending is left alone,
        and a pending job whose chunks already exist is only re-dispatched.
        """
        with self.session_factory.begin() as session:
            job = job_store.get_job(session, job_id, for_update=True)
            if job is None:
                logger.warning("[job=%s] start_job: job not found", job_id)
                return None
            if job.status != JobStatus.PENDING:
                logger.info("[job=%s] start_job: job is %s, nothing to do", job_id, job.status.value)
                return job

            if chunk_store.count_chunks(session, job_id):
                pending_ids = chunk_store.chunk_ids(session, job_id)
                generate_embedding = bool((job.metadata_ or {}).get("generate_embedding", True))
                existing = True
            else:
                existing = False

        if existing:
            logger.info("[job=%s] start_job: re-dispatching %d pending chunks", job_id, len(pending_ids))
            self.dispatcher.dispatch_chunks(pending_ids, generate_embedding=generate_embedding)
            return job

        return self._create_chunks_and_dispatch(job_id)

    def handle_chunk(self, chunk_id: int, *, generate_embedding: bool = True) -> ChunkProcessingResult:
        result = self.processor.process(chunk_id, generate_embedding=generate_embedding)
        if result.applied and result.job_id is not None:
            self.finalize_if_done(result.job_id)
        return result

    def finalize_if_done(self, job_id: int) -> JobStatus | None:
        """
        Finalize a running job once completed + failed == total.
        Returns the new status for the single caller that finalized it.
        """
        with self.session_factory.begin() as session:
            job = job_store.get_job(session, job_id)
            if job is None or job.status != JobStatus.RUNNING:
                return None
            if job.total_units == 0 or job.completed_units + job.failed_units < job.total_units:
                return None

            tolerance = self._tolerance(job)
            failed_ratio = job.failed_units / job.total_units
            target = JobStatus.COMPLETED if failed_ratio <= tolerance else JobStatus.FAILED

            if not job_store.finalize_job(session, job_id, target):
                return None

            if target == JobStatus.FAILED:
                job_store.merge_metadata(
                    job,
                    error=(
                        f"{job.failed_units} of {job.total_units} chunks failed "
                        f"(tolerance {tolerance:.0%})"
                    ),
                )
            self._aggregate_document(session, job, succeeded=target == JobStatus.COMPLETED)

        logger.info(
            "[job=%s] Finalized as %s (%d completed, %d failed of %d)",
            job_id,
            target.value,
            job.completed_units,
            job.failed_units,
            job.total_units,
        )
        return target

    def generate_missing_embeddings(self, job_id: int | None = None, *, limit: int = 500) -> dict:
        """Backfill embeddings for completed chunks that have none."""
        if self.embed_many is None:
            raise RuntimeError("No embedding function configured")

        with self.session_factory.begin() as session:
            chunks = chunk_store.chunks_missing_embedding(session, job_id=job_id, limit=limit)
            pending = [(chunk.id, chunk.content) for chunk in chunks]

        if not pending:
            return {"processed": 0, "failed": 0}

        try:
            vectors = self.embed_many([content for _, content in pending])
        except Exception:
            logger.exception("[job=%s] Embedding backfill failed for %d chunks", job_id, len(pending))
            return {"processed": 0, "failed": len(pending)}

        processed = 0
        with self.session_factory.begin() as session:
            for (chunk_id, _), vector in zip(pending, vectors, strict=True):
                if chunk_store.set_embedding(session, chunk_id, vector):
                    processed += 1

        logger.info("[job=%s] Embedding backfill: %d chunks embedded", job_id, processed)
        return {"processed": processed, "failed": len(pending) - processed}

    # =======================================================================
    # Queries
    # =======================================================================

    def get_job(self, job_id: int) -> ProcessingJob:
        with self.session_factory.begin() as session:
            job = job_store.get_job(session, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return job

    def get_progress(self, job_id: int) -> JobProgress:
        with self.session_factory.begin() as session:
            job = job_store.get_job(session, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            stats = chunk_store.chunk_stats(session, job_id)
            failed = chunk_store.list_chunks(session, job_id=job_id, statuses=[ChunkStatus.FAILED])
            return JobProgress(job=job, stats=stats, failed_chunks=failed)

    def list_jobs(self, case_id: str, *, active_only: bool = False) -> list[ProcessingJob]:
        statuses = job_store.ACTIVE_JOB_STATUSES if active_only else None
        with self.session_factory.begin() as session:
            return job_store.list_jobs(session, case_id=case_id, statuses=statuses)

    def get_case_stats(self, case_id: str) -> CaseChunkStats:
        with self.session_factory.begin() as session:
            return chunk_store.case_chunk_stats(session, case_id)

    def list_chunks(self, job_id: int, *, status: ChunkStatus | None = None) -> list[DocumentChunk]:
        with self.session_factory.begin() as session:
            if job_store.get_job(session, job_id) is None:
                raise JobNotFoundError(job_id)
            return chunk_store.list_chunks(
                session, job_id=job_id, statuses=[status] if status else None
            )

    # =======================================================================
    # Internals
    # =======================================================================

    def _create_chunks_and_dispatch(self, job_id: int) -> ProcessingJob | None:
        with self.session_factory.begin() as session:
            job = job_store.get_job(session, job_id, for_update=True)
            if job is None or job.status != JobStatus.PENDING:
                return job

            document = session.get(Document, job.document_id) if job.document_id else None
            if document is None:
                return self._fail_job(session, job, f"Document {job.document_id} not found")

            try:
                strategy = self._strategy_for(job, document)
                planned = self._plan(strategy, document)
            except Exception as exc:
                logger.exception("[job=%s] Chunk planning failed", job_id)
                return self._fail_job(session, job, f"Chunk planning failed: {exc}")

            if not planned:
                return self._fail_job(session, job, "No chunks produced for document")

            # Stale chunks of earlier jobs for this document are replaced.
            removed = chunk_store.delete_chunks_for_documents(session, [document.id])
            chunks = chunk_store.create_chunks(
                session, document_id=document.id, job_id=job_id, planned=planned
            )
            eta = utcnow() + timedelta(
                seconds=estimate_processing_seconds(len(chunks), document.extension)
            )
            job_store.set_total_units(session, job_id, len(chunks), estimated_completion=eta)
            job_store.merge_metadata(job, chunking_strategy=strategy.as_metadata())
            if strategy.kind == ChunkType.PAGE:
                document.page_count = len(chunks)

            chunk_ids = [chunk.id for chunk in chunks]
            generate_embedding = bool((job.metadata_ or {}).get("generate_embedding", True))

        logger.info(
            "[job=%s] Created %d %s chunks for document %s (%d stale chunks removed)",
            job_id,
            len(chunk_ids),
            strategy.kind.value,
            document.id,
            removed,
        )
        self._dispatch_quietly(
            job_id,
            lambda: self.dispatcher.dispatch_chunks(chunk_ids, generate_embedding=generate_embedding),
        )
        return job

    def _strategy_for(self, job: ProcessingJob, document: Document) -> ChunkingStrategy:
        requested = (job.metadata_ or {}).get("chunking_strategy")
        if requested:
            return ChunkingStrategy(
                ChunkType(requested["type"]),
                chunk_size=requested.get("chunkSize"),
                overlap=requested.get("overlap"),
            )
        size = document.file_size or self.extractor.file_size(document.storage_path)
        return select_strategy(
            document.extension,
            size,
            threshold=self.config.sliding_window_threshold_bytes,
            chunk_size=self.config.sliding_window_chunk_size,
            overlap=self.config.sliding_window_overlap,
        )

    def _plan(self, strategy: ChunkingStrategy, document: Document) -> list:
        if strategy.kind == ChunkType.PAGE:
            page_count = document.page_count or self.extractor.page_count(document.storage_path)
            return plan_chunks(strategy, file_name=document.filename, page_count=page_count)

        result = self.extractor.extract(document.storage_path)
        if result.error:
            raise RuntimeError(result.error)
        return plan_chunks(strategy, file_name=document.filename, text=result.text)

    def _fail_job(self, session: Session, job: ProcessingJob, error: str) -> ProcessingJob:
        job_store.transition_job(session, job.id, JobStatus.FAILED)
        session.refresh(job)
        job_store.merge_metadata(job, error=error)
        self._set_document_status(session, job.document_id, DocumentStatus.FAILED, error)
        logger.error("[job=%s] Failed: %s", job.id, error)
        return job

    def _tolerance(self, job: ProcessingJob) -> float:
        value = (job.metadata_ or {}).get("failure_tolerance")
        return float(value) if value is not None else self.config.job_failure_tolerance

    def _aggregate_document(self, session: Session, job: ProcessingJob, *, succeeded: bool) -> None:
        if job.document_id is None:
            return
        document = session.get(Document, job.document_id)
        if document is None:
            return
        if not succeeded:
            document.status = DocumentStatus.FAILED
            document.error_message = (job.metadata_ or {}).get("error")
            return

        completed = chunk_store.list_chunks(
            session, job_id=job.id, statuses=[ChunkStatus.COMPLETED]
        )
        confidences = [c.extraction_confidence for c in completed if c.extraction_confidence is not None]
        document.extracted_text = "\n\n".join(c.content for c in completed if c.content)
        document.extraction_confidence = (
            round(sum(confidences) / len(confidences), 4) if confidences else None
        )
        methods = {c.extraction_method for c in completed if c.extraction_method}
        document.extraction_method = methods.pop() if len(methods) == 1 else "mixed" if methods else None
        document.status = DocumentStatus.COMPLETED
        document.error_message = None

    def _set_document_status(
        self,
        session: Session,
        document_id: int | None,
        status: DocumentStatus,
        error: str | None = None,
    ) -> None:
        if document_id is None:
            return
        document = session.get(Document, document_id)
        if document is not None:
            document.status = status
            document.error_message = error

    def _dispatch_quietly(self, job_id: int, send: Callable[[], int | None]) -> int | None:
        # The job row is already durable; a dispatch that never arrives
        # leaves it at zero progress for the stuck-job reaper.
        try:
            return send()
        except Exception:
            logger.exception("[job=%s] Dispatch failed; job left for the stuck-job reaper", job_id)
            return None
