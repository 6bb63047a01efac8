# =============================================================================
# Celery Task Definitions — Pipeline Handlers
# =============================================================================
#
# Thin wrappers: each task resolves the process-wide pipeline and calls one
# handler. All state decisions live in app/pipeline/.
#
# IMPORTANT: Celery workers are SYNCHRONOUS. Handlers use the sync engine
# and open their own short transactions.
#
# RETRY STRATEGY:
# Handlers turn extraction/embedding/document errors into row state and
# return normally, so the only exception a task sees is a storage error.
# `OperationalError` (database unreachable, connection dropped) is retried
# with exponential backoff (60s, 120s, 240s); handlers are idempotent, so
# a retried task resumes from whatever was committed.
# =============================================================================

import logging

from sqlalchemy.exc import OperationalError

from app.pipeline.factory import get_pipeline
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def _backoff(retries: int) -> int:
    return 60 * (2**retries)


# ---------------------------------------------------------------------------
# Chunking jobs
# ---------------------------------------------------------------------------


@celery_app.task(bind=True, name="start_processing_job", max_retries=3)
def start_processing_job(self, job_id: int) -> dict:
    """Create a job's chunks and queue one process_chunk task per chunk."""
    try:
        job = get_pipeline().orchestrator.start_job(job_id)
    except OperationalError as exc:
        logger.exception("[job=%s] Storage error while starting job", job_id)
        raise self.retry(exc=exc, countdown=_backoff(self.request.retries))

    if job is None:
        return {"job_id": job_id, "status": "missing"}
    return {"job_id": job_id, "status": job.status.value}


@celery_app.task(bind=True, name="process_chunk", max_retries=3)
def process_chunk(self, chunk_id: int, generate_embedding: bool = True) -> dict:
    """Process one chunk and finalize its job if it was the last unit."""
    try:
        result = get_pipeline().orchestrator.handle_chunk(
            chunk_id, generate_embedding=generate_embedding
        )
    except OperationalError as exc:
        logger.exception("Storage error while processing chunk %s", chunk_id)
        raise self.retry(exc=exc, countdown=_backoff(self.request.retries))

    return {
        "chunk_id": chunk_id,
        "job_id": result.job_id,
        "status": result.status.value if result.status else None,
        "applied": result.applied,
        "skipped_reason": result.skipped_reason,
    }


@celery_app.task(bind=True, name="generate_embeddings", max_retries=3)
def generate_embeddings(self, job_id: int | None = None) -> dict:
    """Backfill embeddings for completed chunks without one."""
    try:
        return get_pipeline().orchestrator.generate_missing_embeddings(job_id)
    except OperationalError as exc:
        logger.exception("[job=%s] Storage error during embedding backfill", job_id)
        raise self.retry(exc=exc, countdown=_backoff(self.request.retries))


# ---------------------------------------------------------------------------
# Batch sessions
# ---------------------------------------------------------------------------


@celery_app.task(
    bind=True,
    name="run_batch_session",
    max_retries=3,
    # Walks every internal batch of a session in one task.
    soft_time_limit=3300,
    time_limit=3600,
)
def run_batch_session(self, session_id: int) -> dict:
    try:
        batch = get_pipeline().batch_manager.run_session(session_id)
    except OperationalError as exc:
        logger.exception("[session=%s] Storage error while running session", session_id)
        raise self.retry(exc=exc, countdown=_backoff(self.request.retries))

    if batch is None:
        return {"session_id": session_id, "status": "missing"}
    return {
        "session_id": session_id,
        "status": batch.status.value,
        "documents_processed": batch.documents_processed,
        "documents_failed": batch.documents_failed,
    }


# ---------------------------------------------------------------------------
# Stuck-job reaper (Celery beat)
# ---------------------------------------------------------------------------


@celery_app.task(name="cleanup_stuck_jobs")
def cleanup_stuck_jobs(threshold_hours: int = 2, mode: str = "mark-failed") -> dict:
    report = get_pipeline().reaper.cleanup(threshold_hours, mode)
    return {
        "threshold_hours": threshold_hours,
        "mode": mode,
        "job_ids": report.job_ids,
        "deleted_chunks": report.deleted_chunks,
    }
