# =============================================================================
# Job Record Store
# =============================================================================
#
# Row-level operations on `processing_jobs`. Every function takes an open
# Session and never commits; the caller owns the transaction
# (`with session_factory.begin() as session:`).
#
# CONCURRENCY RULES:
# - Status changes are compare-and-set UPDATEs restricted to the legal
#   source states of app/services/transitions.py. They return True only if
#   this call changed the row.
# - Counters are only changed with SQL-side increments
#   (`completed_units = completed_units + 1`), guarded so that
#   completed + failed never exceeds total and never moves once the job is
#   no longer running.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from app.db.models import Document, DocumentStatus, JobStatus, JobType, ProcessingJob, utcnow
from app.services.transitions import (
    JOB_RETRY_TRANSITIONS,
    JOB_TRANSITIONS,
    TransitionTable,
    is_terminal,
    sources_for,
)

logger = logging.getLogger(__name__)

ACTIVE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING)


def create_job(
    session: Session,
    *,
    document_id: int | None,
    case_id: str | None,
    job_type: JobType = JobType.DOCUMENT_CHUNK,
    metadata: dict | None = None,
) -> ProcessingJob:
    """Insert a `pending` job and flush so its id is available."""
    job = ProcessingJob(
        document_id=document_id,
        case_id=case_id,
        job_type=job_type,
        status=JobStatus.PENDING,
        total_units=0,
        completed_units=0,
        failed_units=0,
        metadata_=dict(metadata or {}),
    )
    session.add(job)
    session.flush()
    return job


def get_job(session: Session, job_id: int, *, for_update: bool = False) -> ProcessingJob | None:
    stmt = select(ProcessingJob).where(ProcessingJob.id == job_id)
    if for_update:
        stmt = stmt.with_for_update()
    return session.scalars(stmt).first()


def list_jobs(
    session: Session,
    *,
    case_id: str | None = None,
    document_id: int | None = None,
    statuses: Iterable[JobStatus] | None = None,
    job_type: JobType | None = None,
    limit: int | None = None,
) -> list[ProcessingJob]:
    """Jobs matching the filters, newest first."""
    stmt = select(ProcessingJob)
    if case_id is not None:
        stmt = stmt.where(ProcessingJob.case_id == case_id)
    if document_id is not None:
        stmt = stmt.where(ProcessingJob.document_id == document_id)
    if statuses is not None:
        stmt = stmt.where(ProcessingJob.status.in_(list(statuses)))
    if job_type is not None:
        stmt = stmt.where(ProcessingJob.job_type == job_type)
    stmt = stmt.order_by(ProcessingJob.created_at.desc(), ProcessingJob.id.desc())
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(session.scalars(stmt))


def find_active_job(
    session: Session,
    document_id: int,
    job_type: JobType = JobType.DOCUMENT_CHUNK,
) -> ProcessingJob | None:
    jobs = list_jobs(
        session,
        document_id=document_id,
        statuses=ACTIVE_JOB_STATUSES,
        job_type=job_type,
        limit=1,
    )
    return jobs[0] if jobs else None


def merge_metadata(job: ProcessingJob, **values) -> None:
    # Assign a new dict so the JSON column is flagged dirty.
    job.metadata_ = {**(job.metadata_ or {}), **values}


# ---------------------------------------------------------------------------
# Status transitions (compare-and-set)
# ---------------------------------------------------------------------------


def transition_job(
    session: Session,
    job_id: int,
    target: JobStatus,
    *,
    table: TransitionTable = JOB_TRANSITIONS,
    **extra_values,
) -> bool:
    """
    Move a job to `target` if its current status allows it.

    Sets `started_at` on the first move to `running` and `completed_at` on
    any move to a terminal status. Returns False (and writes nothing) when
    the row is missing or in a status `target` cannot be reached from.
    """
    sources = sources_for(table, target)
    if not sources:
        return False

    now = utcnow()
    values: dict = {"status": target, "updated_at": now}
    if target == JobStatus.RUNNING:
        values["started_at"] = func.coalesce(ProcessingJob.started_at, now)
    if is_terminal(JOB_TRANSITIONS, target):
        values["completed_at"] = now
    values.update(extra_values)

    result = session.execute(
        update(ProcessingJob)
        .where(ProcessingJob.id == job_id, ProcessingJob.status.in_(sources))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def finalize_job(session: Session, job_id: int, target: JobStatus) -> bool:
    """
    Move a `running` job to `completed` or `failed` once every unit is
    terminal. Among sibling workers racing to finalize, exactly one wins.
    """
    now = utcnow()
    result = session.execute(
        update(ProcessingJob)
        .where(
            ProcessingJob.id == job_id,
            ProcessingJob.status == JobStatus.RUNNING,
            ProcessingJob.total_units > 0,
            ProcessingJob.completed_units + ProcessingJob.failed_units
            == ProcessingJob.total_units,
        )
        .values(status=target, completed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def reopen_for_retry(session: Session, job_id: int, reset_units: int) -> bool:
    """
    Reopen a job for a retry of `reset_units` failed chunks: status back to
    `running`, `failed_units` reduced by exactly that many.
    """
    sources = sources_for(JOB_RETRY_TRANSITIONS, JobStatus.RUNNING)
    result = session.execute(
        update(ProcessingJob)
        .where(
            ProcessingJob.id == job_id,
            ProcessingJob.status.in_(sources),
            ProcessingJob.failed_units >= reset_units,
        )
        .values(
            status=JobStatus.RUNNING,
            failed_units=ProcessingJob.failed_units - reset_units,
            completed_at=None,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------


def set_total_units(
    session: Session,
    job_id: int,
    total_units: int,
    *,
    estimated_completion: datetime | None = None,
) -> bool:
    result = session.execute(
        update(ProcessingJob)
        .where(ProcessingJob.id == job_id, ProcessingJob.status.in_(ACTIVE_JOB_STATUSES))
        .values(
            total_units=total_units,
            estimated_completion=estimated_completion,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def increment_units(session: Session, job_id: int, *, completed: bool) -> bool:
    """
    Atomically add one to `completed_units` (or `failed_units`).

    The WHERE clause makes the increment a no-op when the job is no longer
    running (counters frozen) or when it would break
    completed + failed <= total.
    """
    column = ProcessingJob.completed_units if completed else ProcessingJob.failed_units
    result = session.execute(
        update(ProcessingJob)
        .where(
            ProcessingJob.id == job_id,
            ProcessingJob.status == JobStatus.RUNNING,
            ProcessingJob.completed_units + ProcessingJob.failed_units
            < ProcessingJob.total_units,
        )
        .values({column: column + 1, ProcessingJob.updated_at: utcnow()})
        .execution_options(synchronize_session=False)
    )
    applied = result.rowcount == 1
    if not applied:
        logger.info("[job=%s] Counter increment skipped (job not running or full)", job_id)
    return applied


# ---------------------------------------------------------------------------
# Stuck jobs
# ---------------------------------------------------------------------------


def _stuck_predicate(cutoff: datetime) -> list:
    return [
        ProcessingJob.status.in_(ACTIVE_JOB_STATUSES),
        ProcessingJob.completed_units == 0,
        ProcessingJob.created_at < cutoff,
    ]


def find_stuck_jobs(
    session: Session,
    cutoff: datetime,
    *,
    job_ids: Sequence[int] | None = None,
    for_update: bool = False,
) -> list[ProcessingJob]:
    """Active jobs created before `cutoff` that have not completed a single unit."""
    stmt = select(ProcessingJob).where(*_stuck_predicate(cutoff))
    if job_ids is not None:
        stmt = stmt.where(ProcessingJob.id.in_(list(job_ids)))
    stmt = stmt.order_by(ProcessingJob.created_at, ProcessingJob.id)
    if for_update:
        stmt = stmt.with_for_update()
    return list(session.scalars(stmt))


def mark_stuck_jobs_failed(session: Session, cutoff: datetime, error: str) -> list[ProcessingJob]:
    """
    Fail every job that is stuck *at write time*; a job that made progress
    since discovery is left alone.
    """
    jobs = find_stuck_jobs(session, cutoff, for_update=True)
    now = utcnow()
    for job in jobs:
        job.status = JobStatus.FAILED
        job.completed_at = now
        merge_metadata(job, error=error, failed_by="stuck-job-cleanup")
    session.flush()
    return jobs


def delete_jobs(session: Session, job_ids: Sequence[int]) -> int:
    if not job_ids:
        return 0
    result = session.execute(
        delete(ProcessingJob)
        .where(ProcessingJob.id.in_(list(job_ids)))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def release_documents(
    session: Session,
    jobs: Iterable[ProcessingJob],
    status: DocumentStatus,
    error: str | None = None,
) -> int:
    """Move the documents owned by `jobs` out of `processing`."""
    document_ids = {job.document_id for job in jobs if job.document_id is not None}
    if not document_ids:
        return 0
    result = session.execute(
        update(Document)
        .where(Document.id.in_(document_ids), Document.status == DocumentStatus.PROCESSING)
        .values(status=status, error_message=error)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount
