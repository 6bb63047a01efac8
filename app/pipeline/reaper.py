# =============================================================================
# Stuck-Job Reaper
# =============================================================================
#
# Safety net for dispatches that never arrive. A job is STUCK when:
#
#     status IN (pending, running)
#     AND completed_units = 0
#     AND created_at < now - threshold      (threshold: 1–24 hours)
#
# A job that has completed even one unit is never stuck, whatever its age.
#
# MODES:
#   dry run      list stuck jobs, write nothing
#   mark-failed  status → failed, completed_at = now, metadata.error set;
#                owning document processing → failed
#   delete       delete the jobs' chunks, then the job rows; owning
#                document processing → pending
#
# Both write modes re-apply the stuck predicate inside the write
# transaction, so a job that started progressing after discovery is kept.
#
# Runs on a Celery beat schedule (app/workers/celery_app.py), from the
# admin API and from scripts/cleanup_stuck_jobs.py.
# =============================================================================

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.orm import Session, sessionmaker

from app.db import chunk_store, job_store
from app.db.models import DocumentStatus, ProcessingJob, utcnow
from app.pipeline.errors import InvalidThresholdError

logger = logging.getLogger(__name__)

MIN_THRESHOLD_HOURS = 1
MAX_THRESHOLD_HOURS = 24


class CleanupMode(str, enum.Enum):
    MARK_FAILED = "mark-failed"
    DELETE = "delete"


@dataclass
class CleanupReport:
    threshold_hours: int
    cutoff: datetime
    mode: CleanupMode | None  # None for a dry run
    jobs: list[ProcessingJob] = field(default_factory=list)
    deleted_chunks: int = 0

    @property
    def dry_run(self) -> bool:
        return self.mode is None

    @property
    def job_ids(self) -> list[int]:
        return [job.id for job in self.jobs]


def validate_threshold(threshold_hours: int) -> int:
    if not MIN_THRESHOLD_HOURS <= threshold_hours <= MAX_THRESHOLD_HOURS:
        raise InvalidThresholdError(threshold_hours)
    return threshold_hours


class StuckJobReaper:
    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def find_stuck_jobs(self, threshold_hours: int = 2) -> CleanupReport:
        """Dry run: report stuck jobs without touching any row."""
        cutoff = self._cutoff(threshold_hours)
        with self.session_factory.begin() as session:
            jobs = job_store.find_stuck_jobs(session, cutoff)
        logger.info("Found %d stuck jobs older than %dh", len(jobs), threshold_hours)
        return CleanupReport(threshold_hours, cutoff, None, jobs)

    def mark_failed(self, threshold_hours: int = 2) -> CleanupReport:
        cutoff = self._cutoff(threshold_hours)
        error = f"Job stuck with no progress for more than {threshold_hours} hours"
        with self.session_factory.begin() as session:
            jobs = job_store.mark_stuck_jobs_failed(session, cutoff, error)
            job_store.release_documents(session, jobs, DocumentStatus.FAILED, error)
        logger.warning("Marked %d stuck jobs as failed (threshold %dh)", len(jobs), threshold_hours)
        return CleanupReport(threshold_hours, cutoff, CleanupMode.MARK_FAILED, jobs)

    def delete(self, threshold_hours: int = 2) -> CleanupReport:
        cutoff = self._cutoff(threshold_hours)
        with self.session_factory.begin() as session:
            jobs = job_store.find_stuck_jobs(session, cutoff, for_update=True)
            job_ids = [job.id for job in jobs]
            # Chunks first: document_chunks.processing_job_id references the job.
            deleted_chunks = chunk_store.delete_chunks_for_jobs(session, job_ids)
            job_store.release_documents(session, jobs, DocumentStatus.PENDING)
            job_store.delete_jobs(session, job_ids)
        logger.warning(
            "Deleted %d stuck jobs and %d chunks (threshold %dh)",
            len(jobs),
            deleted_chunks,
            threshold_hours,
        )
        return CleanupReport(threshold_hours, cutoff, CleanupMode.DELETE, jobs, deleted_chunks)

    def cleanup(
        self,
        threshold_hours: int = 2,
        mode: CleanupMode | str = CleanupMode.MARK_FAILED,
        *,
        dry_run: bool = False,
    ) -> CleanupReport:
        if dry_run:
            return self.find_stuck_jobs(threshold_hours)
        mode = CleanupMode(mode)
        if mode == CleanupMode.DELETE:
            return self.delete(threshold_hours)
        return self.mark_failed(threshold_hours)

    @staticmethod
    def _cutoff(threshold_hours: int) -> datetime:
        return utcnow() - timedelta(hours=validate_threshold(threshold_hours))
