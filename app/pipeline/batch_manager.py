# =============================================================================
# Batch Session Manager — Many Documents, Checkpointed
# =============================================================================
#
# Runs an ordered list of case documents through extraction in internal
# batches of `batch_size` (default 10):
#
#   for each internal batch (input order):
#       re-read session status ── not running? stop dispatching, return
#       documents of the batch that are still pending → thread pool
#           (at most `batch_concurrency_limit` at a time)
#       TX: checkpoint (aggregates recomputed from document statuses,
#           last_checkpoint = now)
#   TX: running → completed
#
# RESUME: every document is looked up in batch_document_statuses before it
# is touched. `completed` (and `failed`) documents are skipped, so a crashed
# or paused session re-run by resume only does the remaining work. At most
# the batch in flight at crash time is repeated.
#
# ERRORS: a failing document is marked `failed` (retry_count + 1) and
# appended to batch_processing_errors; its siblings carry on. Enrichment
# (entity extraction) errors are logged and ignored. Errors outside any
# single document:
#
#   OperationalError        re-raised, session stays `running`; the task
#                           retry re-runs it from the last checkpoint
#   SoftTimeLimitExceeded   session → `paused` with error_message; resume
#                           continues it
#   anything else           session → `failed` with error_message; resume
#                           (open documents left) or retry-failed reopens it
#
# DISPATCH: once a session is durably `running`, a broker error is logged
# and swallowed. The session keeps its open documents; pause + resume
# re-dispatches it.
#
# Only one runner per session is expected at a time; document claims are
# compare-and-set, so a duplicate delivery does not double-complete a
# document.
# =============================================================================

from __future__ import annotations

import logging
import time
import traceback
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from celery.exceptions import SoftTimeLimitExceeded
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from app.config import Settings
from app.db import batch_store
from app.db.models import (
    BatchDocumentState,
    BatchProcessingError,
    BatchSession,
    BatchSessionStatus,
    Document,
    DocumentStatus,
)
from app.pipeline.errors import (
    BatchSessionNotFoundError,
    DocumentNotFoundError,
    ExtractionError,
    InvalidTransitionError,
)
from app.services.dispatch import Dispatcher
from app.services.extractor import Extractor
from app.services.transitions import BATCH_RETRY_TRANSITIONS, BATCH_TRANSITIONS, ensure_transition

logger = logging.getLogger(__name__)

# (document_id, extracted_text) → summary dict stored in the document result
Enricher = Callable[[int, str], dict | None]

# A session normally needs one pass; extra passes pick up documents reset by
# retry_failed_documents while the session was still running.
_MAX_PASSES = 3


@dataclass
class DocumentOutcome:
    document_id: int
    status: str  # "completed" | "failed" | "skipped"
    result: dict | None = None
    error: str | None = None


@dataclass
class BatchProgress:
    session: BatchSession
    counts: dict[str, int] = field(default_factory=dict)
    avg_processing_time_ms: float | None = None

    @property
    def remaining(self) -> int:
        return self.counts.get("pending", 0) + self.counts.get("processing", 0)

    @property
    def documents_per_minute(self) -> float:
        # Single-thread rate.
        if not self.avg_processing_time_ms:
            return 0.0
        return round(60_000 / self.avg_processing_time_ms, 2)

    @property
    def estimated_seconds_remaining(self) -> float | None:
        if self.avg_processing_time_ms is None:
            return None
        return round(self.remaining * self.avg_processing_time_ms / 1000, 1)


class BatchSessionManager:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        dispatcher: Dispatcher,
        extractor: Extractor,
        config: Settings,
        enrich: Enricher | None = None,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.extractor = extractor
        self.config = config
        self.enrich = enrich

    # =======================================================================
    # Commands
    # =======================================================================

    def create_session(
        self,
        document_ids: Sequence[int] | None = None,
        *,
        case_id: str | None = None,
        options: dict | None = None,
        batch_size: int | None = None,
    ) -> BatchSession:
        """
        Record a `created` session. Without explicit ids, every document of
        `case_id` that is not yet completed is included (oldest first).
        """
        if document_ids is None and case_id is None:
            raise ValueError("Either document_ids or case_id is required")

        with self.session_factory.begin() as session:
            if document_ids is None:
                document_ids = list(
                    session.scalars(
                        select(Document.id)
                        .where(
                            Document.case_id == case_id,
                            Document.status != DocumentStatus.COMPLETED,
                        )
                        .order_by(Document.created_at, Document.id)
                    )
                )
            else:
                found = set(
                    session.scalars(select(Document.id).where(Document.id.in_(list(document_ids))))
                )
                missing = [doc_id for doc_id in document_ids if doc_id not in found]
                if missing:
                    raise DocumentNotFoundError(missing[0])

            batch = batch_store.create_session(
                session,
                document_ids=document_ids,
                case_id=case_id,
                batch_size=batch_size or self.config.batch_size,
                options=options,
            )

        logger.info(
            "[session=%s] Created with %d documents in %d batches",
            batch.id,
            batch.total_documents,
            batch.total_batches,
        )
        return batch

    def start_session(self, session_id: int) -> BatchSession:
        self._move(session_id, BatchSessionStatus.RUNNING, from_statuses=(BatchSessionStatus.CREATED,))
        self._dispatch_quietly(session_id)
        return self.get_session(session_id)

    def pause_session(self, session_id: int) -> BatchSession:
        """Stop dispatching further internal batches; in-flight work finishes."""
        self._move(session_id, BatchSessionStatus.PAUSED)
        logger.info("[session=%s] Paused", session_id)
        return self.get_session(session_id)

    def resume_session(self, session_id: int) -> BatchSession:
        """
        Continue a session from its first non-completed document.

        Accepts a paused session, or a failed one that still has pending or
        processing documents (a run that died outside any single document).
        """
        with self.session_factory.begin() as session:
            batch = batch_store.get_session(session, session_id)
            if batch is None:
                raise BatchSessionNotFoundError(session_id)
            current = batch.status
            if current == BatchSessionStatus.FAILED and _open_count(
                batch_store.status_counts(session, session_id)
            ):
                table = BATCH_RETRY_TRANSITIONS
            elif current == BatchSessionStatus.PAUSED:
                table = BATCH_TRANSITIONS
            else:
                raise InvalidTransitionError(
                    "batch session", current.value, BatchSessionStatus.RUNNING.value
                )
            moved = batch_store.transition_session(
                session, session_id, BatchSessionStatus.RUNNING, table=table, error_message=None
            )
            if not moved:
                raise InvalidTransitionError("batch session", current.value, BatchSessionStatus.RUNNING.value)

        logger.info("[session=%s] Resumed from %s", session_id, current.value)
        self._dispatch_quietly(session_id)
        return self.get_session(session_id)

    def cancel_session(self, session_id: int) -> BatchSession:
        self._move(session_id, BatchSessionStatus.CANCELLED)
        logger.info("[session=%s] Cancelled", session_id)
        return self.get_session(session_id)

    def retry_failed_documents(self, session_id: int) -> list[int]:
        """
        Re-queue documents whose status is `failed` and whose retry_count is
        below `batch_max_retries`. A finished session is reopened and
        dispatched when anything is left to do (reset documents, or open
        documents of a failed run); a paused session stays paused until
        resumed.
        """
        with self.session_factory.begin() as session:
            batch = batch_store.get_session(session, session_id)
            if batch is None:
                raise BatchSessionNotFoundError(session_id)
            if batch.status == BatchSessionStatus.CANCELLED:
                raise InvalidTransitionError(
                    "batch session", batch.status.value, BatchSessionStatus.RUNNING.value
                )

            reset_ids = batch_store.reset_failed_documents(
                session, session_id, max_retries=self.config.batch_max_retries
            )
            reopened = False
            has_open = _open_count(batch_store.status_counts(session, session_id)) > 0
            if has_open and batch.status in (BatchSessionStatus.COMPLETED, BatchSessionStatus.FAILED):
                reopened = batch_store.transition_session(
                    session,
                    session_id,
                    BatchSessionStatus.RUNNING,
                    table=BATCH_RETRY_TRANSITIONS,
                    error_message=None,
                )

        logger.info("[session=%s] Retrying %d failed documents", session_id, len(reset_ids))
        if reopened:
            self._dispatch_quietly(session_id)
        return reset_ids

    # =======================================================================
    # Dispatch handler
    # =======================================================================

    def run_session(self, session_id: int) -> BatchSession | None:
        with self.session_factory.begin() as session:
            batch = batch_store.get_session(session, session_id)
            if batch is None:
                logger.warning("[session=%s] run_session: not found", session_id)
                return None
            if batch.status != BatchSessionStatus.RUNNING:
                logger.info("[session=%s] run_session: status %s, nothing to do", session_id, batch.status.value)
                return batch
            document_ids = [int(doc_id) for doc_id in batch.document_ids]
            batch_size = batch.batch_size or self.config.batch_size
            options = dict(batch.options or {})

        try:
            for _ in range(_MAX_PASSES):
                if not self._run_pass(session_id, document_ids, batch_size, options):
                    return self.get_session(session_id)
                if not self._has_remaining(session_id):
                    break

            with self.session_factory.begin() as session:
                if batch_store.transition_session(session, session_id, BatchSessionStatus.COMPLETED):
                    logger.info("[session=%s] Completed", session_id)
        except OperationalError:
            logger.exception("[session=%s] Storage error; session left running for retry", session_id)
            raise
        except SoftTimeLimitExceeded:
            logger.warning("[session=%s] Time limit reached; pausing until resumed", session_id)
            with self.session_factory.begin() as session:
                batch_store.transition_session(
                    session,
                    session_id,
                    BatchSessionStatus.PAUSED,
                    error_message="Interrupted by worker time limit; resume to continue",
                )
        except Exception as exc:
            logger.exception("[session=%s] Session failed", session_id)
            with self.session_factory.begin() as session:
                batch_store.transition_session(
                    session, session_id, BatchSessionStatus.FAILED, error_message=str(exc)
                )
        return self.get_session(session_id)

    def process_document(self, session_id: int, document_id: int, options: dict | None = None) -> DocumentOutcome:
        """
        Process one document of a session. Skips documents that are
        already completed (idempotent replay) or failed (retry-failed only).
        """
        options = options or {}
        started = time.monotonic()

        with self.session_factory.begin() as session:
            row = batch_store.get_document_status(session, session_id, document_id)
            if row is None:
                return DocumentOutcome(document_id, "skipped", error="not part of session")
            if row.status in (BatchDocumentState.COMPLETED, BatchDocumentState.FAILED):
                return DocumentOutcome(document_id, "skipped", result=row.result)
            if not batch_store.claim_document(session, session_id, document_id):
                return DocumentOutcome(document_id, "skipped")

            document = session.get(Document, document_id)
            locator = document.storage_path if document else None
            if document is not None:
                document.status = DocumentStatus.PROCESSING

        try:
            if locator is None:
                raise DocumentNotFoundError(document_id)

            extraction = self.extractor.extract(locator)
            if extraction.error:
                raise ExtractionError(extraction.error)

            result = {
                "extractedChars": len(extraction.text),
                "pageCount": extraction.page_count,
                "method": extraction.method,
                "confidence": extraction.confidence,
                "needsReview": extraction.needs_review,
            }
            if options.get("extract_entities") and self.enrich is not None:
                try:
                    result["enrichment"] = self.enrich(document_id, extraction.text)
                except Exception as exc:
                    logger.warning(
                        "[session=%s] Enrichment failed for document %s: %s",
                        session_id,
                        document_id,
                        exc,
                    )
                    result["enrichmentError"] = str(exc)

            elapsed_ms = int((time.monotonic() - started) * 1000)
            with self.session_factory.begin() as session:
                document = session.get(Document, document_id)
                if document is not None:
                    document.extracted_text = extraction.text
                    document.extraction_method = extraction.method
                    document.extraction_confidence = extraction.confidence
                    if extraction.page_count:
                        document.page_count = extraction.page_count
                    document.status = DocumentStatus.COMPLETED
                    document.error_message = None
                batch_store.complete_document(
                    session, session_id, document_id, result=result, processing_time_ms=elapsed_ms
                )
            return DocumentOutcome(document_id, "completed", result=result)

        except Exception as exc:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.warning("[session=%s] Document %s failed: %s", session_id, document_id, exc)
            with self.session_factory.begin() as session:
                batch_store.fail_document(
                    session,
                    session_id,
                    document_id,
                    error_message=str(exc),
                    processing_time_ms=elapsed_ms,
                )
                batch_store.record_error(
                    session, session_id, document_id, str(exc), traceback.format_exc()
                )
                document = session.get(Document, document_id)
                if document is not None:
                    document.status = DocumentStatus.FAILED
                    document.error_message = str(exc)
            return DocumentOutcome(document_id, "failed", error=str(exc))

    # =======================================================================
    # Queries
    # =======================================================================

    def get_session(self, session_id: int) -> BatchSession:
        with self.session_factory.begin() as session:
            batch = batch_store.get_session(session, session_id)
            if batch is None:
                raise BatchSessionNotFoundError(session_id)
            return batch

    def get_progress(self, session_id: int) -> BatchProgress:
        with self.session_factory.begin() as session:
            batch = batch_store.get_session(session, session_id)
            if batch is None:
                raise BatchSessionNotFoundError(session_id)
            counts = batch_store.status_counts(session, session_id)
            return BatchProgress(
                session=batch,
                counts={state.value: count for state, count in counts.items()},
                avg_processing_time_ms=batch_store.average_processing_time_ms(session, session_id),
            )

    def list_sessions(self, case_id: str | None = None) -> list[BatchSession]:
        with self.session_factory.begin() as session:
            return batch_store.list_sessions(session, case_id=case_id)

    def list_errors(self, session_id: int) -> list[BatchProcessingError]:
        with self.session_factory.begin() as session:
            if batch_store.get_session(session, session_id) is None:
                raise BatchSessionNotFoundError(session_id)
            return batch_store.list_errors(session, session_id)

    # =======================================================================
    # Internals
    # =======================================================================

    def _run_pass(
        self,
        session_id: int,
        document_ids: list[int],
        batch_size: int,
        options: dict,
    ) -> bool:
        """Walk every internal batch once. False if the session stopped running."""
        for batch_number, start in enumerate(range(0, len(document_ids), batch_size), start=1):
            with self.session_factory.begin() as session:
                batch = batch_store.get_session(session, session_id)
                status = batch.status if batch else None
                open_ids = {
                    row.document_id
                    for row in batch_store.list_document_statuses(
                        session,
                        session_id,
                        [BatchDocumentState.PENDING, BatchDocumentState.PROCESSING],
                    )
                }
            if status != BatchSessionStatus.RUNNING:
                logger.info(
                    "[session=%s] Status %s; stopping before batch %d",
                    session_id,
                    status.value if status else "missing",
                    batch_number,
                )
                return False

            todo = [doc_id for doc_id in document_ids[start : start + batch_size] if doc_id in open_ids]
            if not todo:
                continue

            logger.info("[session=%s] Batch %d: %d documents", session_id, batch_number, len(todo))
            outcomes = self._run_batch(session_id, todo, options)

            with self.session_factory.begin() as session:
                totals = batch_store.checkpoint(
                    session,
                    session_id,
                    batch_number=batch_number,
                    checkpoint_data={
                        "batchNumber": batch_number,
                        "lastDocumentId": todo[-1],
                        "outcomes": {str(o.document_id): o.status for o in outcomes},
                    },
                )
            logger.info(
                "[session=%s] Checkpoint after batch %d: %d processed (%d ok, %d failed)",
                session_id,
                batch_number,
                totals["documents_processed"],
                totals["documents_succeeded"],
                totals["documents_failed"],
            )
        return True

    def _run_batch(self, session_id: int, document_ids: list[int], options: dict) -> list[DocumentOutcome]:
        workers = max(1, min(self.config.batch_concurrency_limit, len(document_ids)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"batch-{session_id}") as pool:
            futures = [
                pool.submit(self.process_document, session_id, doc_id, options)
                for doc_id in document_ids
            ]
            return [future.result() for future in futures]

    def _has_remaining(self, session_id: int) -> bool:
        with self.session_factory.begin() as session:
            counts = batch_store.status_counts(session, session_id)
        return _open_count(counts) > 0

    def _dispatch_quietly(self, session_id: int) -> None:
        # The session row is already durably running; its open documents
        # are picked up again by pause + resume.
        try:
            self.dispatcher.dispatch_batch_session(session_id)
        except Exception:
            logger.exception("[session=%s] Dispatch failed; pause and resume to re-dispatch", session_id)

    def _move(
        self,
        session_id: int,
        target: BatchSessionStatus,
        *,
        from_statuses: Sequence[BatchSessionStatus] | None = None,
    ) -> None:
        with self.session_factory.begin() as session:
            batch = batch_store.get_session(session, session_id)
            if batch is None:
                raise BatchSessionNotFoundError(session_id)
            if from_statuses is not None and batch.status not in from_statuses:
                raise InvalidTransitionError("batch session", batch.status.value, target.value)
            ensure_transition(BATCH_TRANSITIONS, batch.status, target, "batch session")
            if not batch_store.transition_session(session, session_id, target):
                raise InvalidTransitionError("batch session", batch.status.value, target.value)


def _open_count(counts: dict[BatchDocumentState, int]) -> int:
    return counts[BatchDocumentState.PENDING] + counts[BatchDocumentState.PROCESSING]
