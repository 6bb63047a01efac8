# =============================================================================
# Batch Session Store
# =============================================================================
#
# Row-level operations on `batch_sessions`, `batch_document_statuses` and
# `batch_processing_errors`. Same conventions as the job and chunk stores.
#
# CHECKPOINT RULE:
# The aggregate counters of a session are never incremented in memory.
# `checkpoint()` recomputes them from the durable per-document statuses in
# the same transaction that stamps `last_checkpoint`, so after any crash the
# session row agrees with the document rows as of the last flushed batch.
# =============================================================================

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.db.models import (
    BatchDocumentState,
    BatchDocumentStatus,
    BatchProcessingError,
    BatchSession,
    BatchSessionStatus,
    utcnow,
)
from app.services.transitions import (
    BATCH_DOCUMENT_RETRY_TRANSITIONS,
    BATCH_DOCUMENT_TRANSITIONS,
    BATCH_TRANSITIONS,
    TransitionTable,
    sources_for,
)


def create_session(
    session: Session,
    *,
    document_ids: Sequence[int],
    case_id: str | None = None,
    batch_size: int = 10,
    options: dict | None = None,
) -> BatchSession:
    """Insert a `created` session with one `pending` status row per document."""
    # Ordered set: keep first occurrence of each id.
    ordered_ids = list(dict.fromkeys(int(doc_id) for doc_id in document_ids))

    batch = BatchSession(
        case_id=case_id,
        status=BatchSessionStatus.CREATED,
        document_ids=ordered_ids,
        batch_size=batch_size,
        options=dict(options or {}),
        total_documents=len(ordered_ids),
        total_batches=math.ceil(len(ordered_ids) / batch_size) if ordered_ids else 0,
    )
    session.add(batch)
    session.flush()

    session.add_all(
        BatchDocumentStatus(
            session_id=batch.id,
            document_id=doc_id,
            status=BatchDocumentState.PENDING,
            retry_count=0,
        )
        for doc_id in ordered_ids
    )
    session.flush()
    return batch


def get_session(session: Session, session_id: int) -> BatchSession | None:
    return session.get(BatchSession, session_id, populate_existing=True)


def list_sessions(session: Session, *, case_id: str | None = None) -> list[BatchSession]:
    stmt = select(BatchSession)
    if case_id is not None:
        stmt = stmt.where(BatchSession.case_id == case_id)
    stmt = stmt.order_by(BatchSession.created_at.desc(), BatchSession.id.desc())
    return list(session.scalars(stmt))


def transition_session(
    session: Session,
    session_id: int,
    target: BatchSessionStatus,
    *,
    table: TransitionTable = BATCH_TRANSITIONS,
    **extra_values,
) -> bool:
    """Compare-and-set on the session status; stamps the matching timestamp."""
    sources = sources_for(table, target)
    if not sources:
        return False

    now = utcnow()
    values: dict = {"status": target, "updated_at": now}
    if target == BatchSessionStatus.RUNNING:
        values["started_at"] = func.coalesce(BatchSession.started_at, now)
        values["completed_at"] = None
    elif target == BatchSessionStatus.PAUSED:
        values["paused_at"] = now
    elif target in (
        BatchSessionStatus.COMPLETED,
        BatchSessionStatus.CANCELLED,
        BatchSessionStatus.FAILED,
    ):
        values["completed_at"] = now
    values.update(extra_values)

    result = session.execute(
        update(BatchSession)
        .where(BatchSession.id == session_id, BatchSession.status.in_(sources))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# ---------------------------------------------------------------------------
# Per-document status
# ---------------------------------------------------------------------------


def get_document_status(
    session: Session, session_id: int, document_id: int
) -> BatchDocumentStatus | None:
    stmt = select(BatchDocumentStatus).where(
        BatchDocumentStatus.session_id == session_id,
        BatchDocumentStatus.document_id == document_id,
    )
    return session.scalars(stmt.execution_options(populate_existing=True)).first()


def list_document_statuses(
    session: Session,
    session_id: int,
    statuses: Iterable[BatchDocumentState] | None = None,
) -> list[BatchDocumentStatus]:
    stmt = select(BatchDocumentStatus).where(BatchDocumentStatus.session_id == session_id)
    if statuses is not None:
        stmt = stmt.where(BatchDocumentStatus.status.in_(list(statuses)))
    return list(session.scalars(stmt.order_by(BatchDocumentStatus.id)))


def _move_document(
    session: Session,
    session_id: int,
    document_id: int,
    target: BatchDocumentState,
    table: TransitionTable = BATCH_DOCUMENT_TRANSITIONS,
    **values,
) -> bool:
    sources = sources_for(table, target)
    result = session.execute(
        update(BatchDocumentStatus)
        .where(
            BatchDocumentStatus.session_id == session_id,
            BatchDocumentStatus.document_id == document_id,
            BatchDocumentStatus.status.in_(sources),
        )
        .values(status=target, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def claim_document(session: Session, session_id: int, document_id: int) -> bool:
    """`pending|processing → processing`. False if already completed or failed."""
    return _move_document(session, session_id, document_id, BatchDocumentState.PROCESSING)


def complete_document(
    session: Session,
    session_id: int,
    document_id: int,
    *,
    result: dict,
    processing_time_ms: int,
) -> bool:
    return _move_document(
        session,
        session_id,
        document_id,
        BatchDocumentState.COMPLETED,
        result=result,
        error_message=None,
        processing_time_ms=processing_time_ms,
    )


def fail_document(
    session: Session,
    session_id: int,
    document_id: int,
    *,
    error_message: str,
    processing_time_ms: int,
) -> bool:
    return _move_document(
        session,
        session_id,
        document_id,
        BatchDocumentState.FAILED,
        error_message=error_message,
        retry_count=BatchDocumentStatus.retry_count + 1,
        processing_time_ms=processing_time_ms,
    )


def reset_failed_documents(session: Session, session_id: int, *, max_retries: int) -> list[int]:
    """`failed → pending` for documents that have not exhausted their retries."""
    sources = sources_for(BATCH_DOCUMENT_RETRY_TRANSITIONS, BatchDocumentState.PENDING)
    rows = list(
        session.scalars(
            select(BatchDocumentStatus)
            .where(
                BatchDocumentStatus.session_id == session_id,
                BatchDocumentStatus.status.in_(sources),
                BatchDocumentStatus.retry_count < max_retries,
            )
            .order_by(BatchDocumentStatus.id)
            .with_for_update()
        )
    )
    document_ids = [row.document_id for row in rows]
    if document_ids:
        session.execute(
            update(BatchDocumentStatus)
            .where(
                BatchDocumentStatus.session_id == session_id,
                BatchDocumentStatus.document_id.in_(document_ids),
                BatchDocumentStatus.status.in_(sources),
            )
            .values(status=BatchDocumentState.PENDING, error_message=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
    return document_ids


def status_counts(session: Session, session_id: int) -> dict[BatchDocumentState, int]:
    rows = session.execute(
        select(BatchDocumentStatus.status, func.count(BatchDocumentStatus.id))
        .where(BatchDocumentStatus.session_id == session_id)
        .group_by(BatchDocumentStatus.status)
    ).all()
    counts = {state: 0 for state in BatchDocumentState}
    counts.update({state: count for state, count in rows})
    return counts


def average_processing_time_ms(session: Session, session_id: int) -> float | None:
    """Mean wall time of the documents that finished (completed or failed)."""
    average = session.scalar(
        select(func.avg(BatchDocumentStatus.processing_time_ms)).where(
            BatchDocumentStatus.session_id == session_id,
            BatchDocumentStatus.status.in_([BatchDocumentState.COMPLETED, BatchDocumentState.FAILED]),
            BatchDocumentStatus.processing_time_ms.is_not(None),
        )
    )
    return float(average) if average is not None else None


# ---------------------------------------------------------------------------
# Errors + checkpoint
# ---------------------------------------------------------------------------


def record_error(
    session: Session,
    session_id: int,
    document_id: int | None,
    error_message: str,
    error_stack: str | None = None,
) -> BatchProcessingError:
    error = BatchProcessingError(
        session_id=session_id,
        document_id=document_id,
        error_message=error_message,
        error_stack=error_stack,
    )
    session.add(error)
    session.flush()
    return error


def list_errors(session: Session, session_id: int) -> list[BatchProcessingError]:
    stmt = (
        select(BatchProcessingError)
        .where(BatchProcessingError.session_id == session_id)
        .order_by(BatchProcessingError.created_at, BatchProcessingError.id)
    )
    return list(session.scalars(stmt))


def checkpoint(
    session: Session,
    session_id: int,
    *,
    batch_number: int,
    checkpoint_data: dict | None = None,
) -> dict[str, int | float]:
    """
    Flush the session's aggregates from the durable document statuses.

    documents_processed is written as succeeded + failed in the same
    statement, so the invariant holds at every checkpoint.
    """
    counts = status_counts(session, session_id)
    succeeded = counts[BatchDocumentState.COMPLETED]
    failed = counts[BatchDocumentState.FAILED]
    processed = succeeded + failed
    total = sum(counts.values())
    progress = round(processed / total * 100, 2) if total else 0.0

    now = utcnow()
    session.execute(
        update(BatchSession)
        .where(BatchSession.id == session_id)
        .values(
            documents_processed=processed,
            documents_succeeded=succeeded,
            documents_failed=failed,
            progress_percentage=progress,
            current_batch_number=batch_number,
            last_checkpoint=now,
            checkpoint_data=checkpoint_data,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return {
        "documents_processed": processed,
        "documents_succeeded": succeeded,
        "documents_failed": failed,
        "progress_percentage": progress,
    }
