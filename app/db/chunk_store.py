# =============================================================================
# Chunk Store
# =============================================================================
#
# Row-level operations on `document_chunks`. Same conventions as
# app/db/job_store.py: functions take an open Session, never commit, and
# every status change is a compare-and-set that reports whether it applied.
#
# A chunk's row is only written by the chunk processor (claim, finish) and
# by the orchestrator's explicit operations (bulk create, retry reset,
# cancel skip, reprocess delete).
# =============================================================================

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.orm import Session

from app.db.models import ChunkStatus, Document, DocumentChunk, utcnow
from app.services.transitions import CHUNK_RETRY_TRANSITIONS, CHUNK_TRANSITIONS, sources_for


@dataclass(frozen=True)
class ChunkStats:
    """Aggregate view of a job's chunks."""

    total: int
    pending: int
    processing: int
    completed: int
    failed: int
    skipped: int
    total_characters: int
    average_confidence: float | None

    @property
    def progress_percentage(self) -> float:
        if not self.total:
            return 0.0
        return round(self.completed / self.total * 100, 2)


def create_chunks(
    session: Session,
    *,
    document_id: int,
    job_id: int,
    planned: Sequence,
) -> list[DocumentChunk]:
    """
    Bulk-insert `pending` chunks from a chunk plan
    (see app/services/chunking.py:plan_chunks).
    """
    chunks = [
        DocumentChunk(
            document_id=document_id,
            processing_job_id=job_id,
            chunk_index=item.chunk_index,
            chunk_type=item.chunk_type,
            processing_status=ChunkStatus.PENDING,
            processing_attempts=0,
            metadata_=dict(item.metadata),
        )
        for item in planned
    ]
    session.add_all(chunks)
    session.flush()
    return chunks


def get_chunk(session: Session, chunk_id: int) -> DocumentChunk | None:
    return session.get(DocumentChunk, chunk_id, populate_existing=True)


def list_chunks(
    session: Session,
    *,
    job_id: int | None = None,
    document_id: int | None = None,
    statuses: Iterable[ChunkStatus] | None = None,
) -> list[DocumentChunk]:
    """Chunks matching the filters, always ordered by `chunk_index`."""
    stmt = select(DocumentChunk)
    if job_id is not None:
        stmt = stmt.where(DocumentChunk.processing_job_id == job_id)
    if document_id is not None:
        stmt = stmt.where(DocumentChunk.document_id == document_id)
    if statuses is not None:
        stmt = stmt.where(DocumentChunk.processing_status.in_(list(statuses)))
    stmt = stmt.order_by(DocumentChunk.chunk_index, DocumentChunk.id)
    return list(session.scalars(stmt))


def chunk_ids(
    session: Session,
    job_id: int,
    statuses: Iterable[ChunkStatus] = (ChunkStatus.PENDING,),
) -> list[int]:
    stmt = (
        select(DocumentChunk.id)
        .where(
            DocumentChunk.processing_job_id == job_id,
            DocumentChunk.processing_status.in_(list(statuses)),
        )
        .order_by(DocumentChunk.chunk_index)
    )
    return list(session.scalars(stmt))


def count_chunks(session: Session, job_id: int) -> int:
    stmt = select(func.count(DocumentChunk.id)).where(DocumentChunk.processing_job_id == job_id)
    return session.scalar(stmt) or 0


# ---------------------------------------------------------------------------
# Processor operations
# ---------------------------------------------------------------------------


def claim_chunk(session: Session, chunk_id: int, *, stale_before: datetime) -> bool:
    """
    Move a chunk to `processing` and count the attempt.

    Claimable: `pending`, or `processing` with `updated_at` older than
    `stale_before` (its worker is presumed dead). Returns False when another
    worker holds a fresh claim or the chunk is already terminal.
    """
    now = utcnow()
    result = session.execute(
        update(DocumentChunk)
        .where(
            DocumentChunk.id == chunk_id,
            or_(
                DocumentChunk.processing_status == ChunkStatus.PENDING,
                and_(
                    DocumentChunk.processing_status == ChunkStatus.PROCESSING,
                    DocumentChunk.updated_at < stale_before,
                ),
            ),
        )
        .values(
            processing_status=ChunkStatus.PROCESSING,
            processing_attempts=DocumentChunk.processing_attempts + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def finish_chunk(
    session: Session,
    chunk_id: int,
    target: ChunkStatus,
    *,
    content: str | None = None,
    embedding: list[float] | None = None,
    extraction_method: str | None = None,
    extraction_confidence: float | None = None,
    error_log: dict | None = None,
    metadata: dict | None = None,
) -> bool:
    """
    Write the outcome of one processing attempt: `processing → completed`
    or `processing → failed`. A replayed finish for a chunk that is already
    terminal changes nothing and returns False.
    """
    if target not in (ChunkStatus.COMPLETED, ChunkStatus.FAILED):
        raise ValueError(f"finish_chunk target must be completed or failed, got {target}")

    now = utcnow()
    values: dict = {
        "processing_status": target,
        "content": content,
        "extraction_method": extraction_method,
        "extraction_confidence": extraction_confidence,
        "error_log": error_log,
        "processed_at": now,
        "updated_at": now,
    }
    if embedding is not None:
        values["embedding"] = embedding
    if metadata is not None:
        values["metadata_"] = metadata

    sources = [s for s in sources_for(CHUNK_TRANSITIONS, target) if s == ChunkStatus.PROCESSING]
    result = session.execute(
        update(DocumentChunk)
        .where(DocumentChunk.id == chunk_id, DocumentChunk.processing_status.in_(sources))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def set_embedding(session: Session, chunk_id: int, embedding: list[float]) -> bool:
    result = session.execute(
        update(DocumentChunk)
        .where(
            DocumentChunk.id == chunk_id,
            DocumentChunk.processing_status == ChunkStatus.COMPLETED,
        )
        .values(embedding=embedding, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# ---------------------------------------------------------------------------
# Orchestrator operations
# ---------------------------------------------------------------------------


def reset_failed_chunks(session: Session, job_id: int) -> list[int]:
    """
    `failed → pending` for every failed chunk of a job (explicit retry).
    Returns the ids that were reset, in `chunk_index` order.
    """
    sources = sources_for(CHUNK_RETRY_TRANSITIONS, ChunkStatus.PENDING)
    ids = list(
        session.scalars(
            select(DocumentChunk.id)
            .where(
                DocumentChunk.processing_job_id == job_id,
                DocumentChunk.processing_status.in_(sources),
            )
            .order_by(DocumentChunk.chunk_index)
            .with_for_update()
        )
    )
    if not ids:
        return []
    session.execute(
        update(DocumentChunk)
        .where(DocumentChunk.id.in_(ids), DocumentChunk.processing_status.in_(sources))
        .values(
            processing_status=ChunkStatus.PENDING,
            error_log=None,
            processed_at=None,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return ids


def skip_pending_chunks(session: Session, job_id: int) -> int:
    result = session.execute(
        update(DocumentChunk)
        .where(
            DocumentChunk.processing_job_id == job_id,
            DocumentChunk.processing_status == ChunkStatus.PENDING,
        )
        .values(processing_status=ChunkStatus.SKIPPED, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def delete_chunks_for_documents(session: Session, document_ids: Sequence[int]) -> int:
    if not document_ids:
        return 0
    result = session.execute(
        delete(DocumentChunk)
        .where(DocumentChunk.document_id.in_(list(document_ids)))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def delete_chunks_for_jobs(session: Session, job_ids: Sequence[int]) -> int:
    if not job_ids:
        return 0
    result = session.execute(
        delete(DocumentChunk)
        .where(DocumentChunk.processing_job_id.in_(list(job_ids)))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


# ---------------------------------------------------------------------------
# Read-side aggregates
# ---------------------------------------------------------------------------


def chunk_stats(session: Session, job_id: int) -> ChunkStats:
    rows = session.execute(
        select(DocumentChunk.processing_status, func.count(DocumentChunk.id))
        .where(DocumentChunk.processing_job_id == job_id)
        .group_by(DocumentChunk.processing_status)
    ).all()
    counts = {status: count for status, count in rows}

    totals = session.execute(
        select(
            func.coalesce(func.sum(func.length(DocumentChunk.content)), 0),
            func.avg(DocumentChunk.extraction_confidence),
        ).where(
            DocumentChunk.processing_job_id == job_id,
            DocumentChunk.processing_status == ChunkStatus.COMPLETED,
        )
    ).one()

    average = float(totals[1]) if totals[1] is not None else None
    return ChunkStats(
        total=sum(counts.values()),
        pending=counts.get(ChunkStatus.PENDING, 0),
        processing=counts.get(ChunkStatus.PROCESSING, 0),
        completed=counts.get(ChunkStatus.COMPLETED, 0),
        failed=counts.get(ChunkStatus.FAILED, 0),
        skipped=counts.get(ChunkStatus.SKIPPED, 0),
        total_characters=int(totals[0] or 0),
        average_confidence=round(average, 4) if average is not None else None,
    )


def chunks_missing_embedding(
    session: Session,
    *,
    job_id: int | None = None,
    limit: int = 100,
) -> list[DocumentChunk]:
    stmt = select(DocumentChunk).where(
        DocumentChunk.processing_status == ChunkStatus.COMPLETED,
        DocumentChunk.embedding.is_(None),
        DocumentChunk.content.is_not(None),
    )
    if job_id is not None:
        stmt = stmt.where(DocumentChunk.processing_job_id == job_id)
    stmt = stmt.order_by(DocumentChunk.document_id, DocumentChunk.chunk_index).limit(limit)
    return list(session.scalars(stmt))



@dataclass
class CaseChunkStats:
    """Chunk totals across every document of a case."""

    case_id: str
    total_documents: int
    chunked_documents: int
    total_chunks: int
    completed_chunks: int
    failed_chunks: int
    total_characters: int
    average_confidence: float | None

    @property
    def completion_percentage(self) -> float:
        if not self.total_chunks:
            return 0.0
        return round(self.completed_chunks / self.total_chunks * 100, 2)


def case_chunk_stats(session: Session, case_id: str) -> CaseChunkStats:
    total_documents = session.scalar(
        select(func.count(Document.id)).where(Document.case_id == case_id)
    )
    completed = DocumentChunk.processing_status == ChunkStatus.COMPLETED
    row = session.execute(
        select(
            func.count(func.distinct(DocumentChunk.document_id)),
            func.count(DocumentChunk.id),
            func.count(DocumentChunk.id).filter(completed),
            func.count(DocumentChunk.id).filter(DocumentChunk.processing_status == ChunkStatus.FAILED),
            func.coalesce(func.sum(func.length(DocumentChunk.content)).filter(completed), 0),
            func.avg(DocumentChunk.extraction_confidence).filter(completed),
        )
        .select_from(DocumentChunk)
        .join(Document, Document.id == DocumentChunk.document_id)
        .where(Document.case_id == case_id)
    ).one()

    average = float(row[5]) if row[5] is not None else None
    return CaseChunkStats(
        case_id=case_id,
        total_documents=int(total_documents or 0),
        chunked_documents=int(row[0] or 0),
        total_chunks=int(row[1] or 0),
        completed_chunks=int(row[2] or 0),
        failed_chunks=int(row[3] or 0),
        total_characters=int(row[4] or 0),
        average_confidence=round(average, 4) if average is not None else None,
    )
