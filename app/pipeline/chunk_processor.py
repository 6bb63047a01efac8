# =============================================================================
# Chunk Processor — One Chunk, One Attempt
# =============================================================================
#
# Handles a single `process_chunk` delivery:
#
#   1. Read chunk, job, document. Nothing to do if the chunk is gone, the
#      chunk is already terminal (replayed delivery) or the job is no longer
#      active (cancelled / reaped).
#   2. TX: claim the chunk (`pending → processing`, attempts + 1) and move
#      the job `pending → running` on its first unit.
#   3. Extract the chunk's slice (no transaction open).
#   4. Derive the outcome (app/services/extraction_outcome.py).
#   5. Optionally embed the cleaned text (no transaction open).
#   6. TX: compare-and-set `processing → completed|failed` and, only if that
#      write applied, atomically increment the job counter.
#
# Extraction and embedding errors never escape `process()`; they become a
# `failed` chunk with a coded `error_log`. Storage errors (database down)
# do escape so the worker can redeliver the task; every step above is safe
# to repeat.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.orm import Session, sessionmaker

from app.db import chunk_store, job_store
from app.db.models import ChunkStatus, ChunkType, Document, JobStatus, utcnow
from app.services.extraction_outcome import (
    ChunkOutcome,
    build_error_log,
    derive_chunk_outcome,
)
from app.services.extractor import ExtractionResult, Extractor

logger = logging.getLogger(__name__)

EmbedFn = Callable[[str], list[float]]


@dataclass
class ChunkProcessingResult:
    chunk_id: int
    job_id: int | None = None
    status: ChunkStatus | None = None
    # True only for the delivery whose finish write changed the chunk row
    applied: bool = False
    skipped_reason: str | None = None
    error: dict | None = None


@dataclass
class _ChunkSnapshot:
    chunk_id: int
    job_id: int
    chunk_type: ChunkType
    metadata: dict
    locator: str | None


class ChunkProcessor:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        extractor: Extractor,
        embed: EmbedFn | None = None,
        *,
        stale_after_seconds: int = 600,
        min_chunk_chars: int = 20,
        review_confidence_threshold: float = 0.6,
    ):
        self.session_factory = session_factory
        self.extractor = extractor
        self.embed = embed
        self.stale_after_seconds = stale_after_seconds
        self.min_chunk_chars = min_chunk_chars
        self.review_confidence_threshold = review_confidence_threshold

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    def process(self, chunk_id: int, *, generate_embedding: bool = True) -> ChunkProcessingResult:
        snapshot, skipped = self._claim(chunk_id)
        if snapshot is None:
            return skipped

        outcome = self._run_extraction(snapshot)

        if outcome.status == ChunkStatus.COMPLETED and generate_embedding and self.embed:
            embedding, outcome = self._run_embedding(snapshot, outcome)
        else:
            embedding = None

        with self.session_factory.begin() as session:
            applied = chunk_store.finish_chunk(
                session,
                snapshot.chunk_id,
                outcome.status,
                content=outcome.content,
                embedding=embedding,
                extraction_method=outcome.extraction_method,
                extraction_confidence=outcome.extraction_confidence,
                error_log=outcome.error_log,
                metadata=outcome.metadata,
            )
            if applied:
                job_store.increment_units(
                    session,
                    snapshot.job_id,
                    completed=outcome.status == ChunkStatus.COMPLETED,
                )

        if not applied:
            logger.warning(
                "[job=%s] Chunk %s finished elsewhere; result of this attempt discarded",
                snapshot.job_id,
                chunk_id,
            )
        elif outcome.status == ChunkStatus.FAILED:
            logger.warning(
                "[job=%s] Chunk %s failed: %s",
                snapshot.job_id,
                chunk_id,
                (outcome.error_log or {}).get("code"),
            )
        else:
            logger.info("[job=%s] Chunk %s completed", snapshot.job_id, chunk_id)

        return ChunkProcessingResult(
            chunk_id=chunk_id,
            job_id=snapshot.job_id,
            status=outcome.status,
            applied=applied,
            error=outcome.error_log,
        )

    # -----------------------------------------------------------------------
    # Steps
    # -----------------------------------------------------------------------

    def _claim(self, chunk_id: int) -> tuple[_ChunkSnapshot | None, ChunkProcessingResult | None]:
        stale_before = utcnow() - timedelta(seconds=self.stale_after_seconds)

        with self.session_factory.begin() as session:
            chunk = chunk_store.get_chunk(session, chunk_id)
            if chunk is None:
                logger.warning("Chunk %s not found; delivery ignored", chunk_id)
                return None, ChunkProcessingResult(chunk_id, skipped_reason="chunk not found")

            job_id = chunk.processing_job_id
            job = job_store.get_job(session, job_id) if job_id is not None else None
            if job is None or job.is_terminal:
                state = job.status.value if job else "missing"
                logger.info("[job=%s] Job %s; chunk %s not processed", job_id, state, chunk_id)
                return None, ChunkProcessingResult(
                    chunk_id, job_id, chunk.processing_status, skipped_reason=f"job {state}"
                )

            if not chunk_store.claim_chunk(session, chunk_id, stale_before=stale_before):
                logger.info(
                    "[job=%s] Chunk %s is %s; not claimed",
                    job_id,
                    chunk_id,
                    chunk.processing_status.value,
                )
                return None, ChunkProcessingResult(
                    chunk_id,
                    job_id,
                    chunk.processing_status,
                    skipped_reason=f"chunk {chunk.processing_status.value}",
                )

            if job.status == JobStatus.PENDING:
                job_store.transition_job(session, job_id, JobStatus.RUNNING)

            document = session.get(Document, chunk.document_id)
            snapshot = _ChunkSnapshot(
                chunk_id=chunk.id,
                job_id=job_id,
                chunk_type=chunk.chunk_type,
                metadata=dict(chunk.metadata_ or {}),
                locator=document.storage_path if document else None,
            )
        return snapshot, None

    def _run_extraction(self, snapshot: _ChunkSnapshot) -> ChunkOutcome:
        if snapshot.locator is None:
            error = build_error_log(
                "DOCUMENT_NOT_FOUND", "Owning document no longer exists.", None
            )
            return ChunkOutcome(
                status=ChunkStatus.FAILED,
                content=None,
                extraction_method="none",
                extraction_confidence=0.0,
                metadata={**snapshot.metadata, "extractionError": error},
                error_log=error,
            )

        try:
            result = self._extract(snapshot)
        except Exception as exc:
            logger.exception("[job=%s] Extraction raised for chunk %s", snapshot.job_id, snapshot.chunk_id)
            result = ExtractionResult(text="", method="unknown", confidence=0.0, error=str(exc))

        return derive_chunk_outcome(
            snapshot.metadata,
            result,
            min_chars=self.min_chunk_chars,
            review_confidence_threshold=self.review_confidence_threshold,
        )

    def _extract(self, snapshot: _ChunkSnapshot) -> ExtractionResult:
        metadata = snapshot.metadata
        if snapshot.chunk_type == ChunkType.PAGE:
            return self.extractor.extract(snapshot.locator, page_number=metadata.get("pageNumber"))

        # sliding-window / section: slice the document text by character range
        result = self.extractor.extract(snapshot.locator)
        if result.error:
            return result
        start = int(metadata.get("startChar", 0))
        end = int(metadata.get("endChar", len(result.text)))
        result.text = result.text[start:end]
        return result

    def _run_embedding(
        self, snapshot: _ChunkSnapshot, outcome: ChunkOutcome
    ) -> tuple[list[float] | None, ChunkOutcome]:
        try:
            return self.embed(outcome.content), outcome
        except Exception as exc:
            logger.exception("[job=%s] Embedding failed for chunk %s", snapshot.job_id, snapshot.chunk_id)
            error = build_error_log("EMBEDDING_FAILED", str(exc), outcome.extraction_method)
            failed = ChunkOutcome(
                status=ChunkStatus.FAILED,
                content=outcome.content,
                extraction_method=outcome.extraction_method,
                extraction_confidence=outcome.extraction_confidence,
                metadata={**outcome.metadata, "extractionError": error},
                error_log=error,
            )
            return None, failed
