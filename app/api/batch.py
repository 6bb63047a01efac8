# =============================================================================
# Batch Session API — Checkpointed Multi-Document Processing
# =============================================================================
#
# ENDPOINTS:
#   POST /batch-sessions                          — create (and start) a session
#   GET  /batch-sessions/{session_id}             — progress, per-status counts, rate
#   POST /batch-sessions/{session_id}/pause       — stop after the current batch
#   POST /batch-sessions/{session_id}/resume      — continue a paused (or failed) session
#   POST /batch-sessions/{session_id}/cancel      — cancel
#   POST /batch-sessions/{session_id}/retry-failed — re-queue failed documents
#   GET  /batch-sessions/{session_id}/errors      — per-document error log
#   GET  /cases/{case_id}/batch-sessions          — sessions of a case
#
# Pause and cancel take effect between internal batches: documents already
# handed to the worker pool finish and are checkpointed.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from app.api.deps import get_pipeline
from app.models.requests import BatchSessionRequest
from app.models.responses import (
    BatchErrorResponse,
    BatchProgressResponse,
    BatchRetryResponse,
    BatchSessionResponse,
)
from app.pipeline.factory import Pipeline

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Batch Sessions"])


@router.post(
    "/batch-sessions",
    response_model=BatchSessionResponse,
    status_code=202,
    summary="Create a batch session over a list of documents or a whole case",
)
def create_batch_session(
    request: BatchSessionRequest,
    pipeline: Pipeline = Depends(get_pipeline),
) -> BatchSessionResponse:
    manager = pipeline.batch_manager
    batch = manager.create_session(
        request.document_ids,
        case_id=request.case_id,
        options={"extract_entities": request.extract_entities},
        batch_size=request.batch_size,
    )
    if request.auto_start:
        batch = manager.start_session(batch.id)
    return BatchSessionResponse.model_validate(batch)


@router.get(
    "/batch-sessions/{session_id}",
    response_model=BatchProgressResponse,
    summary="Batch session progress",
)
def get_batch_session(
    session_id: int,
    pipeline: Pipeline = Depends(get_pipeline),
) -> BatchProgressResponse:
    progress = pipeline.batch_manager.get_progress(session_id)
    return BatchProgressResponse(
        session=BatchSessionResponse.model_validate(progress.session),
        counts=progress.counts,
        remaining=progress.remaining,
        avg_processing_time_ms=progress.avg_processing_time_ms,
        documents_per_minute=progress.documents_per_minute,
        estimated_seconds_remaining=progress.estimated_seconds_remaining,
    )


@router.post("/batch-sessions/{session_id}/pause", response_model=BatchSessionResponse)
def pause_batch_session(
    session_id: int,
    pipeline: Pipeline = Depends(get_pipeline),
) -> BatchSessionResponse:
    return BatchSessionResponse.model_validate(pipeline.batch_manager.pause_session(session_id))


@router.post("/batch-sessions/{session_id}/resume", response_model=BatchSessionResponse, status_code=202)
def resume_batch_session(
    session_id: int,
    pipeline: Pipeline = Depends(get_pipeline),
) -> BatchSessionResponse:
    return BatchSessionResponse.model_validate(pipeline.batch_manager.resume_session(session_id))


@router.post("/batch-sessions/{session_id}/cancel", response_model=BatchSessionResponse)
def cancel_batch_session(
    session_id: int,
    pipeline: Pipeline = Depends(get_pipeline),
) -> BatchSessionResponse:
    return BatchSessionResponse.model_validate(pipeline.batch_manager.cancel_session(session_id))


@router.post(
    "/batch-sessions/{session_id}/retry-failed",
    response_model=BatchRetryResponse,
    status_code=202,
    summary="Re-queue failed documents that are below the retry limit",
)
def retry_failed_documents(
    session_id: int,
    pipeline: Pipeline = Depends(get_pipeline),
) -> BatchRetryResponse:
    reset_ids = pipeline.batch_manager.retry_failed_documents(session_id)
    return BatchRetryResponse(session_id=session_id, reset_document_ids=reset_ids)


@router.get("/batch-sessions/{session_id}/errors", response_model=list[BatchErrorResponse])
def list_batch_errors(
    session_id: int,
    pipeline: Pipeline = Depends(get_pipeline),
) -> list[BatchErrorResponse]:
    errors = pipeline.batch_manager.list_errors(session_id)
    return [BatchErrorResponse.model_validate(error) for error in errors]


@router.get("/cases/{case_id}/batch-sessions", response_model=list[BatchSessionResponse])
def list_case_batch_sessions(
    case_id: str,
    pipeline: Pipeline = Depends(get_pipeline),
) -> list[BatchSessionResponse]:
    sessions = pipeline.batch_manager.list_sessions(case_id)
    return [BatchSessionResponse.model_validate(batch) for batch in sessions]
