# =============================================================================
# Processing API — Chunking Jobs, Retry/Cancel, Stuck-Job Cleanup
# =============================================================================
#
# ENDPOINTS:
#   POST /documents/{document_id}/chunking     — request a chunking job
#   POST /cases/{case_id}/reprocess            — re-chunk every case document
#   GET  /cases/{case_id}/processing-jobs      — jobs of a case
#   GET  /cases/{case_id}/stats                — document + chunk totals
#   GET  /processing-jobs/cleanup              — stuck jobs (dry run)
#   POST /processing-jobs/cleanup              — mark-failed or delete
#   GET  /processing-jobs/{job_id}             — progress + failed chunks
#   GET  /processing-jobs/{job_id}/chunks      — chunk listing
#   POST /processing-jobs/{job_id}/retry       — retry failed chunks only
#   POST /processing-jobs/{job_id}/cancel      — cancel a job
#
# DESIGN DECISION: 202 Accepted for submissions. The job row is durable
# when the response is sent; the work itself happens on Celery workers.
#
# Handlers are plain `def`: the pipeline uses the sync engine, so FastAPI
# runs them in its thread pool. Domain errors are mapped to HTTP statuses
# by the exception handlers in app/main.py.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Body, Depends, Query

from app.api.deps import get_pipeline
from app.db.models import ChunkStatus, ChunkType
from app.models.requests import ChunkingRequest, ReprocessRequest
from app.models.responses import (
    ChunkResponse,
    CaseStatsResponse,
    ChunkStatsResponse,
    CleanupResponse,
    JobProgressResponse,
    JobResponse,
    ReprocessResponse,
    RetryResponse,
)
from app.pipeline.factory import Pipeline
from app.pipeline.reaper import CleanupMode, CleanupReport
from app.services.chunking import ChunkingStrategy

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Processing"])


# ---------------------------------------------------------------------------
# Chunking jobs
# ---------------------------------------------------------------------------


@router.post(
    "/documents/{document_id}/chunking",
    response_model=JobResponse,
    status_code=202,
    summary="Request chunked processing of a document",
    description=(
        "Records a pending chunking job and dispatches it. If the document "
        "already has a pending or running chunking job, that job is returned "
        "and nothing new is dispatched."
    ),
)
def request_chunking(
    document_id: int,
    request: ChunkingRequest | None = Body(default=None),
    pipeline: Pipeline = Depends(get_pipeline),
) -> JobResponse:
    request = request or ChunkingRequest()
    strategy = None
    if request.strategy is not None:
        strategy = ChunkingStrategy(
            ChunkType(request.strategy.type),
            chunk_size=request.strategy.chunk_size,
            overlap=request.strategy.overlap,
        )
    job = pipeline.orchestrator.request_chunking(
        document_id,
        strategy=strategy,
        generate_embedding=request.generate_embedding,
        failure_tolerance=request.failure_tolerance,
    )
    return JobResponse.model_validate(job)


@router.post(
    "/cases/{case_id}/reprocess",
    response_model=ReprocessResponse,
    status_code=202,
    summary="Re-chunk every document of a case from scratch",
)
def reprocess_case(
    case_id: str,
    request: ReprocessRequest | None = Body(default=None),
    pipeline: Pipeline = Depends(get_pipeline),
) -> ReprocessResponse:
    request = request or ReprocessRequest()
    result = pipeline.orchestrator.reprocess_case(
        case_id, generate_embedding=request.generate_embedding
    )
    return ReprocessResponse(
        case_id=result.case_id,
        job_ids=result.job_ids,
        cancelled_job_ids=result.cancelled_job_ids,
        deleted_chunks=result.deleted_chunks,
    )


@router.get(
    "/cases/{case_id}/processing-jobs",
    response_model=list[JobResponse],
    summary="List the processing jobs of a case",
)
def list_case_jobs(
    case_id: str,
    active_only: bool = Query(default=False, description="Only pending/running jobs"),
    pipeline: Pipeline = Depends(get_pipeline),
) -> list[JobResponse]:
    jobs = pipeline.orchestrator.list_jobs(case_id, active_only=active_only)
    return [JobResponse.model_validate(job) for job in jobs]


@router.get(
    "/cases/{case_id}/stats",
    response_model=CaseStatsResponse,
    summary="Document and chunk totals for a case",
)
def get_case_stats(
    case_id: str,
    pipeline: Pipeline = Depends(get_pipeline),
) -> CaseStatsResponse:
    return CaseStatsResponse.model_validate(pipeline.orchestrator.get_case_stats(case_id))


# ---------------------------------------------------------------------------
# Stuck-job cleanup
# ---------------------------------------------------------------------------
# Declared before /processing-jobs/{job_id} so "cleanup" is not read as an id.


def _cleanup_response(report: CleanupReport) -> CleanupResponse:
    return CleanupResponse(
        threshold_hours=report.threshold_hours,
        cutoff=report.cutoff,
        dry_run=report.dry_run,
        mode=report.mode.value if report.mode else None,
        jobs=[JobResponse.model_validate(job) for job in report.jobs],
        deleted_chunks=report.deleted_chunks,
    )


@router.get(
    "/processing-jobs/cleanup",
    response_model=CleanupResponse,
    summary="List stuck jobs without changing anything",
    description=(
        "A job is stuck when it is pending or running, has completed no "
        "units, and was created more than `threshold` hours ago."
    ),
)
def find_stuck_jobs(
    threshold: int = Query(default=2, description="Hours without progress (1-24)"),
    pipeline: Pipeline = Depends(get_pipeline),
) -> CleanupResponse:
    return _cleanup_response(pipeline.reaper.cleanup(threshold, dry_run=True))


@router.post(
    "/processing-jobs/cleanup",
    response_model=CleanupResponse,
    summary="Mark stuck jobs failed, or delete them with their chunks",
)
def cleanup_stuck_jobs(
    threshold: int = Query(default=2, description="Hours without progress (1-24)"),
    action: CleanupMode = Query(default=CleanupMode.MARK_FAILED),
    pipeline: Pipeline = Depends(get_pipeline),
) -> CleanupResponse:
    report = pipeline.reaper.cleanup(threshold, action)
    logger.info("Cleanup via API: %s %d jobs (threshold %dh)", action.value, len(report.jobs), threshold)
    return _cleanup_response(report)


# ---------------------------------------------------------------------------
# Single job
# ---------------------------------------------------------------------------


@router.get(
    "/processing-jobs/{job_id}",
    response_model=JobProgressResponse,
    summary="Job progress with chunk statistics and failed chunks",
)
def get_job_progress(
    job_id: int,
    pipeline: Pipeline = Depends(get_pipeline),
) -> JobProgressResponse:
    progress = pipeline.orchestrator.get_progress(job_id)
    return JobProgressResponse(
        job=JobResponse.model_validate(progress.job),
        chunks=ChunkStatsResponse.model_validate(progress.stats),
        failed_chunks=[ChunkResponse.from_chunk(chunk) for chunk in progress.failed_chunks],
    )


@router.get(
    "/processing-jobs/{job_id}/chunks",
    response_model=list[ChunkResponse],
    summary="List a job's chunks in index order",
)
def list_job_chunks(
    job_id: int,
    status: ChunkStatus | None = Query(default=None, description="Filter by processing status"),
    pipeline: Pipeline = Depends(get_pipeline),
) -> list[ChunkResponse]:
    chunks = pipeline.orchestrator.list_chunks(job_id, status=status)
    return [ChunkResponse.from_chunk(chunk) for chunk in chunks]


@router.post(
    "/processing-jobs/{job_id}/retry",
    response_model=RetryResponse,
    status_code=202,
    summary="Re-dispatch exactly the job's failed chunks",
)
def retry_failed_chunks(
    job_id: int,
    pipeline: Pipeline = Depends(get_pipeline),
) -> RetryResponse:
    result = pipeline.orchestrator.retry_failed_chunks(job_id)
    return RetryResponse(
        job_id=result.job_id,
        reset_chunk_ids=result.reset_chunk_ids,
        dispatched=result.dispatched,
    )


@router.post(
    "/processing-jobs/{job_id}/cancel",
    response_model=JobResponse,
    summary="Cancel a pending or running job",
)
def cancel_job(
    job_id: int,
    pipeline: Pipeline = Depends(get_pipeline),
) -> JobResponse:
    return JobResponse.model_validate(pipeline.orchestrator.cancel_job(job_id))
