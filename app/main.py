# =============================================================================
# FastAPI Application — Entry Point
# =============================================================================
#
# Trigger surface of the pipeline. Every route only records intent (a job,
# a batch session, a status change) and hands work to Celery; nothing here
# waits for extraction.
#
# Run:
#     uvicorn app.main:app --reload
#
# ERROR MAPPING (domain exceptions from app/pipeline/errors.py):
#   DocumentNotFoundError / JobNotFoundError / BatchSessionNotFoundError → 404
#   InvalidTransitionError                                               → 409
#   InvalidThresholdError and other ValueError                           → 400
# =============================================================================

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.api.batch import router as batch_router
from app.api.processing import router as processing_router
from app.config import settings
from app.db.engine import get_sync_session
from app.models.responses import HealthResponse
from app.pipeline.errors import (
    BatchSessionNotFoundError,
    DocumentNotFoundError,
    InvalidTransitionError,
    JobNotFoundError,
)

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.app_name,
        description=(
            "Chunked, resumable processing of legal case documents: chunking "
            "jobs, batch sessions with checkpoints, and stuck-job cleanup."
        ),
        version=settings.app_version,
    )

    # ----------------------------------------------------------------
    # Request logging
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "HTTP %s %s %d %.1fms",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - start) * 1000,
        )
        return response

    # ----------------------------------------------------------------
    # Domain errors → HTTP statuses
    # ----------------------------------------------------------------

    @app.exception_handler(DocumentNotFoundError)
    @app.exception_handler(JobNotFoundError)
    @app.exception_handler(BatchSessionNotFoundError)
    async def not_found_handler(request: Request, exc: Exception):
        return _error(status.HTTP_404_NOT_FOUND, exc)

    @app.exception_handler(InvalidTransitionError)
    async def conflict_handler(request: Request, exc: InvalidTransitionError):
        logger.info("Rejected transition on %s: %s", request.url.path, exc)
        return _error(status.HTTP_409_CONFLICT, exc)

    @app.exception_handler(ValueError)
    async def bad_request_handler(request: Request, exc: ValueError):
        return _error(status.HTTP_400_BAD_REQUEST, exc)

    # ----------------------------------------------------------------
    # Routes
    # ----------------------------------------------------------------

    app.include_router(processing_router)
    app.include_router(batch_router)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    def health() -> HealthResponse:
        try:
            with get_sync_session() as session:
                session.execute(text("SELECT 1"))
            database = "ok"
        except Exception as exc:
            logger.warning("Health check: database unavailable: %s", exc)
            database = str(exc)
        return HealthResponse(
            status="ok" if database == "ok" else "degraded",
            version=settings.app_version,
            service=settings.app_name,
            database=database,
        )

    return app


app = create_app()
