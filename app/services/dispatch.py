# =============================================================================
# Dispatch Contract — Fire Work at Handlers
# =============================================================================
#
# The orchestrator and batch manager hand units of work to a `Dispatcher`
# and return immediately. Delivery is AT-LEAST-ONCE with no ordering
# guarantee, so every handler re-reads row status before mutating anything.
#
# BACKENDS:
#   CeleryDispatcher  (default) — each unit becomes a Celery task message;
#                     workers run the handlers in app/workers/tasks.py.
#   InlineDispatcher  — each unit runs synchronously in the calling process.
#                     For local runs without Redis; handlers are bound after
#                     the pipeline is built (see app/pipeline/factory.py).
#
# Selected via `settings.dispatch_backend` in `get_dispatcher()`.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Protocol

from app.config import Settings, settings

logger = logging.getLogger(__name__)


class Dispatcher(Protocol):
    def dispatch_job(self, job_id: int) -> None: ...

    def dispatch_chunks(self, chunk_ids: Sequence[int], *, generate_embedding: bool = True) -> int: ...

    def dispatch_batch_session(self, session_id: int) -> None: ...

    def dispatch_embedding_backfill(self, job_id: int | None = None) -> None: ...


# ---------------------------------------------------------------------------
# Celery backend
# ---------------------------------------------------------------------------


class CeleryDispatcher:
    """Queues one Celery task per unit of work."""

    # Task modules are imported on first dispatch: app.workers.tasks imports
    # the pipeline factory, which imports this module.

    def dispatch_job(self, job_id: int) -> None:
        from app.workers.tasks import start_processing_job

        start_processing_job.delay(job_id)
        logger.info("[job=%s] Queued start_processing_job", job_id)

    def dispatch_chunks(self, chunk_ids: Sequence[int], *, generate_embedding: bool = True) -> int:
        from app.workers.tasks import process_chunk

        for chunk_id in chunk_ids:
            process_chunk.delay(chunk_id, generate_embedding)
        logger.info("Queued %d process_chunk tasks", len(chunk_ids))
        return len(chunk_ids)

    def dispatch_batch_session(self, session_id: int) -> None:
        from app.workers.tasks import run_batch_session

        run_batch_session.delay(session_id)
        logger.info("[session=%s] Queued run_batch_session", session_id)

    def dispatch_embedding_backfill(self, job_id: int | None = None) -> None:
        from app.workers.tasks import generate_embeddings

        generate_embeddings.delay(job_id)
        logger.info("[job=%s] Queued generate_embeddings", job_id)


# ---------------------------------------------------------------------------
# Inline backend
# ---------------------------------------------------------------------------


class InlineDispatcher:
    """Runs each unit of work immediately in the caller's thread."""

    def __init__(self) -> None:
        self._start_job: Callable[[int], object] | None = None
        self._handle_chunk: Callable[..., object] | None = None
        self._run_session: Callable[[int], object] | None = None
        self._backfill: Callable[[int | None], object] | None = None

    def bind(
        self,
        *,
        start_job: Callable[[int], object],
        handle_chunk: Callable[..., object],
        run_session: Callable[[int], object],
        backfill: Callable[[int | None], object],
    ) -> None:
        self._start_job = start_job
        self._handle_chunk = handle_chunk
        self._run_session = run_session
        self._backfill = backfill

    def _require(self, handler):
        if handler is None:
            raise RuntimeError("InlineDispatcher used before bind()")
        return handler

    def dispatch_job(self, job_id: int) -> None:
        self._require(self._start_job)(job_id)

    def dispatch_chunks(self, chunk_ids: Sequence[int], *, generate_embedding: bool = True) -> int:
        handler = self._require(self._handle_chunk)
        for chunk_id in chunk_ids:
            handler(chunk_id, generate_embedding=generate_embedding)
        return len(chunk_ids)

    def dispatch_batch_session(self, session_id: int) -> None:
        self._require(self._run_session)(session_id)

    def dispatch_embedding_backfill(self, job_id: int | None = None) -> None:
        self._require(self._backfill)(job_id)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def get_dispatcher(config: Settings | None = None) -> Dispatcher:
    config = config or settings
    backend = config.dispatch_backend.lower()
    if backend == "celery":
        return CeleryDispatcher()
    if backend == "inline":
        return InlineDispatcher()
    raise ValueError(f"Unknown dispatch backend: {config.dispatch_backend!r} (expected 'celery' or 'inline')")
