# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# Celery is the dispatch facility of the pipeline. Every unit of work the
# orchestrator or batch manager hands to `CeleryDispatcher` becomes a task:
#
#   start_processing_job  — create chunks for a job, queue its chunks
#   process_chunk         — one chunk: extract → embed → finish + count
#   run_batch_session     — walk a batch session's internal batches
#   generate_embeddings   — backfill embeddings for completed chunks
#   cleanup_stuck_jobs    — reaper sweep (Celery beat)
#
# ARCHITECTURE:
# ┌──────────┐     ┌───────┐     ┌──────────────┐     ┌────────────┐
# │ FastAPI  │────▶│ Redis │────▶│ Celery Worker│────▶│ PostgreSQL │
# │ (trigger)│     │(broker)│    │ (handlers)    │    │ (state)    │
# └──────────┘     └───────┘     └──────────────┘     └────────────┘
#
# Delivery is at-least-once (acks_late + reject_on_worker_lost). Handlers
# check row status before every write, so a redelivered task is harmless.
# Progress lives in PostgreSQL, not in task results.
# =============================================================================

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun

from app.config import settings

logger = logging.getLogger(__name__)

celery_app = Celery(
    "app.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    # --- Serialization ---
    # JSON only; task arguments are row ids and flags.
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # --- Reliability ---
    # Ack after the handler returns; a crashed worker's task is redelivered.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # One task at a time per worker process: chunk extraction is long-running.
    worker_prefetch_multiplier=1,

    # --- Timeouts ---
    # A batch session walks many documents in one task, hence the longer
    # per-task override on run_batch_session (see tasks.py).
    task_soft_time_limit=300,
    task_time_limit=600,

    # --- Results ---
    result_expires=3600,

    # --- Timezone ---
    timezone="UTC",
    enable_utc=True,

    # --- Beat schedule (stuck-job reaper) ---
    beat_schedule={
        "cleanup-stuck-jobs": {
            "task": "cleanup_stuck_jobs",
            "schedule": settings.reaper_interval_seconds,
            "kwargs": {
                "threshold_hours": settings.reaper_threshold_hours,
                "mode": settings.reaper_mode,
            },
        },
    },

    # --- Task Discovery ---
    include=["app.workers.tasks"],
)


# ---------------------------------------------------------------------------
# Celery signals — task lifecycle logging
# ---------------------------------------------------------------------------


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info("Task start | task_id=%s task=%s args=%s", task_id, task.name, args)


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info("Task end | task_id=%s task=%s state=%s", task_id, task.name, state)


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error("Task failed | task_id=%s args=%s error=%s", task_id, args, exception)
