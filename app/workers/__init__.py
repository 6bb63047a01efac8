# =============================================================================
# Workers Package — Celery Background Tasks
# =============================================================================
#   - celery_app.py: Celery configuration, beat schedule, lifecycle signals
#   - tasks.py: one task per pipeline handler (start job, process chunk,
#     run batch session, embedding backfill, stuck-job cleanup)
#
# A job fans out into one task per chunk, so independent chunks run on
# as many workers as are available.
# =============================================================================
