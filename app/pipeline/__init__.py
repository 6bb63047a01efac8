# =============================================================================
# Pipeline Package — Job Orchestration
# =============================================================================
#   - orchestrator.py: chunking jobs (request, start, finalize, retry, cancel)
#   - chunk_processor.py: one chunk end to end (claim → extract → finish)
#   - batch_manager.py: batch sessions (pause/resume/checkpoint)
#   - reaper.py: stuck-job detection and cleanup
#   - factory.py: wires the components around one session factory
#   - errors.py: domain exceptions mapped to HTTP statuses in app/main.py
# =============================================================================
