# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
#   - processing.py: chunking jobs, chunk listings, retry/cancel, cleanup
#   - batch.py: batch session lifecycle and progress
#   - deps.py: pipeline dependency (overridden in tests)
# =============================================================================
