# =============================================================================
# Case File Processing Pipeline
# =============================================================================
# Asynchronous processing of legal case documents: documents are split into
# chunks, each chunk is extracted (and optionally embedded) by a Celery
# worker, and progress is tracked durably in PostgreSQL so work survives
# crashes, retries and duplicate deliveries.
#
# Package structure:
#   app/
#   ├── api/          → FastAPI route handlers (jobs, batch sessions, cleanup)
#   ├── db/           → Engine, ORM models and row-level store functions
#   ├── models/       → Pydantic V2 request/response schemas
#   ├── pipeline/     → Orchestrator, chunk processor, batch manager, reaper
#   ├── services/     → Chunking, extraction, embedding, dispatch, transitions
#   └── workers/      → Celery app, beat schedule and task wrappers
# =============================================================================
