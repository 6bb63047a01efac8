# =============================================================================
# Database Package
# =============================================================================
# Sync SQLAlchemy engine, ORM models and the store modules that own every
# status write:
#   - engine.py: engine, session factory, schema creation
#   - models.py: Document, ProcessingJob, DocumentChunk, BatchSession, ...
#   - job_store.py / chunk_store.py / batch_store.py: compare-and-set
#     transitions and SQL-side counter updates
# =============================================================================
