# =============================================================================
# Services Package — Building Blocks
# =============================================================================
# Stateless helpers used by app/pipeline/:
#   - transitions.py: allowed status transitions per entity
#   - chunking.py: strategy selection and chunk planning
#   - parser.py: PDF parsing with Docling (page-aware, tables as markdown)
#   - extractor.py: text extraction per file kind (Extractor protocol)
#   - extraction_outcome.py: extraction result → chunk status + error log
#   - embedder.py: OpenAI embedding generation
#   - dispatch.py: Celery / inline dispatch of units of work
# =============================================================================
