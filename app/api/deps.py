# =============================================================================
# API Dependencies
# =============================================================================
#
# Route handlers receive the pipeline through `Depends(get_pipeline)` instead
# of importing the process-wide instance, so tests swap in a pipeline built
# on SQLite with a fake extractor via `app.dependency_overrides`.
# =============================================================================

from app.pipeline.factory import Pipeline
from app.pipeline.factory import get_pipeline as _build_default_pipeline


def get_pipeline() -> Pipeline:
    """FastAPI dependency returning the process-wide pipeline."""
    return _build_default_pipeline()
