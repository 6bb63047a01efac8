# =============================================================================
# Pipeline Errors
# =============================================================================
#
# These are raised only at the trigger boundary (API routers, CLI, the
# command methods of the orchestrator / batch manager). Inside the dispatch
# handlers nothing is raised across a job or document boundary: chunk
# errors become chunk state, job errors become `metadata.error` + `failed`,
# and per-document batch errors become a `batch_processing_errors` row.
#
# HTTP mapping (exception handlers in app/main.py):
#   *NotFoundError          → 404
#   InvalidTransitionError  → 409
#   InvalidThresholdError   → 400
# =============================================================================


class PipelineError(Exception):
    """Base class for errors raised by pipeline commands."""


class DocumentNotFoundError(PipelineError):
    def __init__(self, document_id: int):
        super().__init__(f"Document {document_id} not found")
        self.document_id = document_id


class JobNotFoundError(PipelineError):
    def __init__(self, job_id: int):
        super().__init__(f"Processing job {job_id} not found")
        self.job_id = job_id


class BatchSessionNotFoundError(PipelineError):
    def __init__(self, session_id: int):
        super().__init__(f"Batch session {session_id} not found")
        self.session_id = session_id


class InvalidTransitionError(PipelineError):
    """A command asked for a status change the transition table does not allow."""

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(f"Cannot move {entity} from '{current}' to '{target}'")
        self.entity = entity
        self.current = current
        self.target = target


class InvalidThresholdError(PipelineError, ValueError):
    def __init__(self, threshold_hours: int):
        super().__init__(
            f"Threshold must be between 1 and 24 hours, got {threshold_hours}"
        )
        self.threshold_hours = threshold_hours


class ExtractionError(PipelineError):
    """The extraction backend could not produce text for a locator."""
