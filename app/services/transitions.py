# =============================================================================
# Status Transition Tables
# =============================================================================
#
# One explicit table per entity. Row stores turn a requested move into an
# atomic compare-and-set:
#
#     UPDATE processing_jobs SET status = :target
#     WHERE id = :id AND status IN (:sources_for(target))
#
# and report whether a row changed. A move that is not in the table is
# never written, whoever asks for it.
#
# Retry tables are separate: only the orchestrator's retry operations and
# the batch manager's retry-failed operation use them, which is the one way
# a finished chunk or job is ever reopened.
# =============================================================================

from __future__ import annotations

import enum
from collections.abc import Mapping

from app.db.models import BatchDocumentState, BatchSessionStatus, ChunkStatus, JobStatus
from app.pipeline.errors import InvalidTransitionError

TransitionTable = Mapping[enum.Enum, frozenset]

# ---------------------------------------------------------------------------
# ProcessingJob
# ---------------------------------------------------------------------------
JOB_TRANSITIONS: TransitionTable = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

JOB_RETRY_TRANSITIONS: TransitionTable = {
    JobStatus.RUNNING: frozenset({JobStatus.RUNNING}),
    JobStatus.COMPLETED: frozenset({JobStatus.RUNNING}),
    JobStatus.FAILED: frozenset({JobStatus.RUNNING}),
}

# ---------------------------------------------------------------------------
# DocumentChunk
# ---------------------------------------------------------------------------
# processing → processing is the stale re-claim of a chunk whose worker died.
CHUNK_TRANSITIONS: TransitionTable = {
    ChunkStatus.PENDING: frozenset({ChunkStatus.PROCESSING, ChunkStatus.SKIPPED}),
    ChunkStatus.PROCESSING: frozenset(
        {ChunkStatus.COMPLETED, ChunkStatus.FAILED, ChunkStatus.PROCESSING}
    ),
    ChunkStatus.COMPLETED: frozenset(),
    ChunkStatus.FAILED: frozenset(),
    ChunkStatus.SKIPPED: frozenset(),
}

CHUNK_RETRY_TRANSITIONS: TransitionTable = {
    ChunkStatus.FAILED: frozenset({ChunkStatus.PENDING}),
}

# ---------------------------------------------------------------------------
# BatchSession
# ---------------------------------------------------------------------------
BATCH_TRANSITIONS: TransitionTable = {
    BatchSessionStatus.CREATED: frozenset({BatchSessionStatus.RUNNING, BatchSessionStatus.CANCELLED}),
    BatchSessionStatus.RUNNING: frozenset(
        {
            BatchSessionStatus.PAUSED,
            BatchSessionStatus.COMPLETED,
            BatchSessionStatus.CANCELLED,
            BatchSessionStatus.FAILED,
        }
    ),
    BatchSessionStatus.PAUSED: frozenset({BatchSessionStatus.RUNNING, BatchSessionStatus.CANCELLED}),
    BatchSessionStatus.COMPLETED: frozenset(),
    BatchSessionStatus.CANCELLED: frozenset(),
    BatchSessionStatus.FAILED: frozenset(),
}

BATCH_RETRY_TRANSITIONS: TransitionTable = {
    BatchSessionStatus.COMPLETED: frozenset({BatchSessionStatus.RUNNING}),
    BatchSessionStatus.FAILED: frozenset({BatchSessionStatus.RUNNING}),
}

# ---------------------------------------------------------------------------
# BatchDocumentStatus
# ---------------------------------------------------------------------------
# processing → processing lets a resumed session re-claim a document whose
# previous run crashed mid-flight.
BATCH_DOCUMENT_TRANSITIONS: TransitionTable = {
    BatchDocumentState.PENDING: frozenset({BatchDocumentState.PROCESSING}),
    BatchDocumentState.PROCESSING: frozenset(
        {BatchDocumentState.PROCESSING, BatchDocumentState.COMPLETED, BatchDocumentState.FAILED}
    ),
    BatchDocumentState.COMPLETED: frozenset(),
    BatchDocumentState.FAILED: frozenset(),
}

BATCH_DOCUMENT_RETRY_TRANSITIONS: TransitionTable = {
    BatchDocumentState.FAILED: frozenset({BatchDocumentState.PENDING}),
}


def can_transition(table: TransitionTable, current: enum.Enum, target: enum.Enum) -> bool:
    return target in table.get(current, frozenset())


def sources_for(table: TransitionTable, target: enum.Enum) -> list[enum.Enum]:
    """All statuses from which `target` is reachable in one move."""
    return [source for source, targets in table.items() if target in targets]


def ensure_transition(
    table: TransitionTable,
    current: enum.Enum,
    target: enum.Enum,
    entity: str,
) -> None:
    """Raise InvalidTransitionError if `current → target` is not in `table`."""
    if not can_transition(table, current, target):
        raise InvalidTransitionError(entity, current.value, target.value)


def is_terminal(table: TransitionTable, status: enum.Enum) -> bool:
    # Self-loops (stale re-claim) do not make a status non-terminal.
    return not (table.get(status, frozenset()) - {status})
