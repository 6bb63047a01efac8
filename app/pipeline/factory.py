# =============================================================================
# Pipeline Factory
# =============================================================================
#
# Builds the four pipeline components around one session factory, one
# dispatcher, one extractor and one embedding function:
#
#     pipeline = build_pipeline()              # from settings
#     pipeline.orchestrator.request_chunking(document_id)
#
# Every collaborator can be replaced by keyword (tests pass an SQLite
# session factory, a fake extractor and a recording dispatcher).
#
# An InlineDispatcher is bound to this pipeline's handlers here, so units
# of work run synchronously without a broker.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from functools import lru_cache

from sqlalchemy.orm import Session, sessionmaker

from app.config import Settings, settings
from app.db.engine import get_session_factory
from app.pipeline.batch_manager import BatchSessionManager, Enricher
from app.pipeline.chunk_processor import ChunkProcessor, EmbedFn
from app.pipeline.orchestrator import JobOrchestrator
from app.pipeline.reaper import StuckJobReaper
from app.services import embedder
from app.services.dispatch import Dispatcher, InlineDispatcher, get_dispatcher
from app.services.extractor import Extractor, get_extractor

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    orchestrator: JobOrchestrator
    batch_manager: BatchSessionManager
    reaper: StuckJobReaper
    processor: ChunkProcessor
    dispatcher: Dispatcher
    session_factory: sessionmaker[Session]
    config: Settings


def build_pipeline(
    config: Settings | None = None,
    *,
    session_factory: sessionmaker[Session] | None = None,
    dispatcher: Dispatcher | None = None,
    extractor: Extractor | None = None,
    embed: EmbedFn | None = embedder.embed_text,
    embed_many: Callable[[list[str]], list[list[float]]] | None = embedder.embed_batch,
    enrich: Enricher | None = None,
) -> Pipeline:
    config = config or settings
    session_factory = session_factory or get_session_factory()
    dispatcher = dispatcher or get_dispatcher(config)
    extractor = extractor or get_extractor(config)

    processor = ChunkProcessor(
        session_factory,
        extractor,
        embed,
        stale_after_seconds=config.chunk_stale_after_seconds,
        min_chunk_chars=config.min_chunk_chars,
        review_confidence_threshold=config.review_confidence_threshold,
    )
    orchestrator = JobOrchestrator(
        session_factory,
        dispatcher,
        processor,
        extractor,
        config,
        embed_many=embed_many,
    )
    batch_manager = BatchSessionManager(
        session_factory, dispatcher, extractor, config, enrich=enrich
    )
    reaper = StuckJobReaper(session_factory)

    if isinstance(dispatcher, InlineDispatcher):
        dispatcher.bind(
            start_job=orchestrator.start_job,
            handle_chunk=orchestrator.handle_chunk,
            run_session=batch_manager.run_session,
            backfill=orchestrator.generate_missing_embeddings,
        )

    logger.debug("Pipeline built (dispatcher=%s)", type(dispatcher).__name__)
    return Pipeline(
        orchestrator=orchestrator,
        batch_manager=batch_manager,
        reaper=reaper,
        processor=processor,
        dispatcher=dispatcher,
        session_factory=session_factory,
        config=config,
    )


@lru_cache
def get_pipeline() -> Pipeline:
    """Process-wide pipeline built from settings (workers, API, CLI)."""
    return build_pipeline()
