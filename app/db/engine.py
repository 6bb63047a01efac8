# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# DESIGN DECISION: One synchronous engine (psycopg2) for every process.
# Celery workers, the FastAPI routers (sync `def` handlers run in a thread
# pool) and the CLI all share the same session factory.
#
# SESSION LIFECYCLE:
# Pipeline components receive the *factory*, not a session, and open one
# short transaction per unit of work:
#
#     with session_factory.begin() as session:
#         ...  # commit on exit, rollback on exception
#
# Each chunk claim, each chunk finish + counter increment, and each batch
# checkpoint is its own transaction. No transaction spans an extraction or
# embedding call.
# =============================================================================

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.config import settings

# ---------------------------------------------------------------------------
# Engine + Session Factory (Lazy Initialization)
# ---------------------------------------------------------------------------
# Created on first use so importing the package never opens a connection
# or requires psycopg2 (the test suite swaps in SQLite).
#
# - pool_size=5 / max_overflow=10: chunk tasks and batch threads each hold a
#   connection only for the duration of one short transaction.
# - expire_on_commit=False: ORM rows returned from a transaction stay
#   readable after it commits.
# ---------------------------------------------------------------------------

_sync_engine: Engine | None = None
_sync_session_factory: sessionmaker[Session] | None = None


def _get_sync_engine() -> Engine:
    """Lazily create and cache the sync SQLAlchemy engine."""
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = create_engine(
            settings.database_url_sync,
            echo=settings.debug,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
        )
    return _sync_engine


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Build a session factory with the pipeline's session options."""
    return sessionmaker(bind=engine, class_=Session, expire_on_commit=False)


def get_session_factory() -> sessionmaker[Session]:
    """Lazily create and cache the process-wide session factory."""
    global _sync_session_factory
    if _sync_session_factory is None:
        _sync_session_factory = make_session_factory(_get_sync_engine())
    return _sync_session_factory


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """
    Context manager that provides a sync database session.

    Usage:
        with get_sync_session() as session:
            job = session.get(ProcessingJob, job_id)
            # Auto-commits on exit, auto-rollbacks on exception
    """
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_schema(engine: Engine | None = None) -> None:
    """Create all tables (local development and tests; production uses migrations)."""
    from app.db.models import Base

    Base.metadata.create_all(engine or _get_sync_engine())
