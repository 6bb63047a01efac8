# =============================================================================
# Shared Test Fixtures
# =============================================================================
#
# Every test gets its own SQLite file database with the full schema, so the
# real stores (compare-and-set updates, SQL-side counters) are exercised
# without PostgreSQL. WAL mode lets batch-session worker threads and the
# test thread write to the same file.
#
# Collaborators that touch the outside world are replaced:
#   FakeExtractor      — in-memory documents, per-page failures on demand
#   RecordingDispatcher — records units of work; tests play the worker
#   fake_embed         — deterministic 4-dimension vectors
# =============================================================================

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass, field

import pytest
from sqlalchemy import create_engine, event

from app.config import Settings
from app.db.engine import create_schema, make_session_factory
from app.db.models import Document, DocumentStatus
from app.pipeline.errors import ExtractionError
from app.pipeline.factory import build_pipeline
from app.services.dispatch import InlineDispatcher
from app.services.extractor import METHOD_DIRECT_READ, ExtractionResult

PAGE_TEXT = "Page {n}: the witness confirmed the timeline of events on the record."


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


@dataclass
class FakeFile:
    text: str = ""
    page_count: int = 1
    size: int = 0


class FakeExtractor:
    """
    In-memory extraction backend.

    `fail_pages` holds (locator, page_number) pairs that return an error
    result; `missing` holds locators that raise ExtractionError.
    `on_extract` is called after every extraction (used to pause a batch
    session mid-run).
    """

    def __init__(self) -> None:
        self.files: dict[str, FakeFile] = {}
        self.fail_pages: set[tuple[str, int]] = set()
        self.missing: set[str] = set()
        self.calls: Counter = Counter()
        self.on_extract = None
        self._lock = threading.Lock()

    def add(self, locator: str, *, text: str = "", page_count: int = 1, size: int | None = None) -> None:
        self.files[locator] = FakeFile(text=text, page_count=page_count, size=size or len(text))

    def file_size(self, locator: str) -> int:
        return self._file(locator).size

    def page_count(self, locator: str) -> int | None:
        return self._file(locator).page_count

    def extract(self, locator: str, *, page_number: int | None = None) -> ExtractionResult:
        with self._lock:
            self.calls[locator] += 1
        fake = self._file(locator)
        if page_number is not None and (locator, page_number) in self.fail_pages:
            result = ExtractionResult(
                text="", method="docling-pdf", confidence=0.0, error=f"page {page_number} unreadable"
            )
        elif page_number is not None:
            result = ExtractionResult(
                text=PAGE_TEXT.format(n=page_number),
                method="docling-pdf",
                confidence=0.9,
                page_count=fake.page_count,
            )
        else:
            result = ExtractionResult(
                text=fake.text or PAGE_TEXT.format(n=1),
                method=METHOD_DIRECT_READ,
                confidence=1.0,
                page_count=fake.page_count,
            )
        if self.on_extract is not None:
            self.on_extract(locator)
        return result

    def _file(self, locator: str) -> FakeFile:
        if locator in self.missing or locator not in self.files:
            raise ExtractionError(f"File not found for locator {locator!r}")
        return self.files[locator]


@dataclass
class RecordingDispatcher:
    jobs: list[int] = field(default_factory=list)
    chunks: list[tuple[int, bool]] = field(default_factory=list)
    sessions: list[int] = field(default_factory=list)
    backfills: list[int | None] = field(default_factory=list)

    def dispatch_job(self, job_id: int) -> None:
        self.jobs.append(job_id)

    def dispatch_chunks(self, chunk_ids, *, generate_embedding: bool = True) -> int:
        self.chunks.extend((chunk_id, generate_embedding) for chunk_id in chunk_ids)
        return len(chunk_ids)

    def dispatch_batch_session(self, session_id: int) -> None:
        self.sessions.append(session_id)

    def dispatch_embedding_backfill(self, job_id: int | None = None) -> None:
        self.backfills.append(job_id)

    @property
    def chunk_ids(self) -> list[int]:
        return [chunk_id for chunk_id, _ in self.chunks]


def fake_embed(text: str) -> list[float]:
    return [float(len(text) % 7), 0.25, 0.5, 1.0]


def fake_embed_many(texts: list[str]) -> list[list[float]]:
    return [fake_embed(text) for text in texts]


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'pipeline.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        database_url_sync="sqlite://",
        dispatch_backend="inline",
        storage_dir=str(tmp_path / "files"),
        batch_size=2,
        batch_concurrency_limit=1,
        batch_max_retries=3,
        job_failure_tolerance=0.0,
    )


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def pipeline(test_settings, session_factory, dispatcher, extractor):
    """Pipeline whose units of work are recorded, not run."""
    return build_pipeline(
        test_settings,
        session_factory=session_factory,
        dispatcher=dispatcher,
        extractor=extractor,
        embed=fake_embed,
        embed_many=fake_embed_many,
    )


@pytest.fixture
def inline_pipeline(test_settings, session_factory, extractor):
    """Pipeline that runs every unit of work synchronously on dispatch."""
    return build_pipeline(
        test_settings,
        session_factory=session_factory,
        dispatcher=InlineDispatcher(),
        extractor=extractor,
        embed=fake_embed,
        embed_many=fake_embed_many,
    )


@pytest.fixture
def make_document(session_factory, extractor):
    """Insert a case document and register its content with the fake extractor."""

    def _make(
        filename: str = "deposition.pdf",
        *,
        case_id: str = "CASE-001",
        page_count: int | None = 3,
        text: str = "",
        size: int | None = None,
    ) -> int:
        with session_factory.begin() as session:
            document = Document(
                case_id=case_id,
                filename=filename,
                storage_path=f"{case_id}/{filename}",
                file_size=size if size is not None else max(len(text), 1000),
                page_count=page_count,
                status=DocumentStatus.PENDING,
            )
            session.add(document)
            session.flush()
            document_id = document.id
            storage_path = document.storage_path
        extractor.add(storage_path, text=text, page_count=page_count or 1, size=size)
        return document_id

    return _make
