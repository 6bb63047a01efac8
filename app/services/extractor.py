# =============================================================================
# Extraction Contract — Storage Locator → Text
# =============================================================================
#
# The chunk processor and the batch session manager never open files
# themselves. They call an `Extractor`:
#
#     result = extractor.extract(locator, page_number=3)
#     result.text / result.error / result.needs_review
#
# DESIGN DECISION: Extraction failures are returned, not raised. An
# `ExtractionResult` with `error` set is an ordinary outcome that the caller
# turns into chunk or document state. Only a missing/escaping locator is an
# exception (`ExtractionError`), and callers treat that the same way.
#
# BACKENDS (LocalFileExtractor):
#   .pdf                       → Docling (app/services/parser.py), per page
#   text/markup extensions     → direct read (UTF-8, undecodable bytes replaced)
#   images / audio             → no backend configured; returned as an error
#                                result flagged for human review
#
# Selected through `get_extractor()`, the same way the vector store
# backend used to be picked from settings.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Protocol

from app.config import Settings, settings
from app.pipeline.errors import ExtractionError
from app.services.chunking import file_kind, normalize_extension

logger = logging.getLogger(__name__)

METHOD_DOCLING = "docling-pdf"
METHOD_DIRECT_READ = "direct-read"
METHOD_OCR_UNAVAILABLE = "ocr-unavailable"
METHOD_TRANSCRIPTION_UNAVAILABLE = "audio-transcription"
METHOD_UNSUPPORTED = "unsupported"

# Docling reports no per-page confidence; pages with a text layer are
# trusted slightly less than a plain-text read.
_DOCLING_CONFIDENCE = 0.9


@dataclass
class ExtractionResult:
    text: str
    method: str
    confidence: float | None = None
    page_count: int | None = None
    error: str | None = None
    needs_review: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


class Extractor(Protocol):
    """Extraction contract consumed by the pipeline."""

    def extract(self, locator: str, *, page_number: int | None = None) -> ExtractionResult: ...

    def page_count(self, locator: str) -> int | None: ...

    def file_size(self, locator: str) -> int: ...


# ---------------------------------------------------------------------------
# Local filesystem backend
# ---------------------------------------------------------------------------


class LocalFileExtractor:
    """Resolves locators under `storage_dir` and extracts from local files."""

    def __init__(self, storage_dir: str | Path, review_confidence_threshold: float = 0.6):
        self.root = Path(storage_dir).resolve()
        self.review_confidence_threshold = review_confidence_threshold

    def resolve(self, locator: str) -> Path:
        path = (self.root / locator).resolve()
        if not path.is_relative_to(self.root):
            raise ExtractionError(f"Locator escapes storage root: {locator!r}")
        if not path.is_file():
            raise ExtractionError(f"File not found for locator {locator!r}")
        return path

    def file_size(self, locator: str) -> int:
        return self.resolve(locator).stat().st_size

    def page_count(self, locator: str) -> int | None:
        path = self.resolve(locator)
        if file_kind(path.suffix) != "pdf":
            return 1
        return _parse_pdf_cached(str(path), path.stat().st_mtime_ns).page_count

    def extract(self, locator: str, *, page_number: int | None = None) -> ExtractionResult:
        path = self.resolve(locator)
        kind = file_kind(path.suffix)

        if kind == "pdf":
            return self._extract_pdf(path, page_number)
        if kind == "text":
            text = path.read_text(encoding="utf-8", errors="replace")
            return ExtractionResult(
                text=text, method=METHOD_DIRECT_READ, confidence=1.0, page_count=1
            )
        if kind == "image":
            return ExtractionResult(
                text="",
                method=METHOD_OCR_UNAVAILABLE,
                confidence=0.0,
                page_count=1,
                error=f"No OCR backend configured for {normalize_extension(path.suffix)} images",
                needs_review=True,
            )
        if kind == "audio":
            return ExtractionResult(
                text="",
                method=METHOD_TRANSCRIPTION_UNAVAILABLE,
                confidence=0.0,
                page_count=1,
                error="No transcription backend configured for audio files",
                needs_review=True,
            )
        return ExtractionResult(
            text="",
            method=METHOD_UNSUPPORTED,
            confidence=0.0,
            error=f"Unsupported file type: {path.suffix or '(none)'}",
            needs_review=True,
        )

    def _extract_pdf(self, path: Path, page_number: int | None) -> ExtractionResult:
        try:
            parsed = _parse_pdf_cached(str(path), path.stat().st_mtime_ns)
        except (RuntimeError, OSError) as exc:
            logger.warning("PDF extraction failed for %s: %s", path.name, exc)
            return ExtractionResult(
                text="", method=METHOD_DOCLING, confidence=0.0, error=str(exc), needs_review=True
            )

        text = parsed.page_text(page_number) if page_number else parsed.text
        confidence = _DOCLING_CONFIDENCE if text.strip() else 0.0
        return ExtractionResult(
            text=text,
            method=METHOD_DOCLING,
            confidence=confidence,
            page_count=parsed.page_count,
            needs_review=confidence < self.review_confidence_threshold,
        )


@lru_cache(maxsize=8)
def _parse_pdf_cached(path: str, mtime_ns: int):
    # One Docling parse per file version, shared by all page chunks of a
    # document handled in this worker process.
    from app.services.parser import parse_pdf

    return parse_pdf(path)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def get_extractor(config: Settings | None = None) -> Extractor:
    config = config or settings
    return LocalFileExtractor(
        config.storage_dir,
        review_confidence_threshold=config.review_confidence_threshold,
    )
