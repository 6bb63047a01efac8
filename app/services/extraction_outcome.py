# =============================================================================
# Extraction Outcome — ExtractionResult → chunk row values
# =============================================================================
#
# Decides whether an extraction attempt completes or fails a chunk, and
# what gets written to the row. Pure: no I/O, no clock other than the
# timestamp stamped into the error record / metadata.
#
# A chunk FAILS when:
#   - the extractor returned an error, or
#   - the text is empty or the parser's "[No extractable text" placeholder, or
#   - the text is raw PDF object syntax (a PDF whose text layer is broken), or
#   - after dropping PDF-syntax lines fewer than `min_chars` characters remain.
# Otherwise it COMPLETES with the cleaned text. Low confidence does not fail
# a chunk; it sets `needsReview` in the chunk metadata.
#
# ERROR CODES (error_log["code"]):
#   PDF_EXTRACTION_FAILED, OCR_EXTRACTION_FAILED, AUDIO_TRANSCRIPTION_FAILED,
#   DOCUMENT_EXTRACTION_FAILED, PDF_ARTIFACT_DETECTED, CONTENT_CLEANING_FAILED,
#   EMBEDDING_FAILED (set by the chunk processor, not here)
# =============================================================================

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime

from app.db.models import ChunkStatus
from app.services.extractor import (
    METHOD_DOCLING,
    METHOD_TRANSCRIPTION_UNAVAILABLE,
    ExtractionResult,
)

NO_TEXT_PLACEHOLDER = "[No extractable text"

_PDF_MARKERS = [
    re.compile(r"<<\s*/Type\s*/"),
    re.compile(r"/Filter\s*/FlateDecode"),
    re.compile(r"/BaseFont\s*/[A-Za-z]"),
    re.compile(r"/Encoding\s*/Identity"),
    re.compile(r"/Parent\s*\d+\s*\d+\s*R"),
    re.compile(r"/Resources\s*<<"),
    re.compile(r"\d+\s+\d+\s+obj\b"),
    re.compile(r"\bendobj\b"),
    re.compile(r"\bstream\b[\s\S]*\bendstream\b"),
    re.compile(r"/Length\s*\d+"),
]
_PDF_NAME_TOKEN = re.compile(r"/[A-Z][a-z]+")
_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")
_UNUSUAL_CHAR = re.compile(r"[^\x20-\x7E\n\r\t]")
_PDF_SYNTAX_LINE = re.compile(r"^<<|^>>|^\d+\s+\d+\s+obj|^endobj|^stream|^endstream|^xref")

_ARTIFACT_SAMPLE_CHARS = 2000


@dataclass
class ChunkOutcome:
    status: ChunkStatus
    content: str | None
    extraction_method: str
    extraction_confidence: float | None
    metadata: dict = field(default_factory=dict)
    error_log: dict | None = None

    @property
    def content_for_embedding(self) -> str | None:
        return self.content if self.status == ChunkStatus.COMPLETED else None


def looks_like_pdf_artifact(text: str) -> bool:
    """True if `text` reads like PDF internals rather than document prose."""
    if not text:
        return False
    sample = text[:_ARTIFACT_SAMPLE_CHARS]

    marker_count = 0
    for pattern in _PDF_MARKERS:
        if pattern.search(sample):
            marker_count += 1
        if marker_count >= 3:
            return True

    name_tokens = _PDF_NAME_TOKEN.findall(sample)
    alphanumeric = len(_NON_ALNUM.sub("", sample))
    if len(name_tokens) >= 5 and alphanumeric > 0:
        if len(name_tokens) * 5 / alphanumeric > 0.3:
            return True

    unusual = len(_UNUSUAL_CHAR.findall(sample))
    return unusual / len(sample) > 0.15


def clean_pdf_artifacts(text: str) -> str:
    """Drop PDF-syntax lines, keep everything else (blank lines included)."""
    kept: list[str] = []
    for line in re.split(r"\r?\n", text):
        stripped = line.strip()
        if stripped:
            if _PDF_SYNTAX_LINE.search(stripped):
                continue
            if len(_PDF_NAME_TOKEN.findall(stripped)) >= 3 and "<<" in stripped:
                continue
        kept.append(line)
    return "\n".join(kept).strip()


def error_code_for_method(method: str | None) -> str:
    if method == METHOD_DOCLING:
        return "PDF_EXTRACTION_FAILED"
    if method and method.startswith("ocr-"):
        return "OCR_EXTRACTION_FAILED"
    if method == METHOD_TRANSCRIPTION_UNAVAILABLE:
        return "AUDIO_TRANSCRIPTION_FAILED"
    return "DOCUMENT_EXTRACTION_FAILED"


def build_error_log(code: str, message: str, method: str | None, detail: str | None = None) -> dict:
    error = {
        "code": code,
        "message": message,
        "method": method,
        "timestamp": datetime.now(UTC).isoformat(),
    }
    if detail:
        error["detail"] = detail
    return error


def derive_chunk_outcome(
    chunk_metadata: dict | None,
    result: ExtractionResult,
    *,
    min_chars: int = 20,
    review_confidence_threshold: float = 0.6,
) -> ChunkOutcome:
    """Turn one extraction attempt into the values written to the chunk row."""
    raw_text = (result.text or "").strip()
    is_placeholder = not raw_text or raw_text.startswith(NO_TEXT_PLACEHOLDER)
    is_artifact = looks_like_pdf_artifact(raw_text)

    shared_metadata = {
        **(chunk_metadata or {}),
        "extractionMethod": result.method,
        "pageCount": result.page_count,
        "processingTimestamp": datetime.now(UTC).isoformat(),
    }

    if result.error or is_placeholder or is_artifact:
        if is_artifact:
            error = build_error_log(
                "PDF_ARTIFACT_DETECTED",
                "Extraction returned raw PDF data instead of readable text. "
                "The PDF may be scanned or corrupted.",
                result.method,
                "Content contains PDF object syntax markers. OCR may be required.",
            )
        else:
            error = build_error_log(
                error_code_for_method(result.method),
                result.error or "Document parser did not return extractable text.",
                result.method,
                "Parser returned placeholder text." if not result.error else None,
            )
        return ChunkOutcome(
            status=ChunkStatus.FAILED,
            content=None,
            extraction_method=result.method,
            extraction_confidence=result.confidence or 0.0,
            metadata={
                **shared_metadata,
                "extractionError": error,
                "pdfArtifactDetected": is_artifact,
                "needsReview": True,
            },
            error_log=error,
        )

    cleaned = clean_pdf_artifacts(raw_text)
    if len(cleaned) < min_chars:
        error = build_error_log(
            "CONTENT_CLEANING_FAILED",
            "After removing PDF artifacts, no meaningful content remained.",
            result.method,
            f"Original length: {len(raw_text)}, cleaned length: {len(cleaned)}",
        )
        return ChunkOutcome(
            status=ChunkStatus.FAILED,
            content=None,
            extraction_method=result.method,
            extraction_confidence=0.0,
            metadata={**shared_metadata, "extractionError": error, "needsReview": True},
            error_log=error,
        )

    needs_review = result.needs_review or (
        result.confidence is not None and result.confidence < review_confidence_threshold
    )
    return ChunkOutcome(
        status=ChunkStatus.COMPLETED,
        content=cleaned,
        extraction_method=result.method,
        extraction_confidence=result.confidence,
        metadata={**shared_metadata, "needsReview": needs_review},
    )
