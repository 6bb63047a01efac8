# =============================================================================
# Unit Tests — Extraction Outcome
# =============================================================================
#
# How one extraction attempt becomes chunk status, content and error log.
# =============================================================================

from app.db.models import ChunkStatus
from app.services.extraction_outcome import (
    clean_pdf_artifacts,
    derive_chunk_outcome,
    error_code_for_method,
    looks_like_pdf_artifact,
)
from app.services.extractor import ExtractionResult

PROSE = "The defendant was seen leaving the premises at approximately 9:40 pm."
PDF_GARBAGE = (
    "4 0 obj\n<< /Type /Page /Parent 3 0 R /Resources << /Font << /F1 5 0 R >> >>\n"
    "/Filter /FlateDecode /Length 1234\nstream\nxyz\nendstream\nendobj\n"
)


class TestArtifactDetection:
    def test_prose_is_not_an_artifact(self):
        assert not looks_like_pdf_artifact(PROSE)

    def test_pdf_object_syntax_is_an_artifact(self):
        assert looks_like_pdf_artifact(PDF_GARBAGE)

    def test_empty_text_is_not_an_artifact(self):
        assert not looks_like_pdf_artifact("")

    def test_cleaning_drops_syntax_lines_only(self):
        cleaned = clean_pdf_artifacts(f"{PROSE}\n5 0 obj\nendobj\n{PROSE}")
        assert cleaned == f"{PROSE}\n{PROSE}"


class TestErrorCodes:
    def test_codes_by_method(self):
        assert error_code_for_method("docling-pdf") == "PDF_EXTRACTION_FAILED"
        assert error_code_for_method("ocr-unavailable") == "OCR_EXTRACTION_FAILED"
        assert error_code_for_method("audio-transcription") == "AUDIO_TRANSCRIPTION_FAILED"
        assert error_code_for_method(None) == "DOCUMENT_EXTRACTION_FAILED"


class TestDeriveChunkOutcome:
    def test_good_text_completes(self):
        outcome = derive_chunk_outcome(
            {"pageNumber": 2}, ExtractionResult(text=PROSE, method="docling-pdf", confidence=0.9)
        )
        assert outcome.status == ChunkStatus.COMPLETED
        assert outcome.content == PROSE
        assert outcome.error_log is None
        assert outcome.metadata["pageNumber"] == 2
        assert outcome.metadata["needsReview"] is False

    def test_low_confidence_completes_but_needs_review(self):
        outcome = derive_chunk_outcome(
            None, ExtractionResult(text=PROSE, method="docling-pdf", confidence=0.3)
        )
        assert outcome.status == ChunkStatus.COMPLETED
        assert outcome.metadata["needsReview"] is True

    def test_extractor_error_fails_with_method_code(self):
        outcome = derive_chunk_outcome(
            None, ExtractionResult(text="", method="docling-pdf", error="corrupt xref table")
        )
        assert outcome.status == ChunkStatus.FAILED
        assert outcome.content is None
        assert outcome.error_log["code"] == "PDF_EXTRACTION_FAILED"
        assert outcome.error_log["message"] == "corrupt xref table"
        assert outcome.content_for_embedding is None

    def test_placeholder_text_fails(self):
        outcome = derive_chunk_outcome(
            None, ExtractionResult(text="[No extractable text on page 4]", method="docling-pdf")
        )
        assert outcome.status == ChunkStatus.FAILED
        assert outcome.error_log["code"] == "PDF_EXTRACTION_FAILED"

    def test_pdf_artifacts_fail(self):
        outcome = derive_chunk_outcome(
            None, ExtractionResult(text=PDF_GARBAGE, method="docling-pdf", confidence=0.9)
        )
        assert outcome.status == ChunkStatus.FAILED
        assert outcome.error_log["code"] == "PDF_ARTIFACT_DETECTED"
        assert outcome.metadata["pdfArtifactDetected"] is True

    def test_too_short_after_cleaning_fails(self):
        outcome = derive_chunk_outcome(
            None,
            ExtractionResult(text="ok", method="direct-read", confidence=1.0),
            min_chars=20,
        )
        assert outcome.status == ChunkStatus.FAILED
        assert outcome.error_log["code"] == "CONTENT_CLEANING_FAILED"
