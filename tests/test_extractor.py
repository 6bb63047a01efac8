# =============================================================================
# Unit Tests — Local File Extractor
# =============================================================================
#
# Uses real files under tmp_path. PDF parsing (Docling) is patched out;
# nothing here loads a model.
# =============================================================================

from unittest.mock import MagicMock, patch

import pytest

from app.config import Settings
from app.pipeline.errors import ExtractionError
from app.services import extractor as extractor_module
from app.services.extractor import (
    METHOD_DIRECT_READ,
    METHOD_DOCLING,
    METHOD_OCR_UNAVAILABLE,
    METHOD_UNSUPPORTED,
    LocalFileExtractor,
    get_extractor,
)


@pytest.fixture
def storage(tmp_path):
    root = tmp_path / "files"
    (root / "CASE-1").mkdir(parents=True)
    (root / "CASE-1" / "notes.txt").write_text("Interview notes: the alibi checks out.", encoding="utf-8")
    (root / "CASE-1" / "photo.jpg").write_bytes(b"\xff\xd8\xff")
    (root / "CASE-1" / "bundle.zip").write_bytes(b"PK")
    (root / "CASE-1" / "report.pdf").write_bytes(b"%PDF-1.4")
    return root


class TestLocalFileExtractor:
    def test_reads_text_files_directly(self, storage):
        result = LocalFileExtractor(storage).extract("CASE-1/notes.txt")
        assert result.ok
        assert result.method == METHOD_DIRECT_READ
        assert result.text.startswith("Interview notes")
        assert result.confidence == 1.0

    def test_file_size_and_page_count_for_text(self, storage):
        extractor = LocalFileExtractor(storage)
        assert extractor.file_size("CASE-1/notes.txt") == len("Interview notes: the alibi checks out.")
        assert extractor.page_count("CASE-1/notes.txt") == 1

    def test_locator_outside_storage_root_is_rejected(self, storage):
        with pytest.raises(ExtractionError):
            LocalFileExtractor(storage).extract("../../etc/passwd")

    def test_missing_file_raises(self, storage):
        with pytest.raises(ExtractionError):
            LocalFileExtractor(storage).extract("CASE-1/nope.txt")

    def test_image_without_ocr_is_an_error_result(self, storage):
        result = LocalFileExtractor(storage).extract("CASE-1/photo.jpg")
        assert not result.ok
        assert result.method == METHOD_OCR_UNAVAILABLE
        assert result.needs_review

    def test_unknown_type_is_unsupported(self, storage):
        result = LocalFileExtractor(storage).extract("CASE-1/bundle.zip")
        assert result.method == METHOD_UNSUPPORTED
        assert result.error

    def test_pdf_page_text_comes_from_parser(self, storage):
        parsed = MagicMock(page_count=3)
        parsed.page_text.return_value = "Page two text of the police report."
        with patch.object(extractor_module, "_parse_pdf_cached", return_value=parsed):
            result = LocalFileExtractor(storage).extract("CASE-1/report.pdf", page_number=2)
        parsed.page_text.assert_called_once_with(2)
        assert result.method == METHOD_DOCLING
        assert result.page_count == 3
        assert result.text == "Page two text of the police report."

    def test_pdf_parse_failure_is_an_error_result(self, storage):
        with patch.object(extractor_module, "_parse_pdf_cached", side_effect=RuntimeError("bad pdf")):
            result = LocalFileExtractor(storage).extract("CASE-1/report.pdf", page_number=1)
        assert result.error == "bad pdf"
        assert result.needs_review

    def test_factory_uses_storage_dir(self, storage):
        extractor = get_extractor(Settings(storage_dir=str(storage)))
        assert isinstance(extractor, LocalFileExtractor)
        assert extractor.root == storage.resolve()

