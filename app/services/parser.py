# =============================================================================
# PDF Parser — Docling Document Intelligence
# =============================================================================
#
# Parses case-file PDFs (depositions, police reports, lab results) with
# Docling and returns their text grouped by page, which is the unit the
# `page` chunking strategy extracts.
#
# DESIGN DECISION: We iterate items (not export_to_markdown()) because the
# markdown export drops page numbers, and every page chunk needs exactly the
# text whose provenance is on its page.
#
# DESIGN DECISION: Own dataclasses (ParsedPage, ParsedDocument) rather than
# Docling types downstream. Only this module knows about Docling; the
# extractor and chunk processor see plain strings.
# =============================================================================

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path

from docling.datamodel.base_models import InputFormat
from docling.datamodel.pipeline_options import PdfPipelineOptions
from docling.document_converter import DocumentConverter, PdfFormatOption
from docling_core.types.doc.labels import DocItemLabel

logger = logging.getLogger(__name__)

_TEXT_LABELS = (
    DocItemLabel.TEXT,
    DocItemLabel.PARAGRAPH,
    DocItemLabel.LIST_ITEM,
    DocItemLabel.CAPTION,
    DocItemLabel.FOOTNOTE,
    DocItemLabel.SECTION_HEADER,
    DocItemLabel.TITLE,
)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ParsedPage:
    page_number: int  # 1-indexed
    blocks: list[str] = field(default_factory=list)  # Reading order
    has_tables: bool = False

    @property
    def text(self) -> str:
        return "\n\n".join(self.blocks)


@dataclass
class ParsedDocument:
    """All pages of one PDF, keyed by 1-indexed page number."""

    pages: dict[int, ParsedPage] = field(default_factory=dict)
    page_count: int = 0
    filename: str = ""

    def page_text(self, page_number: int) -> str:
        page = self.pages.get(page_number)
        return page.text if page else ""

    @property
    def text(self) -> str:
        return "\n\n".join(self.page_text(n) for n in range(1, self.page_count + 1)).strip()


# ---------------------------------------------------------------------------
# Docling Converter — Lazy Singleton
# ---------------------------------------------------------------------------
# Initialization loads layout/OCR models (a few seconds on first use); one
# converter is shared by every chunk task in the worker process.
# OCR is enabled because scanned exhibits are common in case files.
# ---------------------------------------------------------------------------

_converter: DocumentConverter | None = None


def _get_converter() -> DocumentConverter:
    """Lazily initialize and cache the Docling DocumentConverter."""
    global _converter
    if _converter is None:
        logger.info("Initializing Docling DocumentConverter (first use)...")
        pipeline_options = PdfPipelineOptions()
        pipeline_options.do_table_structure = True
        pipeline_options.do_ocr = True

        _converter = DocumentConverter(
            format_options={
                InputFormat.PDF: PdfFormatOption(pipeline_options=pipeline_options),
            }
        )
        logger.info("Docling DocumentConverter initialized")
    return _converter


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def parse_pdf(file_path: str | Path) -> ParsedDocument:
    """
    Parse a PDF and group its text blocks and tables by page.

    Raises:
        FileNotFoundError: If the file does not exist.
        RuntimeError: If Docling fails to convert the document.
    """
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"PDF not found: {file_path}")

    logger.info("Parsing PDF: %s", path.name)
    converter = _get_converter()

    try:
        result = converter.convert(str(path))
    except Exception as exc:
        raise RuntimeError(f"Docling failed to parse '{path.name}': {exc}") from exc

    document = result.document
    pages: dict[int, ParsedPage] = defaultdict(lambda: ParsedPage(page_number=0))

    for item, _level in document.iterate_items():
        # item.prov[0] is the primary location; items without provenance
        # cannot be attributed to a page and are dropped.
        if not getattr(item, "prov", None):
            continue
        page_no = item.prov[0].page_no
        page = pages[page_no]
        page.page_number = page_no

        label = getattr(item, "label", None)
        if label == DocItemLabel.TABLE:
            table_md = _table_to_markdown(item, document)
            if table_md:
                page.blocks.append(table_md)
                page.has_tables = True
        elif label in _TEXT_LABELS:
            text = (getattr(item, "text", "") or "").strip()
            if text:
                page.blocks.append(text)

    # Blank pages have no items but still count.
    page_count = len(getattr(document, "pages", {}) or {}) or max(pages, default=0)

    logger.info(
        "Parsed '%s': %d pages (%d with text, %d with tables)",
        path.name,
        page_count,
        sum(1 for p in pages.values() if p.blocks),
        sum(1 for p in pages.values() if p.has_tables),
    )
    return ParsedDocument(pages=dict(pages), page_count=page_count, filename=path.name)


def _table_to_markdown(table_item: object, document: object) -> str:
    """
    Convert a Docling TableItem to markdown.

    Falls back to the item's plain text if the markdown export fails.
    """
    try:
        if hasattr(table_item, "export_to_markdown"):
            return table_item.export_to_markdown(doc=document).strip()
    except Exception as exc:
        logger.warning("Table export to markdown failed: %s", exc)

    text = getattr(table_item, "text", "")
    return text.strip() if text else ""
