# =============================================================================
# Chunking Strategy Selector + Chunk Planner
# =============================================================================
#
# Decides how a case document is split into units of work, then lays out
# the chunk rows for that decision.
#
# STRATEGIES:
#   page            one chunk per page (PDFs of any size; also the default
#                   for small flat text, images, audio and unknown types,
#                   which count as a single page)
#   section         one chunk per detected heading section (small markup)
#   sliding-window  fixed-size character windows with overlap (flat text
#                   above the size threshold)
#
# `select_strategy` is a pure function of (extension, size). It never looks
# at file contents. `plan_chunks` turns a strategy into zero-based,
# contiguous chunk indices plus the metadata the chunk processor needs to
# extract each slice (page number or character range).
# =============================================================================

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field

from app.db.models import ChunkType

logger = logging.getLogger(__name__)

DEFAULT_SIZE_THRESHOLD = 100_000  # bytes
DEFAULT_CHUNK_SIZE = 4000  # characters
DEFAULT_OVERLAP = 500  # characters

PDF_EXTENSIONS = frozenset({".pdf"})
FLAT_TEXT_EXTENSIONS = frozenset({".txt", ".log", ".csv", ".md"})
MARKUP_EXTENSIONS = frozenset({".md", ".markdown", ".html", ".htm", ".rst"})
IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".bmp", ".tiff", ".webp"})
AUDIO_EXTENSIONS = frozenset({".mp3", ".wav", ".m4a", ".ogg", ".flac"})

# Seconds of extraction work per chunk, by file kind
_SECONDS_PER_CHUNK = {"pdf": 2, "image": 10, "audio": 30, "text": 1}
_DEFAULT_SECONDS_PER_CHUNK = 2
_ESTIMATE_CONCURRENCY = 50


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChunkingStrategy:
    """The selected split. `chunk_size`/`overlap` are set for sliding-window only."""

    kind: ChunkType
    chunk_size: int | None = None
    overlap: int | None = None

    def as_metadata(self) -> dict:
        data: dict = {"type": self.kind.value}
        if self.kind == ChunkType.SLIDING_WINDOW:
            data["chunkSize"] = self.chunk_size
            data["overlap"] = self.overlap
        return data


@dataclass
class PlannedChunk:
    """One row to insert into document_chunks."""

    chunk_index: int
    chunk_type: ChunkType
    metadata: dict = field(default_factory=dict)
    # metadata keys:
    #   fileName: str — always
    #   pageNumber / totalPages: int — page chunks (1-indexed pages)
    #   startChar / endChar: int — sliding-window and section chunks
    #   sectionTitle: str | None — section chunks


@dataclass(frozen=True)
class Section:
    title: str | None
    start_char: int
    end_char: int


# ---------------------------------------------------------------------------
# Strategy selection
# ---------------------------------------------------------------------------


def normalize_extension(extension_or_name: str) -> str:
    """'.PDF', 'pdf' or 'brief.pdf' → '.pdf'; '' when there is none."""
    value = extension_or_name.strip().lower()
    if "." in value:
        return value[value.rfind("."):]
    return f".{value}" if value else ""


def select_strategy(
    extension: str,
    size: int,
    *,
    threshold: int = DEFAULT_SIZE_THRESHOLD,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_OVERLAP,
) -> ChunkingStrategy:
    """
    Pick a chunking strategy from a file's extension and size in bytes.

    - `.pdf` of any size → page
    - flat text (.txt, .log, .csv, .md) larger than `threshold`
      → sliding-window(chunk_size, overlap)
    - markup (.md, .markdown, .html, .htm, .rst) up to `threshold` → section
    - anything else, including unknown extensions → page
    """
    if overlap >= chunk_size:
        raise ValueError(f"overlap ({overlap}) must be smaller than chunk_size ({chunk_size})")

    ext = normalize_extension(extension)
    if ext in PDF_EXTENSIONS:
        return ChunkingStrategy(ChunkType.PAGE)
    if ext in FLAT_TEXT_EXTENSIONS and size > threshold:
        return ChunkingStrategy(ChunkType.SLIDING_WINDOW, chunk_size=chunk_size, overlap=overlap)
    if ext in MARKUP_EXTENSIONS:
        return ChunkingStrategy(ChunkType.SECTION)
    return ChunkingStrategy(ChunkType.PAGE)


def file_kind(extension: str) -> str:
    ext = normalize_extension(extension)
    if ext in PDF_EXTENSIONS:
        return "pdf"
    if ext in IMAGE_EXTENSIONS:
        return "image"
    if ext in AUDIO_EXTENSIONS:
        return "audio"
    if ext in FLAT_TEXT_EXTENSIONS or ext in MARKUP_EXTENSIONS:
        return "text"
    return "other"


def is_text_extension(extension: str) -> bool:
    return file_kind(extension) == "text"


def estimate_processing_seconds(chunk_count: int, extension: str) -> int:
    """Rough wall-clock estimate assuming chunks run in parallel across workers."""
    per_chunk = _SECONDS_PER_CHUNK.get(file_kind(extension), _DEFAULT_SECONDS_PER_CHUNK)
    return math.ceil(chunk_count * per_chunk / _ESTIMATE_CONCURRENCY)


# ---------------------------------------------------------------------------
# Section detection
# ---------------------------------------------------------------------------
# Recognised headings:
#   # Title / ## Title ...           (markdown ATX)
#   <h1>Title</h1> ... <h6>          (HTML)
#   Title\n=====  or  Title\n-----   (reStructuredText / setext underline)
#   STATEMENT OF FACTS               (standalone all-caps line, 4–80 chars)
# ---------------------------------------------------------------------------

_ATX_HEADING = re.compile(r"^[ \t]{0,3}#{1,6}[ \t]+(?P<title>\S.*?)[ \t#]*$", re.MULTILINE)
_HTML_HEADING = re.compile(r"<h[1-6][^>]*>(?P<title>.*?)</h[1-6]>", re.IGNORECASE | re.DOTALL)
_UNDERLINE_HEADING = re.compile(
    r"^(?P<title>[^\n]*\S[^\n]*)\n(?:=+|-+)[ \t]*$", re.MULTILINE
)
_CAPS_HEADING = re.compile(r"^[ \t]*(?P<title>[A-Z][A-Z0-9 ,.;:'&()/-]{2,78}[A-Z0-9)])[ \t]*$", re.MULTILINE)
_HTML_TAG = re.compile(r"<[^>]+>")


def detect_sections(text: str) -> list[Section]:
    """
    Split `text` at heading lines. Each section runs from its heading to the
    next heading. Non-blank text before the first heading becomes an
    untitled preamble section; text with no headings is one section.
    """
    if not text:
        return []

    starts: dict[int, str] = {}
    for pattern in (_ATX_HEADING, _HTML_HEADING, _UNDERLINE_HEADING, _CAPS_HEADING):
        for match in pattern.finditer(text):
            title = _HTML_TAG.sub("", match.group("title")).strip()
            if title and match.start() not in starts:
                starts[match.start()] = title

    if not starts:
        return [Section(title=None, start_char=0, end_char=len(text))]

    boundaries = sorted(starts)
    sections: list[Section] = []
    if text[: boundaries[0]].strip():
        sections.append(Section(title=None, start_char=0, end_char=boundaries[0]))
    for position, start in enumerate(boundaries):
        end = boundaries[position + 1] if position + 1 < len(boundaries) else len(text)
        sections.append(Section(title=starts[start], start_char=start, end_char=end))
    return sections


# ---------------------------------------------------------------------------
# Chunk planning
# ---------------------------------------------------------------------------


def sliding_windows(length: int, chunk_size: int, overlap: int) -> list[tuple[int, int]]:
    """[start, end) character ranges covering `length` characters."""
    if overlap >= chunk_size:
        raise ValueError("overlap must be smaller than chunk_size")
    windows: list[tuple[int, int]] = []
    start = 0
    while start < length:
        end = min(start + chunk_size, length)
        windows.append((start, end))
        if end >= length:
            break
        start += chunk_size - overlap
    return windows


def plan_chunks(
    strategy: ChunkingStrategy,
    *,
    file_name: str,
    page_count: int | None = None,
    text: str | None = None,
) -> list[PlannedChunk]:
    """
    Lay out chunk rows for a document.

    `page` needs `page_count` (None counts as a single page);
    `sliding-window` and `section` need the document `text`.
    """
    if strategy.kind == ChunkType.PAGE:
        total_pages = max(page_count or 1, 1)
        return [
            PlannedChunk(
                chunk_index=index,
                chunk_type=ChunkType.PAGE,
                metadata={"pageNumber": index + 1, "totalPages": total_pages, "fileName": file_name},
            )
            for index in range(total_pages)
        ]

    if text is None:
        raise ValueError(f"{strategy.kind.value} chunking requires the document text")

    if strategy.kind == ChunkType.SLIDING_WINDOW:
        windows = sliding_windows(
            len(text),
            strategy.chunk_size or DEFAULT_CHUNK_SIZE,
            strategy.overlap if strategy.overlap is not None else DEFAULT_OVERLAP,
        )
        return [
            PlannedChunk(
                chunk_index=index,
                chunk_type=ChunkType.SLIDING_WINDOW,
                metadata={"startChar": start, "endChar": end, "fileName": file_name},
            )
            for index, (start, end) in enumerate(windows)
        ]

    sections = detect_sections(text)
    logger.debug("Detected %d sections in %s", len(sections), file_name)
    return [
        PlannedChunk(
            chunk_index=index,
            chunk_type=ChunkType.SECTION,
            metadata={
                "sectionTitle": section.title,
                "startChar": section.start_char,
                "endChar": section.end_char,
                "fileName": file_name,
            },
        )
        for index, section in enumerate(sections)
    ]
