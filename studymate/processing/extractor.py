"""
PDF Text Extraction
═══════════════════

Turns a raw PDF buffer into:
  - full_text   : every page's text joined in page order with "\n"
  - pages       : [PageText(page_number, text), ...] — 1-based, page order
  - page_spans  : [PageSpan(page_number, start, end), ...] — where each page
                  sits inside full_text, so the chunker can attribute a
                  sentence to a page by offset instead of re-searching text
  - metadata    : page_count + title from the PDF info dictionary

Page text normalization:
  PyMuPDF returns layout text with hard line breaks and runs of spaces.
  Each page collapses all whitespace runs to a single space and is stripped,
  which keeps sentence splitting independent of the PDF's line layout.

Failure policy:
  Any structural parse failure raises ExtractionError with the underlying
  cause message. Extraction is never retried here: a corrupt file stays
  corrupt.

PyMuPDF is blocking; the orchestrator runs extract() in a thread executor.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field

from studymate.processing.errors import ExtractionError

logger = logging.getLogger(__name__)

PAGE_SEPARATOR = "\n"

_WHITESPACE_RE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PageText:
    page_number: int   # 1-based
    text:        str


@dataclass(frozen=True)
class PageSpan:
    """Half-open range [start, end) of a page's text inside full_text."""
    page_number: int
    start:       int
    end:         int


@dataclass(frozen=True)
class DocumentMetadata:
    page_count: int
    title:      str | None = None


@dataclass
class ExtractionResult:
    """
    Full extraction output handed to the chunker.

    full_text  : pages joined with PAGE_SEPARATOR
    pages      : PageText per page, page order
    page_spans : PageSpan per page, same order as pages
    metadata   : page_count (== len(pages)) and optional title
    elapsed_ms : wall time spent in PyMuPDF
    """
    full_text:  str
    pages:      list[PageText]
    page_spans: list[PageSpan]
    metadata:   DocumentMetadata
    elapsed_ms: float = field(default=0.0, compare=False)

    @property
    def total_chars(self) -> int:
        return sum(len(p.text) for p in self.pages)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def normalize_page_text(raw: str) -> str:
    """Collapse whitespace runs to one space and strip the ends."""
    return _WHITESPACE_RE.sub(" ", raw).strip()


def build_page_spans(pages: list[PageText]) -> tuple[str, list[PageSpan]]:
    """
    Join page texts with PAGE_SEPARATOR and record where each page landed.

    Example:
        build_page_spans([PageText(1, "intro"), PageText(2, "body")])
        → ("intro\nbody", [PageSpan(1, 0, 5), PageSpan(2, 6, 10)])
    """
    spans: list[PageSpan] = []
    offset = 0
    for page in pages:
        spans.append(PageSpan(page.page_number, offset, offset + len(page.text)))
        offset += len(page.text) + len(PAGE_SEPARATOR)
    full_text = PAGE_SEPARATOR.join(p.text for p in pages)
    return full_text, spans


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class PDFTextExtractor:
    """
    Stateless PyMuPDF extractor.

    Usage:
        result = PDFTextExtractor().extract(pdf_bytes)
        result.full_text, result.pages, result.page_spans, result.metadata
    """

    def extract(self, pdf_bytes: bytes) -> ExtractionResult:
        if not pdf_bytes:
            raise ExtractionError("Failed to parse PDF: document buffer is empty")

        import fitz  # PyMuPDF; imported here to avoid module-level import cost

        t0 = time.monotonic()
        try:
            with fitz.open(stream=pdf_bytes, filetype="pdf") as document:
                if document.needs_pass:
                    raise ExtractionError("Failed to parse PDF: document is password protected")

                pages = [
                    PageText(page_number=index, text=normalize_page_text(page.get_text("text")))
                    for index, page in enumerate(document, start=1)
                ]
                title = (document.metadata or {}).get("title") or None
        except ExtractionError:
            raise
        except Exception as exc:
            raise ExtractionError(f"Failed to parse PDF: {exc}", cause=exc) from exc

        if not pages:
            raise ExtractionError("Failed to parse PDF: document has no pages")

        full_text, spans = build_page_spans(pages)
        result = ExtractionResult(
            full_text=full_text,
            pages=pages,
            page_spans=spans,
            metadata=DocumentMetadata(page_count=len(pages), title=title),
            elapsed_ms=(time.monotonic() - t0) * 1000,
        )

        logger.info(
            "Extraction | pages=%d total_chars=%d title=%r elapsed_ms=%.0f",
            result.metadata.page_count, result.total_chars,
            result.metadata.title, result.elapsed_ms,
        )
        return result
