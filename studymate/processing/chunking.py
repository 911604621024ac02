"""
Smart Chunker  —  Sentence-Respecting, Overlapping Token Windows
═════════════════════════════════════════════════════════════════

Splits extracted document text into chunks sized for embedding, each tagged
with the page range it came from.

Algorithm
─────────
  1. Estimate tokens with a fixed heuristic: ceil(len(text) / 4).
     This is not the embedding model's tokenizer; counts are approximate.
  2. Split the text into sentences after ".", "!" or "?" followed by
     whitespace. Abbreviations ("e.g. this") over-split and decimals without
     a following space stay intact. Accepted as a heuristic.
  3. Attribute each sentence to a page:
       - with page spans from the extractor: by character offset
         (start page = page holding the first char, end page = page holding
         the last char)
       - without spans: the first page whose text contains the sentence's
         first 50 characters, else page 1
  4. Accumulate sentences into a buffer. When the next sentence would push
     the estimate over max_tokens, finalize the buffer as a chunk and seed
     the next one with the finalized chunk's trailing sentences (cumulative
     estimate ≤ overlap_tokens) followed by the triggering sentence.
  5. Emit whatever remains as the final chunk.

A single sentence longer than max_tokens is still emitted whole: sentences
are never split.

Invariants
──────────
  - chunk_index runs 0..n-1 with no gaps
  - page_start ≤ page_end, both within the document's pages
  - page_start never decreases across the sequence when spans are given
  - same text + options → identical chunks
"""

from __future__ import annotations

import logging
import math
import re
from bisect import bisect_right
from dataclasses import dataclass, field
from typing import Sequence
from uuid import UUID

from studymate.processing.extractor import ExtractionResult, PageSpan, PageText

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

CHARS_PER_TOKEN = 4

DEFAULT_MAX_TOKENS     = 800
DEFAULT_OVERLAP_TOKENS = 100

# Length of the sentence prefix used for text-scan page attribution
PAGE_MATCH_PREFIX_CHARS = 50

_SENTENCE_BOUNDARY_RE = re.compile(r"(?<=[.!?])\s+")


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChunkingOptions:
    max_tokens:                   int  = DEFAULT_MAX_TOKENS
    overlap_tokens:               int  = DEFAULT_OVERLAP_TOKENS
    preserve_sentence_boundaries: bool = True

    def __post_init__(self) -> None:
        if self.max_tokens <= 0:
            raise ValueError(f"max_tokens must be positive, got {self.max_tokens}")
        if self.overlap_tokens < 0:
            raise ValueError(f"overlap_tokens must be >= 0, got {self.overlap_tokens}")
        if self.overlap_tokens >= self.max_tokens:
            raise ValueError(
                f"overlap_tokens ({self.overlap_tokens}) must be < max_tokens ({self.max_tokens})"
            )

    @classmethod
    def from_settings(cls) -> "ChunkingOptions":
        from studymate.core.config import settings
        return cls(
            max_tokens=settings.chunk_max_tokens,
            overlap_tokens=settings.chunk_overlap_tokens,
            preserve_sentence_boundaries=settings.chunk_preserve_sentences,
        )


@dataclass(frozen=True)
class TextChunk:
    """
    One chunk of document text.

    Created by the chunker without an embedding; the embedder returns copies
    with `embedding` filled in.
    """
    chunk_index: int
    content:     str
    page_start:  int
    page_end:    int
    token_count: int
    document_id: UUID | None        = None
    embedding:   list[float] | None = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class Sentence:
    text:  str
    start: int   # offset of the first character in the source text
    end:   int   # offset one past the last character


@dataclass(frozen=True)
class _PlacedSentence:
    text:       str
    page_start: int
    page_end:   int


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def estimate_tokens(text: str) -> int:
    """Cheap token estimate: ceil(chars / 4)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def split_sentences(text: str) -> list[Sentence]:
    """
    Split at ". ", "! ", "? " (any whitespace run) keeping source offsets.
    Empty fragments are dropped; each sentence is stripped.
    """
    sentences: list[Sentence] = []
    cursor = 0
    for match in _SENTENCE_BOUNDARY_RE.finditer(text):
        _append_sentence(text, cursor, match.start(), sentences)
        cursor = match.end()
    _append_sentence(text, cursor, len(text), sentences)
    return sentences


def _append_sentence(text: str, start: int, end: int, out: list[Sentence]) -> None:
    piece = text[start:end]
    stripped = piece.strip()
    if not stripped:
        return
    first = start + (len(piece) - len(piece.lstrip()))
    out.append(Sentence(stripped, first, first + len(stripped)))


def find_page_for_text(text: str, pages: Sequence[PageText]) -> int:
    """
    Text-scan attribution: first page containing the text's 50-char prefix.
    Repeated or page-spanning text may be mis-attributed; defaults to page 1.
    """
    prefix = text[:PAGE_MATCH_PREFIX_CHARS]
    for page in pages:
        if prefix in page.text:
            return page.page_number
    return 1


class _PageLocator:
    """Resolves (page_start, page_end) for a sentence."""

    def __init__(self, pages: Sequence[PageText], spans: Sequence[PageSpan] | None) -> None:
        self._pages  = pages
        self._spans  = list(spans) if spans else []
        self._starts = [span.start for span in self._spans]

    def locate(self, sentence: Sentence) -> tuple[int, int]:
        if not self._spans:
            page = find_page_for_text(sentence.text, self._pages)
            return page, page
        return self._page_at(sentence.start), self._page_at(sentence.end - 1)

    def _page_at(self, offset: int) -> int:
        # Offsets on a separator between pages resolve to the preceding page
        idx = bisect_right(self._starts, offset) - 1
        return self._spans[max(idx, 0)].page_number


# ---------------------------------------------------------------------------
# Core chunker
# ---------------------------------------------------------------------------

class SmartChunker:
    """
    Stateless chunker.

    Usage:
        chunker = SmartChunker()
        chunks = chunker.chunk(result.full_text, result.pages,
                               page_spans=result.page_spans)
    """

    def chunk(
        self,
        full_text:   str,
        pages:       Sequence[PageText],
        options:     ChunkingOptions | None = None,
        *,
        page_spans:  Sequence[PageSpan] | None = None,
        document_id: UUID | None = None,
    ) -> list[TextChunk]:
        """
        Split `full_text` into overlapping, sentence-respecting chunks.

        Args:
            full_text:   Document text (pages joined in page order)
            pages:       Per-page texts, used for text-scan attribution
            options:     Size/overlap policy; ChunkingOptions() defaults if None
            page_spans:  Page offsets inside full_text. When given, pages are
                         attributed by offset instead of by text search.
            document_id: Stamped on every chunk when known

        Returns:
            Ordered list of TextChunk (chunk_index 0, 1, 2, …)
        """
        opts = options or ChunkingOptions()
        locator = _PageLocator(pages, page_spans)

        chunks: list[TextChunk] = []
        buffer: list[_PlacedSentence] = []
        buffer_chars = 0

        for sentence in split_sentences(full_text):
            page_start, page_end = locator.locate(sentence)
            placed = _PlacedSentence(sentence.text, page_start, page_end)

            joined_chars = buffer_chars + (1 if buffer else 0) + len(placed.text)
            if buffer and math.ceil(joined_chars / CHARS_PER_TOKEN) > opts.max_tokens:
                chunks.append(self._finalize(buffer, len(chunks), document_id))
                buffer = self._overlap_seed(buffer, opts) + [placed]
                buffer_chars = _joined_length(buffer)
            else:
                buffer.append(placed)
                buffer_chars = joined_chars

        if buffer:
            chunks.append(self._finalize(buffer, len(chunks), document_id))

        logger.info(
            "SmartChunker | doc=%s text_chars=%d chunks=%d max_tokens=%d overlap_tokens=%d",
            document_id, len(full_text), len(chunks), opts.max_tokens, opts.overlap_tokens,
        )
        return chunks

    def chunk_extraction(
        self,
        result:      ExtractionResult,
        options:     ChunkingOptions | None = None,
        *,
        document_id: UUID | None = None,
    ) -> list[TextChunk]:
        """Chunk an ExtractionResult using its page spans."""
        return self.chunk(
            result.full_text,
            result.pages,
            options,
            page_spans=result.page_spans,
            document_id=document_id,
        )

    # ------------------------------------------------------------------
    # Boundary handling
    # ------------------------------------------------------------------

    @staticmethod
    def _finalize(
        buffer:      list[_PlacedSentence],
        chunk_index: int,
        document_id: UUID | None,
    ) -> TextChunk:
        content = " ".join(s.text for s in buffer)
        page_start = buffer[0].page_start
        page_end = max(page_start, max(s.page_end for s in buffer))
        return TextChunk(
            chunk_index=chunk_index,
            content=content,
            page_start=page_start,
            page_end=page_end,
            token_count=estimate_tokens(content),
            document_id=document_id,
        )

    @staticmethod
    def _overlap_seed(
        buffer: list[_PlacedSentence],
        opts:   ChunkingOptions,
    ) -> list[_PlacedSentence]:
        """Tail of the just-finalized chunk to carry into the next one."""
        if opts.overlap_tokens == 0:
            return []

        if not opts.preserve_sentence_boundaries:
            return _char_tail(buffer, opts.overlap_tokens * CHARS_PER_TOKEN)

        seed: list[_PlacedSentence] = []
        tokens = 0
        for sentence in reversed(buffer):
            sentence_tokens = estimate_tokens(sentence.text)
            if tokens + sentence_tokens > opts.overlap_tokens:
                break
            seed.insert(0, sentence)
            tokens += sentence_tokens
        return seed


def _joined_length(buffer: list[_PlacedSentence]) -> int:
    return sum(len(s.text) for s in buffer) + max(len(buffer) - 1, 0)


def _char_tail(buffer: list[_PlacedSentence], n_chars: int) -> list[_PlacedSentence]:
    """
    Last `n_chars` characters of the joined buffer as one pseudo-sentence,
    attributed to the page of the sentence the cut lands in.
    """
    content = " ".join(s.text for s in buffer)
    cut = max(len(content) - n_chars, 0)
    tail = content[cut:].strip()
    if not tail:
        return []

    offset = 0
    page_start = buffer[-1].page_start
    for sentence in buffer:
        if offset + len(sentence.text) > cut:
            page_start = sentence.page_start
            break
        offset += len(sentence.text) + 1
    return [_PlacedSentence(tail, page_start, buffer[-1].page_end)]
