"""
Document Processing Package
════════════════════════════

The post-upload ingestion pipeline:

  Text Extraction → Sentence Chunking → Embedding → Persistence

Modules
───────
  extractor.py    PyMuPDF text extraction with per-page character spans
  chunking.py     Sentence-respecting, overlapping, page-attributed chunker
  embeddings.py   Sequential batched embeddings (all-or-nothing)
  persistence.py  Chunk row writes and document status updates
  pipeline.py     DocumentProcessor: phases, lock, timeouts, failure boundary
  retry.py        Retry policy and scheduler port
  errors.py       IngestionError hierarchy

pipeline.py and persistence.py depend on studymate.db and are imported
from their modules directly.
"""

from studymate.processing.cancellation import CancellationToken
from studymate.processing.chunking import ChunkingOptions, SmartChunker, TextChunk
from studymate.processing.embeddings import Embedder, EmbeddingClient, OpenAIEmbeddingClient
from studymate.processing.errors import (
    DocumentLockedError,
    DocumentNotFoundError,
    EmbeddingError,
    ExtractionError,
    IngestionError,
    PersistenceError,
    PhaseTimeoutError,
    PipelineCancelledError,
)
from studymate.processing.extractor import ExtractionResult, PageSpan, PageText, PDFTextExtractor

__all__ = [
    "CancellationToken",
    "ChunkingOptions",
    "SmartChunker",
    "TextChunk",
    "Embedder",
    "EmbeddingClient",
    "OpenAIEmbeddingClient",
    "DocumentLockedError",
    "DocumentNotFoundError",
    "EmbeddingError",
    "ExtractionError",
    "IngestionError",
    "PersistenceError",
    "PhaseTimeoutError",
    "PipelineCancelledError",
    "ExtractionResult",
    "PageSpan",
    "PageText",
    "PDFTextExtractor",
]
