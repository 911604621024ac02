"""
Document Processor  —  Ingestion Orchestrator
══════════════════════════════════════════════

Runs one document through the pipeline and reports a structured result.

State machine
─────────────
    parsing → chunking → embedding → saving → completed
        └──────────┴──────────┴─────────┴──→ error

Progress events (fire-and-forget):
    parsing    0%   "Extracting text from PDF..."
    chunking  25%   "Creating intelligent chunks..."
    embedding 50%   "Generating AI embeddings..."   + one per embedding batch
    saving     …    persister events ("Saving chunks to database...", "Saved x/y chunks...")
    completed 100%  "Successfully processed N chunks!"
    error      0%   "Processing failed: <message>"

Run control
───────────
  - Advisory lock: a run starts by atomically taking documents.processing_lock_token
    and recording its attempt number. A live lock held by another run rejects
    this one without touching status. The lock is released in `finally`, after
    the document has been marked completed or failed.
  - Cancellation: the CancellationToken is checked between phases, between
    embedding batches and between persistence sub-batches.
  - Timeouts: PhaseTimeouts bounds parsing, embedding and saving with
    asyncio.wait_for. Zero/None disables a limit.

Failure boundary
────────────────
Every phase error is caught exactly once, here. The document is marked
failed (the persister already did it for write errors), an error event is
emitted, a retryable error is handed to the RetryScheduler, and
ProcessingResult(success=False, error=...) is returned. Nothing escapes.

Embedding is all-or-nothing: nothing is written until every batch has a
vector, so an embedding failure leaves no new chunk rows behind.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Awaitable, TypeVar
from uuid import UUID

from studymate.db.repository import DocumentStore
from studymate.processing.cancellation import CancellationToken
from studymate.processing.chunking import ChunkingOptions, SmartChunker, TextChunk
from studymate.processing.embeddings import Embedder
from studymate.processing.errors import (
    DocumentLockedError,
    DocumentNotFoundError,
    IngestionError,
    PersistenceError,
    PhaseTimeoutError,
)
from studymate.processing.extractor import ExtractionResult, PDFTextExtractor
from studymate.processing.persistence import ChunkPersister
from studymate.processing.progress import ProgressCallback, emit_progress
from studymate.processing.retry import NoopRetryScheduler, RetryScheduler
from studymate.schemas.documents import ProcessingPhase, ProcessingResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_LOCK_TTL_SECONDS = 900.0


@dataclass(frozen=True)
class PhaseTimeouts:
    """Per-phase wall-clock limits in seconds. None disables a limit."""
    parse_seconds: float | None = 120.0
    embed_seconds: float | None = 600.0
    save_seconds:  float | None = 300.0

    @classmethod
    def from_settings(cls) -> "PhaseTimeouts":
        from studymate.core.config import settings
        return cls(
            parse_seconds=settings.parse_timeout_seconds or None,
            embed_seconds=settings.embed_timeout_seconds or None,
            save_seconds=settings.save_timeout_seconds or None,
        )

    @classmethod
    def unlimited(cls) -> "PhaseTimeouts":
        return cls(parse_seconds=None, embed_seconds=None, save_seconds=None)


class DocumentProcessor:
    """
    Orchestrates extractor → chunker → embedder → persister for one document.

    Usage:
        processor = DocumentProcessor(
            store=SqlAlchemyDocumentStore(AsyncSessionLocal),
            embedder=Embedder(OpenAIEmbeddingClient.from_settings()),
            retry_scheduler=CeleryRetryScheduler(),
        )
        result = await processor.process_document(document_id, pdf_bytes, on_progress=sink)
    """

    def __init__(
        self,
        store:            DocumentStore,
        embedder:         Embedder,
        *,
        extractor:        PDFTextExtractor | None = None,
        chunker:          SmartChunker | None = None,
        persister:        ChunkPersister | None = None,
        chunking_options: ChunkingOptions | None = None,
        retry_scheduler:  RetryScheduler | None = None,
        timeouts:         PhaseTimeouts | None = None,
        lock_ttl_seconds: float = DEFAULT_LOCK_TTL_SECONDS,
    ) -> None:
        self._store            = store
        self._embedder         = embedder
        self._extractor        = extractor or PDFTextExtractor()
        self._chunker          = chunker or SmartChunker()
        self._persister        = persister or ChunkPersister(store)
        self._chunking_options = chunking_options or ChunkingOptions()
        self._retry_scheduler  = retry_scheduler or NoopRetryScheduler()
        self._timeouts         = timeouts or PhaseTimeouts()
        self._lock_ttl_seconds = lock_ttl_seconds

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def process_document(
        self,
        document_id:  UUID,
        buffer:       bytes,
        on_progress:  ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
        *,
        attempt:      int = 0,
    ) -> ProcessingResult:
        """
        Run the full pipeline. Never raises for pipeline failures; inspect
        `result.success` and `result.error` instead.

        Args:
            document_id:  Row in `documents` that owns the chunks
            buffer:       Raw PDF bytes
            on_progress:  Optional sink for ProcessingProgress events
            cancel_token: Optional cooperative cancel flag
            attempt:      0-based run number, passed on to the retry scheduler
        """
        t0 = time.monotonic()
        lock_token = uuid.uuid4().hex

        try:
            acquired = await self._store.acquire_lock(
                document_id, lock_token, self._lock_ttl_seconds, attempt=attempt,
            )
            if not acquired:
                if await self._store.get_document(document_id) is None:
                    raise DocumentNotFoundError(document_id)
                raise DocumentLockedError(document_id)
        except IngestionError as exc:
            logger.warning("DocumentProcessor rejected | doc=%s reason=%s", document_id, exc.message)
            await self._emit_error(on_progress, exc.message)
            return ProcessingResult(success=False, chunk_count=0, error=exc.message)
        except Exception as exc:
            return await self._handle_failure(document_id, exc, on_progress, attempt)

        logger.info("DocumentProcessor start | doc=%s attempt=%d bytes=%d", document_id, attempt, len(buffer))

        # The terminal status is written while the lock is held; another run
        # may only take over once this one has left `processing`.
        try:
            chunk_count = await self._run_phases(document_id, buffer, on_progress, cancel_token)
        except Exception as exc:
            logger.info(
                "DocumentProcessor failed | doc=%s elapsed_ms=%.0f",
                document_id, (time.monotonic() - t0) * 1000,
            )
            return await self._handle_failure(document_id, exc, on_progress, attempt)
        finally:
            await self._release_lock(document_id, lock_token)

        logger.info(
            "DocumentProcessor done | doc=%s chunks=%d elapsed_ms=%.0f",
            document_id, chunk_count, (time.monotonic() - t0) * 1000,
        )
        return ProcessingResult(success=True, chunk_count=chunk_count)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _run_phases(
        self,
        document_id:  UUID,
        buffer:       bytes,
        on_progress:  ProgressCallback | None,
        cancel_token: CancellationToken | None,
    ) -> int:
        # ── parsing ───────────────────────────────────────────────────
        self._check_cancelled(cancel_token, ProcessingPhase.PARSING)
        await emit_progress(on_progress, ProcessingPhase.PARSING, 0, "Extracting text from PDF...")
        extraction = await self._with_timeout(
            ProcessingPhase.PARSING, self._timeouts.parse_seconds, self._extract(buffer),
        )

        # ── chunking ──────────────────────────────────────────────────
        self._check_cancelled(cancel_token, ProcessingPhase.CHUNKING)
        await emit_progress(on_progress, ProcessingPhase.CHUNKING, 25, "Creating intelligent chunks...")
        chunks = self._chunker.chunk_extraction(
            extraction, self._chunking_options, document_id=document_id,
        )
        if not chunks:
            logger.warning("DocumentProcessor | doc=%s produced no chunks (no extractable text)", document_id)

        # ── embedding ─────────────────────────────────────────────────
        self._check_cancelled(cancel_token, ProcessingPhase.EMBEDDING)
        await emit_progress(on_progress, ProcessingPhase.EMBEDDING, 50, "Generating AI embeddings...")
        embedded: list[TextChunk] = await self._with_timeout(
            ProcessingPhase.EMBEDDING,
            self._timeouts.embed_seconds,
            self._embedder.embed(chunks, on_progress=on_progress, cancel_token=cancel_token),
        )

        # ── saving ────────────────────────────────────────────────────
        self._check_cancelled(cancel_token, ProcessingPhase.SAVING)
        await self._with_timeout(
            ProcessingPhase.SAVING,
            self._timeouts.save_seconds,
            self._persister.persist(
                document_id,
                embedded,
                on_progress=on_progress,
                page_count=extraction.metadata.page_count,
                cancel_token=cancel_token,
            ),
        )

        await emit_progress(
            on_progress, ProcessingPhase.COMPLETED, 100,
            f"Successfully processed {len(embedded)} chunks!",
            chunks_processed=len(embedded), total_chunks=len(embedded),
        )
        return len(embedded)

    async def _extract(self, buffer: bytes) -> ExtractionResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._extractor.extract, buffer)

    @staticmethod
    async def _with_timeout(phase: ProcessingPhase, timeout: float | None, aw: Awaitable[T]) -> T:
        if not timeout:
            return await aw
        try:
            return await asyncio.wait_for(aw, timeout)
        except asyncio.TimeoutError:
            raise PhaseTimeoutError(phase.value, timeout) from None

    @staticmethod
    def _check_cancelled(cancel_token: CancellationToken | None, phase: ProcessingPhase) -> None:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled(phase.value)

    # ------------------------------------------------------------------
    # Failure boundary
    # ------------------------------------------------------------------

    async def _handle_failure(
        self,
        document_id: UUID,
        error:       Exception,
        on_progress: ProgressCallback | None,
        attempt:     int,
    ) -> ProcessingResult:
        message = _error_message(error)

        if isinstance(error, IngestionError):
            logger.error(
                "DocumentProcessor error | doc=%s phase=%s retryable=%s error=%s",
                document_id, error.phase, error.retryable, message,
            )
        else:
            logger.error(
                "DocumentProcessor unexpected error | doc=%s error=%s",
                document_id, message, exc_info=error,
            )

        # The persister records its own failures before raising
        if not isinstance(error, PersistenceError):
            try:
                await self._store.mark_failed(document_id, message)
            except Exception as exc:
                logger.error("DocumentProcessor could not mark doc=%s failed: %s", document_id, exc)

        await self._emit_error(on_progress, message)

        if _is_retryable(error):
            try:
                scheduled = await self._retry_scheduler.enqueue(document_id, error, attempt)
                logger.info("DocumentProcessor retry | doc=%s attempt=%d scheduled=%s", document_id, attempt, scheduled)
            except Exception as exc:
                logger.error("DocumentProcessor retry scheduling failed | doc=%s error=%s", document_id, exc)

        return ProcessingResult(success=False, chunk_count=0, error=message)

    @staticmethod
    async def _emit_error(on_progress: ProgressCallback | None, message: str) -> None:
        await emit_progress(on_progress, ProcessingPhase.ERROR, 0, f"Processing failed: {message}")

    async def _release_lock(self, document_id: UUID, lock_token: str) -> None:
        try:
            await self._store.release_lock(document_id, lock_token)
        except Exception as exc:
            # An unreleased lock expires after the TTL
            logger.error("DocumentProcessor lock release failed | doc=%s error=%s", document_id, exc)


def _error_message(error: BaseException) -> str:
    if isinstance(error, IngestionError):
        return error.message
    return str(error) or type(error).__name__


def _is_retryable(error: BaseException) -> bool:
    if isinstance(error, IngestionError):
        return error.retryable
    return True


# ---------------------------------------------------------------------------
# Module-level convenience (used by the Celery task)
# ---------------------------------------------------------------------------

def build_document_processor(
    store:           DocumentStore | None = None,
    retry_scheduler: RetryScheduler | None = None,
) -> DocumentProcessor:
    """Processor wired from application settings."""
    from studymate.core.config import settings
    from studymate.processing.embeddings import OpenAIEmbeddingClient

    if store is None:
        from studymate.db.repository import SqlAlchemyDocumentStore
        from studymate.db.session import AsyncSessionLocal
        store = SqlAlchemyDocumentStore(AsyncSessionLocal)

    return DocumentProcessor(
        store=store,
        embedder=Embedder(
            OpenAIEmbeddingClient.from_settings(),
            batch_size=settings.embedding_batch_size,
            batch_delay_seconds=settings.embedding_batch_delay_seconds,
        ),
        persister=ChunkPersister(store, batch_size=settings.persist_batch_size),
        chunking_options=ChunkingOptions.from_settings(),
        retry_scheduler=retry_scheduler,
        timeouts=PhaseTimeouts.from_settings(),
        lock_ttl_seconds=settings.processing_lock_ttl_seconds,
    )


async def process_document(
    document_id: UUID,
    buffer:      bytes,
    on_progress: ProgressCallback | None = None,
) -> ProcessingResult:
    """Caller contract: process one PDF with the default wiring, never raises."""
    return await build_document_processor().process_document(document_id, buffer, on_progress)
