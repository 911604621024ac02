"""
Chunk Persister
═══════════════

Writes a document's embedded chunks and records the outcome on the
document row.

Write sequence:
  1. progress event: saving 0% "Saving chunks to database..."
  2. delete the document's previous chunk set (a rerun replaces it)
  3. insert chunks in sub-batches (default 50) in chunk_index order, each
     sub-batch committed on its own, progress after each:
         "Saved 50/120 chunks..."
  4. mark the document completed with chunk_count (and page_count)

On any write error the document is marked failed with the cause message
and PersistenceError is raised. Rows from sub-batches that already
committed are left in place; the next run deletes them in step 2.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Sequence
from uuid import UUID

from studymate.db.repository import DocumentStore
from studymate.processing.cancellation import CancellationToken
from studymate.processing.chunking import TextChunk
from studymate.processing.errors import PersistenceError, PipelineCancelledError
from studymate.processing.progress import ProgressCallback, emit_progress
from studymate.schemas.documents import ProcessingPhase

logger = logging.getLogger(__name__)

PERSIST_BATCH_SIZE = 50


class ChunkPersister:

    def __init__(self, store: DocumentStore, batch_size: int = PERSIST_BATCH_SIZE) -> None:
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self._store      = store
        self._batch_size = batch_size

    async def persist(
        self,
        document_id:  UUID,
        chunks:       Sequence[TextChunk],
        on_progress:  ProgressCallback | None = None,
        page_count:   int | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        """
        Replace the document's chunk rows with `chunks` and mark it completed.

        Raises:
            PersistenceError: any write failed (document already marked failed)
            PipelineCancelledError: cancelled between sub-batches
        """
        total = len(chunks)
        t0 = time.monotonic()

        await emit_progress(
            on_progress, ProcessingPhase.SAVING, 0, "Saving chunks to database...",
            chunks_processed=0, total_chunks=total,
        )

        try:
            removed = await self._store.delete_chunks(document_id)
            if removed:
                logger.info("Persister | doc=%s replaced_previous_chunks=%d", document_id, removed)

            written = 0
            for start in range(0, total, self._batch_size):
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled(ProcessingPhase.SAVING.value)

                batch = [
                    chunk if chunk.document_id == document_id else _with_document(chunk, document_id)
                    for chunk in chunks[start : start + self._batch_size]
                ]
                await self._store.insert_chunks(document_id, batch)
                written += len(batch)

                await emit_progress(
                    on_progress, ProcessingPhase.SAVING,
                    round(written / total * 100), f"Saved {written}/{total} chunks...",
                    chunks_processed=written, total_chunks=total,
                )

            await self._store.mark_completed(document_id, chunk_count=total, page_count=page_count)

        except PipelineCancelledError:
            raise
        except Exception as exc:
            message = f"Failed to save chunks: {exc}"
            logger.error("Persister failed | doc=%s error=%s", document_id, exc, exc_info=True)
            await self._mark_failed_quietly(document_id, message)
            raise PersistenceError(message, cause=exc) from exc

        logger.info(
            "Persister done | doc=%s chunks=%d elapsed_ms=%.0f",
            document_id, total, (time.monotonic() - t0) * 1000,
        )

    async def _mark_failed_quietly(self, document_id: UUID, message: str) -> None:
        # The original write error is what gets raised; a failing status
        # update is only logged.
        try:
            await self._store.mark_failed(document_id, message)
        except Exception as exc:
            logger.error("Persister could not mark doc=%s failed: %s", document_id, exc)


def _with_document(chunk: TextChunk, document_id: UUID) -> TextChunk:
    return replace(chunk, document_id=document_id)
