"""
Celery Tasks — Document Ingestion

Task: process_document
  1. Load the document row (missing → {"status": "not_found"})
  2. Download the PDF from storage
     (failure → document failed, retry scheduled with back-off)
  3. Run DocumentProcessor: parse → chunk → embed → save
     Progress is published as Celery state PROGRESS for pollers.
  4. Failed runs are handed to CeleryRetryScheduler, which re-enqueues
     this task with attempt + 1 and a countdown.

Task: recover_stale_documents
  Beat task (every 60 s). Fails documents stuck in 'processing' whose run
  lock has expired (worker crash, hard time limit) and hands them to the
  retry scheduler, so a document that keeps killing workers stops at the
  retry limit.

Task: health_check
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from celery import Task

from studymate.schemas.documents import ProcessingProgress
from studymate.workers.celery_app import (
    HEALTH_CHECK_TASK,
    PROCESS_DOCUMENT_TASK,
    RECOVER_STALE_TASK,
    celery_app,
)

logger = logging.getLogger(__name__)

STALE_RUN_MESSAGE = "Processing interrupted before completion"


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


async def _dispose_engine() -> None:
    # Each task runs on a fresh event loop; pooled asyncpg connections are
    # bound to the loop that opened them.
    from studymate.db.session import engine
    await engine.dispose()


# ---------------------------------------------------------------------------
# Main processing task
# ---------------------------------------------------------------------------

@celery_app.task(
    name=PROCESS_DOCUMENT_TASK,
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
)
def process_document(
    self: Task,
    *,
    document_id: str,
    attempt:     int = 0,
) -> dict[str, Any]:
    """
    Full ingestion for one document.
    Retries are new task messages scheduled by CeleryRetryScheduler, never
    Celery's own task.retry().
    """
    return run_async(
        _process_document_async(
            task=self,
            document_id=uuid.UUID(document_id),
            attempt=attempt,
        )
    )


async def _process_document_async(
    task:        Task,
    document_id: uuid.UUID,
    attempt:     int,
    store=None,
    source=None,
    retry_scheduler=None,
) -> dict[str, Any]:
    """Async implementation of the processing task."""
    from studymate.processing.pipeline import build_document_processor

    if store is None:
        from studymate.db.repository import SqlAlchemyDocumentStore
        from studymate.db.session import AsyncSessionLocal
        store = SqlAlchemyDocumentStore(AsyncSessionLocal)
    if source is None:
        from studymate.storage.documents import S3DocumentSource
        source = S3DocumentSource()
    if retry_scheduler is None:
        from studymate.workers.retry import CeleryRetryScheduler
        retry_scheduler = CeleryRetryScheduler()

    try:
        logger.info("Processing | doc=%s attempt=%d", document_id, attempt)

        # --- Load document record ------------------------------------------
        document = await store.get_document(document_id)
        if document is None:
            logger.error("Document not found | doc=%s", document_id)
            return {"status": "not_found", "document_id": str(document_id)}

        # --- Download from storage -----------------------------------------
        try:
            pdf_bytes = await source.fetch(document.storage_path)
        except Exception as exc:
            logger.exception("Storage download failed | doc=%s key=%s", document_id, document.storage_path)
            message = f"Failed to download document: {exc}"
            await store.mark_failed(document_id, message)
            await retry_scheduler.enqueue(document_id, exc, attempt)
            return {"status": "failed", "document_id": str(document_id), "error": message}

        # --- Pipeline --------------------------------------------------------
        def report_progress(event: ProcessingProgress) -> None:
            task.update_state(state="PROGRESS", meta=event.model_dump(mode="json"))

        processor = build_document_processor(store=store, retry_scheduler=retry_scheduler)
        result = await processor.process_document(
            document_id,
            pdf_bytes,
            on_progress=report_progress,
            attempt=attempt,
        )
    finally:
        await _dispose_engine()

    return {
        "status":      "completed" if result.success else "failed",
        "document_id": str(document_id),
        "chunk_count": result.chunk_count,
        "error":       result.error,
    }


# ---------------------------------------------------------------------------
# Stale-run recovery — runs every 60 seconds via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name=RECOVER_STALE_TASK,
    bind=False,
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def recover_stale_documents() -> dict[str, int]:
    """
    Fail documents whose run lock expired while still 'processing' and
    re-queue them within the retry limit. Handles workers killed mid-run.
    """
    return run_async(_recover_stale_documents_async())


async def _recover_stale_documents_async(store=None, retry_scheduler=None) -> dict[str, int]:
    from studymate.core.config import settings
    from studymate.processing.errors import RunInterruptedError

    if store is None:
        from studymate.db.repository import SqlAlchemyDocumentStore
        from studymate.db.session import AsyncSessionLocal
        store = SqlAlchemyDocumentStore(AsyncSessionLocal)
    if retry_scheduler is None:
        from studymate.workers.retry import CeleryRetryScheduler
        retry_scheduler = CeleryRetryScheduler()

    cutoff = datetime.now(timezone.utc) - timedelta(seconds=settings.processing_lock_ttl_seconds)
    try:
        stale_runs = await store.reclaim_stale(cutoff, STALE_RUN_MESSAGE)
    finally:
        await _dispose_engine()

    # The dead run counts as an attempt; the retry policy decides whether
    # another one is allowed.
    requeued = 0
    for run in stale_runs:
        error = RunInterruptedError(run.document_id, STALE_RUN_MESSAGE)
        if await retry_scheduler.enqueue(run.document_id, error, run.attempt):
            requeued += 1
            logger.info("Re-queued stale document | doc=%s failed_attempt=%d", run.document_id, run.attempt)
        else:
            logger.warning("Stale document left failed | doc=%s failed_attempt=%d", run.document_id, run.attempt)

    return {"requeued": requeued, "abandoned": len(stale_runs) - requeued}


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name=HEALTH_CHECK_TASK)
def health_check() -> dict[str, str]:
    return {"status": "ok", "worker": "healthy"}
