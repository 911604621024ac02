"""
Unit Tests — Celery tasks
══════════════════════════
The async bodies are called directly; the broker, S3 and PostgreSQL are
replaced with mocks and InMemoryDocumentStore.
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from studymate.processing.retry import NoopRetryScheduler, RetryPolicy
from studymate.schemas.documents import ProcessingPhase, ProcessingProgress, ProcessingResult, ProcessingStatus
from studymate.storage.documents import DocumentSource
from studymate.workers import tasks
from studymate.workers.celery_app import PROCESS_DOCUMENT_TASK, RETRY_QUEUE
from studymate.workers.retry import CeleryRetryScheduler


@pytest.fixture
def no_engine_dispose():
    with patch("studymate.workers.tasks._dispose_engine", new_callable=AsyncMock) as dispose:
        yield dispose


@pytest.fixture
def source():
    src = MagicMock(spec=DocumentSource)
    src.fetch = AsyncMock(return_value=b"%PDF-1.4 fake")
    return src


@pytest.mark.unit
@pytest.mark.ingestion
class TestProcessDocumentTask:

    async def test_missing_document_returns_not_found(self, memory_store, source, no_engine_dispose):
        document_id = uuid.uuid4()

        result = await tasks._process_document_async(
            MagicMock(), document_id, 0,
            store=memory_store, source=source, retry_scheduler=NoopRetryScheduler(),
        )

        assert result == {"status": "not_found", "document_id": str(document_id)}
        source.fetch.assert_not_called()
        no_engine_dispose.assert_awaited_once()

    async def test_download_failure_marks_failed_and_schedules_retry(
        self, memory_store, make_document, source, no_engine_dispose,
    ):
        doc = make_document()
        source.fetch.side_effect = ConnectionError("endpoint unreachable")
        retries = NoopRetryScheduler()

        result = await tasks._process_document_async(
            MagicMock(), doc.id, 2, store=memory_store, source=source, retry_scheduler=retries,
        )

        assert result["status"] == "failed"
        assert result["error"] == "Failed to download document: endpoint unreachable"
        source.fetch.assert_awaited_once_with(doc.storage_path)
        assert memory_store.documents[doc.id].processing_status is ProcessingStatus.FAILED
        assert [(r[0], r[2]) for r in retries.requests] == [(doc.id, 2)]

    async def test_runs_processor_and_publishes_progress(
        self, memory_store, make_document, source, no_engine_dispose,
    ):
        doc = make_document()
        task = MagicMock()

        async def fake_run(document_id, buffer, on_progress=None, attempt=0):
            on_progress(ProcessingProgress(phase=ProcessingPhase.PARSING, progress=0, message="Extracting text from PDF..."))
            return ProcessingResult(success=True, chunk_count=4)

        processor = MagicMock()
        processor.process_document = AsyncMock(side_effect=fake_run)

        with patch("studymate.processing.pipeline.build_document_processor", return_value=processor) as build:
            result = await tasks._process_document_async(
                task, doc.id, 1, store=memory_store, source=source, retry_scheduler=NoopRetryScheduler(),
            )

        assert result == {
            "status":      "completed",
            "document_id": str(doc.id),
            "chunk_count": 4,
            "error":       None,
        }
        assert build.call_args.kwargs["store"] is memory_store
        processor.process_document.assert_awaited_once()
        assert processor.process_document.await_args.kwargs["attempt"] == 1

        task.update_state.assert_called_once()
        update = task.update_state.call_args.kwargs
        assert update["state"] == "PROGRESS"
        assert update["meta"]["phase"] == "parsing"
        assert update["meta"]["message"] == "Extracting text from PDF..."

    async def test_failed_run_is_reported(self, memory_store, make_document, source, no_engine_dispose):
        doc = make_document()
        processor = MagicMock()
        processor.process_document = AsyncMock(
            return_value=ProcessingResult(success=False, error="Failed to parse PDF: bad xref"),
        )

        with patch("studymate.processing.pipeline.build_document_processor", return_value=processor):
            result = await tasks._process_document_async(
                MagicMock(), doc.id, 0, store=memory_store, source=source, retry_scheduler=NoopRetryScheduler(),
            )

        assert result["status"] == "failed"
        assert result["chunk_count"] == 0
        assert result["error"] == "Failed to parse PDF: bad xref"


@pytest.mark.unit
class TestRecoverStaleDocuments:

    @staticmethod
    def _scheduler(max_attempts: int = 3):
        app = MagicMock()
        policy = RetryPolicy(max_attempts=max_attempts, jitter_seconds=0)
        return CeleryRetryScheduler(policy=policy, app=app), app

    async def test_expired_runs_are_failed_and_requeued(self, memory_store, make_document, no_engine_dispose):
        stale = make_document(status=ProcessingStatus.PROCESSING, locked_minutes_ago=30, processing_attempt=1)
        live = make_document(status=ProcessingStatus.PROCESSING, locked_minutes_ago=1)
        pending = make_document()
        scheduler, app = self._scheduler()

        result = await tasks._recover_stale_documents_async(store=memory_store, retry_scheduler=scheduler)

        assert result == {"requeued": 1, "abandoned": 0}
        app.send_task.assert_called_once_with(
            PROCESS_DOCUMENT_TASK,
            kwargs={"document_id": str(stale.id), "attempt": 2},
            countdown=30.0,
            queue=RETRY_QUEUE,
        )
        assert memory_store.documents[stale.id].processing_status is ProcessingStatus.FAILED
        assert memory_store.documents[stale.id].error_message == tasks.STALE_RUN_MESSAGE
        assert memory_store.documents[live.id].processing_status is ProcessingStatus.PROCESSING
        assert memory_store.documents[pending.id].processing_status is ProcessingStatus.PENDING

    async def test_document_at_retry_limit_is_not_requeued(self, memory_store, make_document, no_engine_dispose):
        # A document whose runs keep dying stops once the last allowed attempt dies
        doc = make_document(status=ProcessingStatus.PROCESSING, locked_minutes_ago=30, processing_attempt=2)
        scheduler, app = self._scheduler(max_attempts=3)

        result = await tasks._recover_stale_documents_async(store=memory_store, retry_scheduler=scheduler)

        assert result == {"requeued": 0, "abandoned": 1}
        app.send_task.assert_not_called()
        assert memory_store.documents[doc.id].processing_status is ProcessingStatus.FAILED
        assert memory_store.documents[doc.id].processing_lock_token is None

    async def test_repeatedly_dying_document_stops_at_limit(self, memory_store, make_document, no_engine_dispose):
        doc = make_document(status=ProcessingStatus.PROCESSING, locked_minutes_ago=30)
        scheduler, app = self._scheduler(max_attempts=3)
        requeued = []

        for _ in range(5):
            result = await tasks._recover_stale_documents_async(store=memory_store, retry_scheduler=scheduler)
            requeued.append(result["requeued"])
            if app.send_task.called:
                # The re-queued run takes the lock with its attempt number, then dies too
                next_attempt = app.send_task.call_args.kwargs["kwargs"]["attempt"]
                app.send_task.reset_mock()
                await memory_store.acquire_lock(doc.id, uuid.uuid4().hex, 900, attempt=next_attempt)
                record = memory_store.documents[doc.id]
                memory_store.add(replace(record, processing_locked_at=record.processing_locked_at - timedelta(hours=1)))

        assert requeued == [1, 1, 0, 0, 0]
        assert memory_store.documents[doc.id].processing_status is ProcessingStatus.FAILED

    async def test_nothing_stale(self, memory_store, no_engine_dispose):
        scheduler, app = self._scheduler()

        result = await tasks._recover_stale_documents_async(store=memory_store, retry_scheduler=scheduler)

        assert result == {"requeued": 0, "abandoned": 0}
        app.send_task.assert_not_called()


@pytest.mark.unit
def test_health_check_task():
    assert tasks.health_check() == {"status": "ok", "worker": "healthy"}
