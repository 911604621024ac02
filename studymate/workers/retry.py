"""Celery-backed RetryScheduler: a retry is a fresh process_document task with a countdown."""

from __future__ import annotations

import logging
from uuid import UUID

from studymate.processing.retry import RetryPolicy, RetryScheduler
from studymate.workers.celery_app import PROCESS_DOCUMENT_TASK, RETRY_QUEUE, celery_app

logger = logging.getLogger(__name__)


class CeleryRetryScheduler(RetryScheduler):

    def __init__(self, policy: RetryPolicy | None = None, app=None) -> None:
        self._policy = policy or RetryPolicy.from_settings()
        self._app    = app or celery_app

    async def enqueue(self, document_id: UUID, error: BaseException, attempt: int) -> bool:
        if not self._policy.should_retry(error, attempt):
            logger.info(
                "Retry not scheduled | doc=%s attempt=%d error=%s",
                document_id, attempt, type(error).__name__,
            )
            return False

        countdown = self._policy.delay_for(attempt)
        self._app.send_task(
            PROCESS_DOCUMENT_TASK,
            kwargs={"document_id": str(document_id), "attempt": attempt + 1},
            countdown=countdown,
            queue=RETRY_QUEUE,
        )
        logger.warning(
            "Retry scheduled | doc=%s next_attempt=%d countdown=%.1fs error=%s",
            document_id, attempt + 1, countdown, error,
        )
        return True
