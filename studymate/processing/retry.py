"""
Retry scheduling for failed runs.

The orchestrator never retries in-process. When a run fails with a
retryable error it hands the document to a RetryScheduler, which decides
whether and when a fresh run happens.

Back-off policy (RetryPolicy defaults):
  delay(attempt) = min(base × 2^attempt, cap) + uniform(0, jitter)
  attempt 0 → ~15s, 1 → ~30s, 2 → ~60s, … capped at 300s, 10 attempts max
"""

from __future__ import annotations

import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from uuid import UUID

from studymate.processing.errors import IngestionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    base_delay_seconds: float = 15.0
    max_delay_seconds:  float = 300.0
    max_attempts:       int   = 10
    jitter_seconds:     float = 5.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        from studymate.core.config import settings
        return cls(
            base_delay_seconds=settings.retry_base_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
            max_attempts=settings.retry_max_attempts,
            jitter_seconds=settings.retry_jitter_seconds,
        )

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """`attempt` is the 0-based number of the run that just failed."""
        if isinstance(error, IngestionError) and not error.retryable:
            return False
        # A missing upload will not reappear
        if isinstance(error, FileNotFoundError):
            return False
        return attempt + 1 < self.max_attempts

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        backoff = min(self.base_delay_seconds * (2 ** attempt), self.max_delay_seconds)
        jitter = (rng or random).uniform(0, self.jitter_seconds) if self.jitter_seconds > 0 else 0.0
        return backoff + jitter


class RetryScheduler(ABC):

    @abstractmethod
    async def enqueue(self, document_id: UUID, error: BaseException, attempt: int) -> bool:
        """Schedule a new run; returns True when one was scheduled."""


class NoopRetryScheduler(RetryScheduler):
    """Never retries. Records what it was asked to do, for inspection."""

    def __init__(self) -> None:
        self.requests: list[tuple[UUID, BaseException, int]] = []

    async def enqueue(self, document_id: UUID, error: BaseException, attempt: int) -> bool:
        self.requests.append((document_id, error, attempt))
        logger.debug("Retry skipped | doc=%s attempt=%d error=%s", document_id, attempt, error)
        return False
