"""
Ingestion pipeline exceptions.

Every phase failure is raised as an IngestionError subclass carrying the
phase it happened in. The orchestrator catches them exactly once and turns
them into a failed ProcessingResult; `retryable` tells the retry scheduler
whether re-running the document from scratch can help.
"""

from __future__ import annotations


class IngestionError(Exception):
    """Base class for all pipeline failures."""

    phase: str = "error"
    retryable: bool = True

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause


class ExtractionError(IngestionError):
    """The document buffer could not be parsed (corrupt, encrypted, not a PDF)."""

    phase = "parsing"
    retryable = False


class EmbeddingError(IngestionError):
    """The embedding service failed or returned an unusable response."""

    phase = "embedding"

    # Provider errors that will fail identically on every retry
    _PERMANENT_CAUSES = ("AuthenticationError", "PermissionDeniedError", "BadRequestError")

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message, cause=cause)
        if cause is not None and type(cause).__name__ in self._PERMANENT_CAUSES:
            self.retryable = False


class PersistenceError(IngestionError):
    """Writing chunk rows or the document status failed."""

    phase = "saving"


class PhaseTimeoutError(IngestionError):
    """A phase ran longer than its configured timeout."""

    def __init__(self, phase: str, timeout: float) -> None:
        super().__init__(f"{phase} phase timed out after {timeout:g}s")
        self.phase = phase
        self.timeout = timeout


class PipelineCancelledError(IngestionError):
    """The run was cancelled through its CancellationToken."""

    retryable = False

    def __init__(self, phase: str, reason: str = "") -> None:
        message = f"Processing cancelled during {phase}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.phase = phase
        self.reason = reason


class DocumentNotFoundError(IngestionError):
    """The document row does not exist (deleted after the run was queued)."""

    retryable = False

    def __init__(self, document_id: object) -> None:
        super().__init__(f"Document {document_id} not found")
        self.document_id = document_id


class DocumentLockedError(IngestionError):
    """Another run currently holds the document's processing lock."""

    retryable = False

    def __init__(self, document_id: object) -> None:
        super().__init__(f"Document {document_id} is already being processed")
        self.document_id = document_id


class RunInterruptedError(IngestionError):
    """A run's lock expired while the document was still `processing` (worker died or hit its hard limit)."""

    def __init__(self, document_id: object, message: str) -> None:
        super().__init__(message)
        self.document_id = document_id
