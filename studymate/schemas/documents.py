"""
Document Processing — Pydantic Schemas

Covers the ingestion pipeline's public shapes:
  - ProcessingStatus    — the documents.processing_status column
  - ProcessingPhase     — pipeline state machine, carried on every progress event
  - ProcessingProgress  — payload handed to progress sinks
  - ProcessingResult    — structured outcome of process_document()
  - Status / dispatch responses and structured error bodies for the HTTP API

Design decisions:
  - ProcessingResult never carries an exception object, only its message;
    callers inspect `success` instead of catching.
  - All timestamps are timezone-aware datetimes (serialized as ISO-8601).
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Document status — documents.processing_status
# ---------------------------------------------------------------------------

class ProcessingStatus(str, Enum):
    """
    Transitions within one run: pending | processing → completed | failed.
    Never reversed inside a run; a rerun starts again from processing.
    """
    PENDING     = "pending"       # uploaded, not yet picked up
    PROCESSING  = "processing"    # a run holds the lock and is working
    COMPLETED   = "completed"     # chunks + vectors stored, ready for chat
    FAILED      = "failed"        # see documents.error_message


# ---------------------------------------------------------------------------
# Pipeline phases
# ---------------------------------------------------------------------------

class ProcessingPhase(str, Enum):
    """parsing → chunking → embedding → saving → completed, or error from any phase."""
    PARSING    = "parsing"
    CHUNKING   = "chunking"
    EMBEDDING  = "embedding"
    SAVING     = "saving"
    COMPLETED  = "completed"
    ERROR      = "error"


class ProcessingProgress(BaseModel):
    """Event handed to the progress sink. Fire-and-forget."""
    phase:            ProcessingPhase
    progress:         int        = Field(..., ge=0, le=100, description="Percent complete within the run")
    message:          str
    chunks_processed: int | None = None
    total_chunks:     int | None = None


class ProcessingResult(BaseModel):
    """Outcome of DocumentProcessor.process_document()."""
    success:     bool
    chunk_count: int        = 0
    error:       str | None = None


# ---------------------------------------------------------------------------
# GET /documents/{id}/status
# ---------------------------------------------------------------------------

class DocumentSummary(BaseModel):
    id:                UUID
    title:             str
    processing_status: ProcessingStatus
    chunk_count:       int        = 0
    page_count:        int | None = None
    error_message:     str | None = None
    created_at:        datetime
    updated_at:        datetime


class StatusProgress(BaseModel):
    """Coarse progress estimate derived from the stored status."""
    percentage: int = Field(0, ge=0, le=100)
    message:    str
    phase:      ProcessingStatus


class DocumentStatusResponse(BaseModel):
    """Polled by clients to track processing of one document."""
    success:  bool = True
    document: DocumentSummary
    progress: StatusProgress


# ---------------------------------------------------------------------------
# POST /documents/{id}/process — 202 Accepted
# ---------------------------------------------------------------------------

class ProcessDispatchResponse(BaseModel):
    document_id:       UUID
    task_id:           str
    processing_status: ProcessingStatus = ProcessingStatus.PENDING


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code:    str              = Field(..., description="Stable machine-readable code")
    message:       str              = Field(..., description="Human-readable summary")
    details:       list[ErrorDetail] = Field(default_factory=list)
    request_id:    str | None       = Field(None, description="Trace ID for log correlation")


class DocumentErrors:
    """Factories for every documented error case."""

    @staticmethod
    def invalid_document_id(value: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_DOCUMENT_ID",
            message="Document ID must be a UUID.",
            details=[
                ErrorDetail(field="document_id", message=f"'{value}' is not a valid UUID.", code="INVALID_DOCUMENT_ID")
            ],
        )

    @staticmethod
    def document_not_found(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_NOT_FOUND",
            message=f"Document '{document_id}' was not found.",
            details=[],
        )

    @staticmethod
    def already_processing(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="ALREADY_PROCESSING",
            message=f"Document '{document_id}' is already being processed.",
            details=[],
        )

    @staticmethod
    def queue_error() -> ErrorResponse:
        return ErrorResponse(
            error_code="QUEUE_ERROR",
            message="Document could not be queued for processing.",
            details=[
                ErrorDetail(
                    field=None,
                    message="The message broker may be temporarily unavailable. Please retry.",
                    code="QUEUE_ERROR",
                )
            ],
        )
