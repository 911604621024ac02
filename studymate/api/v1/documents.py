"""
Document Processing API Router

GET  /api/v1/documents/{document_id}/status   — poll processing status
POST /api/v1/documents/{document_id}/process  — (re)queue a document for ingestion

Progress estimate (derived from documents.processing_status):
  pending     0%   "Waiting to start processing..."
  processing 50%   "Processing document for chat..."
  completed 100%   "Ready for chat! (N sections indexed)"
  failed      0%   "Processing failed: <error_message>"

Fine-grained per-batch progress is published by the worker as Celery
PROGRESS state; this endpoint reads only the durable status.
"""

from __future__ import annotations

import asyncio
import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from studymate.core.config import settings
from studymate.db.repository import DocumentRecord, DocumentStore
from studymate.schemas.documents import (
    DocumentErrors,
    DocumentStatusResponse,
    DocumentSummary,
    ErrorResponse,
    ProcessDispatchResponse,
    ProcessingStatus,
    StatusProgress,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Document Processing"],
)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_document_store() -> DocumentStore:
    from studymate.db.repository import SqlAlchemyDocumentStore
    from studymate.db.session import AsyncSessionLocal
    return SqlAlchemyDocumentStore(AsyncSessionLocal)


class TaskPublisher:
    """
    Sends the processing task to the Celery broker.
    Import is deferred so the broker connection is not required at module load time.
    """

    async def publish_processing_task(self, document_id: UUID) -> str:
        """
        Dispatch process_document.apply_async() to the Celery worker.
        Runs in a thread executor to avoid blocking the event loop.
        Returns the Celery task id.
        """
        from studymate.workers.tasks import process_document

        loop = asyncio.get_running_loop()
        async_result = await loop.run_in_executor(
            None,
            lambda: process_document.apply_async(
                kwargs={"document_id": str(document_id), "attempt": 0},
            ),
        )
        return async_result.id


def get_task_publisher() -> TaskPublisher:
    return TaskPublisher()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _parse_document_id(raw: str) -> UUID:
    try:
        return UUID(raw)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=DocumentErrors.invalid_document_id(raw).model_dump(),
        ) from None


async def _load_document(store: DocumentStore, document_id: UUID) -> DocumentRecord:
    document = await store.get_document(document_id)
    if document is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=DocumentErrors.document_not_found(document_id).model_dump(),
        )
    return document


def build_status_progress(document: DocumentRecord) -> StatusProgress:
    """Coarse percentage and message for a stored processing status."""
    current = document.processing_status
    if current is ProcessingStatus.PROCESSING:
        return StatusProgress(percentage=50, message="Processing document for chat...", phase=current)
    if current is ProcessingStatus.COMPLETED:
        return StatusProgress(
            percentage=100,
            message=f"Ready for chat! ({document.chunk_count} sections indexed)",
            phase=current,
        )
    if current is ProcessingStatus.FAILED:
        return StatusProgress(
            percentage=0,
            message=f"Processing failed: {document.error_message or 'Unknown error'}",
            phase=current,
        )
    return StatusProgress(percentage=0, message="Waiting to start processing...", phase=current)


# ---------------------------------------------------------------------------
# GET /documents/{document_id}/status
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/status",
    response_model=DocumentStatusResponse,
    summary="Poll document processing status",
    responses={
        200: {"model": DocumentStatusResponse},
        400: {"model": ErrorResponse, "description": "Document id is not a UUID"},
        404: {"model": ErrorResponse, "description": "Document not found"},
    },
)
async def get_document_status(
    document_id: str,
    store: DocumentStore = Depends(get_document_store),
) -> DocumentStatusResponse:
    document = await _load_document(store, _parse_document_id(document_id))

    return DocumentStatusResponse(
        success=True,
        document=DocumentSummary(
            id=document.id,
            title=document.title,
            processing_status=document.processing_status,
            chunk_count=document.chunk_count,
            page_count=document.page_count,
            error_message=document.error_message,
            created_at=document.created_at,
            updated_at=document.updated_at,
        ),
        progress=build_status_progress(document),
    )


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/process
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/process",
    response_model=ProcessDispatchResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue a document for ingestion",
    description=(
        "Returns 202 immediately; processing is asynchronous. "
        "Poll GET /documents/{id}/status for progress. "
        "A completed or failed document is re-processed from scratch."
    ),
    responses={
        202: {"model": ProcessDispatchResponse, "description": "Processing task queued"},
        400: {"model": ErrorResponse, "description": "Document id is not a UUID"},
        404: {"model": ErrorResponse, "description": "Document not found"},
        409: {"model": ErrorResponse, "description": "A run currently holds the document"},
        503: {"model": ErrorResponse, "description": "Message broker unavailable"},
    },
)
async def process_document(
    document_id: str,
    store:     DocumentStore = Depends(get_document_store),
    publisher: TaskPublisher = Depends(get_task_publisher),
) -> JSONResponse:
    document = await _load_document(store, _parse_document_id(document_id))

    if (
        document.processing_status is ProcessingStatus.PROCESSING
        and document.lock_is_live(settings.processing_lock_ttl_seconds)
    ):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=DocumentErrors.already_processing(document.id).model_dump(),
        )

    try:
        task_id = await publisher.publish_processing_task(document.id)
    except Exception:
        logger.exception("Task dispatch failed | doc=%s", document.id)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=DocumentErrors.queue_error().model_dump(mode="json"),
        )

    logger.info("Processing queued | doc=%s task_id=%s", document.id, task_id)
    body = ProcessDispatchResponse(
        document_id=document.id,
        task_id=task_id,
        processing_status=document.processing_status,
    )
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=body.model_dump(mode="json"),
        headers={"Location": f"/api/v1/documents/{document.id}/status"},
    )
