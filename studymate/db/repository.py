"""
Document store — durable state for the ingestion pipeline.

DocumentStore is the port the persister, orchestrator, worker and API talk
to; SqlAlchemyDocumentStore is the PostgreSQL implementation over the
`documents` and `pdf_chunks` tables.

Every method runs in its own short transaction. Nothing here holds a
session across awaits of other components.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import NamedTuple, Sequence
from uuid import UUID

from sqlalchemy import delete, insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studymate.models.documents import Document, DocumentChunk
from studymate.processing.chunking import TextChunk
from studymate.schemas.documents import ProcessingStatus

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Snapshot returned to callers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DocumentRecord:
    id:                    UUID
    title:                 str
    storage_path:          str
    processing_status:     ProcessingStatus
    chunk_count:           int                = 0
    page_count:            int | None         = None
    size_bytes:            int | None         = None
    error_message:         str | None         = None
    processing_lock_token: str | None         = None
    processing_locked_at:  datetime | None    = None
    processing_attempt:    int                = 0
    created_at:            datetime | None    = None
    updated_at:            datetime | None    = None

    def lock_is_live(self, ttl_seconds: float, now: datetime | None = None) -> bool:
        """True while a run holds the lock and it has not outlived the TTL."""
        if self.processing_lock_token is None or self.processing_locked_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return self.processing_locked_at > now - timedelta(seconds=ttl_seconds)


class StaleRun(NamedTuple):
    """A run reclaimed after its lock expired."""
    document_id: UUID
    attempt:     int


# ---------------------------------------------------------------------------
# Port
# ---------------------------------------------------------------------------

class DocumentStore(ABC):

    @abstractmethod
    async def get_document(self, document_id: UUID) -> DocumentRecord | None:
        ...

    @abstractmethod
    async def acquire_lock(
        self,
        document_id: UUID,
        token:       str,
        ttl_seconds: float,
        attempt:     int = 0,
    ) -> bool:
        """
        Atomically take the run lock when it is free or older than the TTL,
        record `attempt` and move the document to `processing`. Returns False
        when another live run holds it or the document does not exist.
        """

    @abstractmethod
    async def release_lock(self, document_id: UUID, token: str) -> None:
        """Clear the lock if `token` still owns it."""

    @abstractmethod
    async def delete_chunks(self, document_id: UUID) -> int:
        """Remove every chunk row of the document; returns the count removed."""

    @abstractmethod
    async def insert_chunks(self, document_id: UUID, chunks: Sequence[TextChunk]) -> None:
        """Insert `chunks` in one transaction."""

    @abstractmethod
    async def mark_completed(
        self,
        document_id: UUID,
        chunk_count: int,
        page_count:  int | None = None,
    ) -> None:
        ...

    @abstractmethod
    async def mark_failed(self, document_id: UUID, error_message: str) -> None:
        ...

    @abstractmethod
    async def reclaim_stale(self, older_than: datetime, error_message: str) -> list[StaleRun]:
        """
        Fail every document stuck in `processing` whose lock is missing or
        older than `older_than`, clear the lock, and return each one with
        the attempt number of the run that died.
        """


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------

class SqlAlchemyDocumentStore(DocumentStore):
    """
    Usage:
        from studymate.db.session import AsyncSessionLocal
        store = SqlAlchemyDocumentStore(AsyncSessionLocal)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_document(self, document_id: UUID) -> DocumentRecord | None:
        async with self._session_factory() as session:
            row = await session.get(Document, document_id)
            return _to_record(row) if row is not None else None

    async def acquire_lock(
        self,
        document_id: UUID,
        token:       str,
        ttl_seconds: float,
        attempt:     int = 0,
    ) -> bool:
        now = datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=ttl_seconds)
        stmt = (
            update(Document)
            .where(Document.id == document_id)
            .where(
                or_(
                    Document.processing_lock_token.is_(None),
                    Document.processing_locked_at.is_(None),
                    Document.processing_locked_at < cutoff,
                )
            )
            .values(
                processing_lock_token=token,
                processing_locked_at=now,
                processing_attempt=attempt,
                processing_status=ProcessingStatus.PROCESSING.value,
            )
            .returning(Document.id)
        )
        async with self._session_factory() as session, session.begin():
            acquired = (await session.execute(stmt)).scalar_one_or_none() is not None

        logger.debug("Lock acquire | doc=%s acquired=%s", document_id, acquired)
        return acquired

    async def release_lock(self, document_id: UUID, token: str) -> None:
        stmt = (
            update(Document)
            .where(Document.id == document_id)
            .where(Document.processing_lock_token == token)
            .values(processing_lock_token=None, processing_locked_at=None)
        )
        async with self._session_factory() as session, session.begin():
            await session.execute(stmt)

    async def delete_chunks(self, document_id: UUID) -> int:
        stmt = delete(DocumentChunk).where(DocumentChunk.document_id == document_id)
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
        return result.rowcount or 0

    async def insert_chunks(self, document_id: UUID, chunks: Sequence[TextChunk]) -> None:
        if not chunks:
            return
        rows = [
            {
                "document_id":   document_id,
                "chunk_index":   chunk.chunk_index,
                "content":       chunk.content,
                "page_start":    chunk.page_start,
                "page_end":      chunk.page_end,
                "section_title": None,
                "token_count":   chunk.token_count,
                "embedding":     chunk.embedding,
            }
            for chunk in chunks
        ]
        async with self._session_factory() as session, session.begin():
            await session.execute(insert(DocumentChunk), rows)

    async def mark_completed(
        self,
        document_id: UUID,
        chunk_count: int,
        page_count:  int | None = None,
    ) -> None:
        values: dict = {
            "processing_status": ProcessingStatus.COMPLETED.value,
            "chunk_count":       chunk_count,
            "error_message":     None,
        }
        if page_count is not None:
            values["page_count"] = page_count
        async with self._session_factory() as session, session.begin():
            await session.execute(
                update(Document).where(Document.id == document_id).values(**values)
            )

    async def mark_failed(self, document_id: UUID, error_message: str) -> None:
        async with self._session_factory() as session, session.begin():
            await session.execute(
                update(Document)
                .where(Document.id == document_id)
                .values(
                    processing_status=ProcessingStatus.FAILED.value,
                    error_message=error_message[:2000],
                )
            )

    async def reclaim_stale(self, older_than: datetime, error_message: str) -> list[StaleRun]:
        stmt = (
            update(Document)
            .where(Document.processing_status == ProcessingStatus.PROCESSING.value)
            .where(
                or_(
                    Document.processing_locked_at.is_(None),
                    Document.processing_locked_at < older_than,
                )
            )
            .values(
                processing_status=ProcessingStatus.FAILED.value,
                error_message=error_message,
                processing_lock_token=None,
                processing_locked_at=None,
            )
            .returning(Document.id, Document.processing_attempt)
        )
        async with self._session_factory() as session, session.begin():
            rows = (await session.execute(stmt)).all()
        return [StaleRun(document_id=row[0], attempt=row[1] or 0) for row in rows]


def _to_record(row: Document) -> DocumentRecord:
    return DocumentRecord(
        id=row.id,
        title=row.title,
        storage_path=row.storage_path,
        processing_status=ProcessingStatus(row.processing_status),
        chunk_count=row.chunk_count or 0,
        page_count=row.page_count,
        size_bytes=row.size_bytes,
        error_message=row.error_message,
        processing_lock_token=row.processing_lock_token,
        processing_locked_at=row.processing_locked_at,
        processing_attempt=row.processing_attempt or 0,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
