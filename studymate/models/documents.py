"""
SQLAlchemy ORM Models — Documents & PDF Chunks

Using SQLAlchemy mapped classes (2.x style) for full async support.

Tables:
  documents   — one row per uploaded PDF, carries the ingestion status,
                counters and the advisory run lock
  pdf_chunks  — one row per chunk, with its pgvector embedding

A document's chunks are always replaced as a whole: a rerun deletes the
previous chunk set before inserting the new one.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from studymate.core.config import settings


# ---------------------------------------------------------------------------
# Declarative base — shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model — documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    Tracks a single uploaded PDF from upload → chunking → embedding.

    State machine (processing_status column):
        pending    — file stored, processing not yet started
        processing — a worker holds the run lock and is working
        completed  — chunks and vectors stored, available for chat
        failed     — pipeline error (see error_message)

    Run lock:
        processing_lock_token is set atomically when a run starts and cleared
        when it ends. A token older than the lock TTL is treated as abandoned.
        processing_attempt records which retry attempt took the lock.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "processing_status IN ('pending', 'processing', 'completed', 'failed')",
            name="documents_processing_status_check",
        ),
        Index("idx_documents_processing_status", "processing_status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )

    title: Mapped[str] = mapped_column(Text, nullable=False)

    storage_path: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Object key of the uploaded PDF in the document bucket",
    )
    size_bytes: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    page_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Ingestion state machine
    processing_status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="pending",
        server_default="pending",
    )
    chunk_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
        comment="Set only when processing completes",
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when processing_status='failed'",
    )

    # Advisory run lock
    processing_lock_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processing_locked_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    processing_attempt: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
        comment="0-based attempt number of the latest run; bounds stale-run re-queues",
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    chunks: Mapped[list["DocumentChunk"]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="DocumentChunk.chunk_index",
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} status={self.processing_status} "
            f"chunks={self.chunk_count} title={self.title!r}>"
        )


# ---------------------------------------------------------------------------
# Chunk model — pdf_chunks
# ---------------------------------------------------------------------------

class DocumentChunk(Base):
    """One embedded chunk of a Document, ordered by chunk_index."""

    __tablename__ = "pdf_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_pdf_chunks_position"),
        CheckConstraint("page_start <= page_end", name="pdf_chunks_page_range_check"),
        Index("idx_pdf_chunks_document_id", "document_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    chunk_index: Mapped[int]   = mapped_column(Integer, nullable=False)
    content: Mapped[str]       = mapped_column(Text, nullable=False)
    page_start: Mapped[int]    = mapped_column(Integer, nullable=False)
    page_end: Mapped[int]      = mapped_column(Integer, nullable=False)
    section_title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    token_count: Mapped[int]   = mapped_column(Integer, nullable=False, default=0, server_default="0")
    embedding: Mapped[Optional[list[float]]] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    document: Mapped[Document] = relationship(back_populates="chunks")

    def __repr__(self) -> str:
        return (
            f"<DocumentChunk document={self.document_id} index={self.chunk_index} "
            f"pages={self.page_start}-{self.page_end}>"
        )
