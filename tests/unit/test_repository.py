"""
Unit Tests — SqlAlchemyDocumentStore
═════════════════════════════════════
The session factory is faked; statements are compiled with the PostgreSQL
dialect and inspected instead of being executed.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from studymate.db.repository import SqlAlchemyDocumentStore, StaleRun
from studymate.models.documents import Document
from studymate.processing.chunking import TextChunk
from studymate.schemas.documents import ProcessingStatus


class _Transaction:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, result=None, row=None) -> None:
        self.result   = result if result is not None else MagicMock()
        self.row      = row
        self.executed: list[tuple[object, object]] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def begin(self):
        return _Transaction()

    async def execute(self, stmt, params=None):
        self.executed.append((stmt, params))
        return self.result

    async def get(self, model, ident):
        return self.row


def _sql(stmt) -> str:
    return " ".join(str(stmt.compile(dialect=postgresql.dialect())).split())


def _store(session: FakeSession) -> SqlAlchemyDocumentStore:
    return SqlAlchemyDocumentStore(lambda: session)


@pytest.mark.unit
class TestSqlAlchemyDocumentStore:

    async def test_get_document_maps_row_to_record(self):
        now = datetime.now(timezone.utc)
        row = Document(
            id=uuid.uuid4(),
            title="Genetics",
            storage_path="documents/genetics.pdf",
            processing_status="completed",
            chunk_count=12,
            page_count=4,
            created_at=now,
            updated_at=now,
        )

        record = await _store(FakeSession(row=row)).get_document(row.id)

        assert record.id == row.id
        assert record.processing_status is ProcessingStatus.COMPLETED
        assert record.chunk_count == 12
        assert record.page_count == 4

    async def test_get_document_missing(self):
        assert await _store(FakeSession(row=None)).get_document(uuid.uuid4()) is None

    async def test_acquire_lock_is_conditional_update(self):
        result = MagicMock()
        result.scalar_one_or_none.return_value = uuid.uuid4()
        session = FakeSession(result=result)

        acquired = await _store(session).acquire_lock(uuid.uuid4(), "tok", 900, attempt=4)

        assert acquired is True
        sql = _sql(session.executed[0][0])
        assert sql.startswith("UPDATE documents SET")
        assert "documents.processing_lock_token IS NULL" in sql
        assert "documents.processing_locked_at <" in sql
        params = session.executed[0][0].compile(dialect=postgresql.dialect()).params
        assert params["processing_attempt"] == 4
        assert "RETURNING documents.id" in sql

    async def test_acquire_lock_refused(self):
        result = MagicMock()
        result.scalar_one_or_none.return_value = None

        assert await _store(FakeSession(result=result)).acquire_lock(uuid.uuid4(), "tok", 900) is False

    async def test_release_lock_only_for_owner(self):
        session = FakeSession()

        await _store(session).release_lock(uuid.uuid4(), "tok")

        assert "documents.processing_lock_token = " in _sql(session.executed[0][0])

    async def test_insert_chunks_passes_rows(self):
        session = FakeSession()
        document_id = uuid.uuid4()
        chunks = [
            TextChunk(chunk_index=i, content=f"c{i}", page_start=1, page_end=2, token_count=1, embedding=[0.0] * 8)
            for i in range(3)
        ]

        await _store(session).insert_chunks(document_id, chunks)

        stmt, rows = session.executed[0]
        assert "INSERT INTO pdf_chunks" in _sql(stmt)
        assert [r["chunk_index"] for r in rows] == [0, 1, 2]
        assert all(r["document_id"] == document_id for r in rows)
        assert rows[0]["page_end"] == 2

    async def test_insert_nothing_skips_session(self):
        session = FakeSession()
        await _store(session).insert_chunks(uuid.uuid4(), [])
        assert session.executed == []

    async def test_delete_chunks_returns_rowcount(self):
        result = MagicMock()
        result.rowcount = 7
        session = FakeSession(result=result)

        assert await _store(session).delete_chunks(uuid.uuid4()) == 7
        assert _sql(session.executed[0][0]).startswith("DELETE FROM pdf_chunks")

    async def test_mark_failed_truncates_message(self):
        session = FakeSession()

        await _store(session).mark_failed(uuid.uuid4(), "x" * 5000)

        params = session.executed[0][0].compile(dialect=postgresql.dialect()).params
        assert params["processing_status"] == "failed"
        assert len(params["error_message"]) == 2000

    async def test_mark_completed_sets_counts(self):
        session = FakeSession()

        await _store(session).mark_completed(uuid.uuid4(), chunk_count=5, page_count=3)

        params = session.executed[0][0].compile(dialect=postgresql.dialect()).params
        assert params["processing_status"] == "completed"
        assert params["chunk_count"] == 5
        assert params["page_count"] == 3
        assert params.get("error_message") is None

    async def test_reclaim_stale_returns_runs_with_attempt(self):
        first, second = uuid.uuid4(), uuid.uuid4()
        result = MagicMock()
        result.all.return_value = [(first, 0), (second, 3)]
        session = FakeSession(result=result)

        reclaimed = await _store(session).reclaim_stale(datetime.now(timezone.utc), "interrupted")

        assert reclaimed == [StaleRun(first, 0), StaleRun(second, 3)]
        sql = _sql(session.executed[0][0])
        assert "documents.processing_status = " in sql
        assert "RETURNING documents.id, documents.processing_attempt" in sql
