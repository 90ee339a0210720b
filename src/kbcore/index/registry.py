"""SQLite document registry: one row per source."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional, TypeVar

from kbcore.errors import StoreUnreachable
from kbcore.models import DocumentType, KnowledgeDocument

T = TypeVar("T")

LOGGER = logging.getLogger(__name__)

_REGISTRY_TYPES = tuple(t.value for t in DocumentType if t.registrable)
_COLUMNS = "id, source, title, type, chunk_count, date_added, updated_at"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLiteRegistry:
    """Document listing kept apart from the vector store.

    It is a derived cache: everything in it can be rebuilt from the vector
    store. Public methods are coroutines; the SQLite work runs in a worker
    thread, one statement group at a time.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
            self._ensure_schema()
        except sqlite3.Error as exc:
            raise StoreUnreachable(f"Registry at {self.db_path} unavailable: {exc}") from exc

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def _ensure_schema(self) -> None:
        allowed = ", ".join(f"'{value}'" for value in _REGISTRY_TYPES)
        with self.transaction() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS knowledge_documents (
                    id TEXT PRIMARY KEY,
                    source TEXT NOT NULL UNIQUE,
                    title TEXT NOT NULL,
                    type TEXT NOT NULL CHECK (type IN ({allowed})),
                    chunk_count INTEGER NOT NULL DEFAULT 0,
                    date_added TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS knowledge_documents_updated
                AFTER UPDATE ON knowledge_documents
                BEGIN
                    UPDATE knowledge_documents
                    SET updated_at = strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now')
                    WHERE id = NEW.id;
                END;
                """
            )
            conn.execute(
                """CREATE INDEX IF NOT EXISTS idx_knowledge_documents_date_added
                    ON knowledge_documents(date_added)
                """
            )

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(partial(func, *args))
        except sqlite3.Error as exc:
            LOGGER.error("Registry operation failed: %s", exc)
            raise StoreUnreachable(f"Registry operation failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def register(
        self,
        source: str,
        title: str,
        type: DocumentType | str,
        chunk_count: int,
        *,
        date_added: str | None = None,
    ) -> KnowledgeDocument:
        """Insert or update the row for ``source``."""
        doc_type = DocumentType.parse(type)
        if not doc_type.registrable:
            raise ValueError(f"Documents of type {doc_type.value!r} are not registered")
        return await self._run(
            self._register, source, title, doc_type, chunk_count, date_added or utc_now()
        )

    def _register(
        self, source: str, title: str, doc_type: DocumentType, chunk_count: int, date_added: str
    ) -> KnowledgeDocument:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO knowledge_documents
                    (id, source, title, type, chunk_count, date_added, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(source) DO UPDATE SET
                    title = excluded.title,
                    type = excluded.type,
                    chunk_count = excluded.chunk_count,
                    date_added = excluded.date_added
                """,
                (str(uuid.uuid4()), source, title, doc_type.value, chunk_count, date_added, date_added),
            )
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM knowledge_documents WHERE source = ?", (source,)
            ).fetchone()
        LOGGER.info("Registered: %s (%s chunks)", title, chunk_count)
        return _row_to_document(row)

    async def unregister(self, source: str) -> bool:
        """Delete the row for ``source``; missing rows are not an error."""
        return await self._run(self._unregister, source)

    def _unregister(self, source: str) -> bool:
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM knowledge_documents WHERE source = ?", (source,))
        if cur.rowcount:
            LOGGER.info("Unregistered: %s", source)
        return cur.rowcount > 0

    async def list(self) -> List[KnowledgeDocument]:
        """All rows, newest first."""
        return await self._run(self._list)

    def _list(self) -> List[KnowledgeDocument]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_COLUMNS} FROM knowledge_documents ORDER BY date_added DESC, source"
            ).fetchall()
        return [_row_to_document(row) for row in rows]

    async def get(self, source: str) -> Optional[KnowledgeDocument]:
        return await self._run(self._get, source)

    def _get(self, source: str) -> Optional[KnowledgeDocument]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_COLUMNS} FROM knowledge_documents WHERE source = ?", (source,)
            ).fetchone()
        return _row_to_document(row) if row else None

    async def update_chunk_count(self, source: str, count: int) -> bool:
        return await self._run(self._update_chunk_count, source, count)

    def _update_chunk_count(self, source: str, count: int) -> bool:
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE knowledge_documents SET chunk_count = ? WHERE source = ?",
                (count, source),
            )
        if cur.rowcount:
            LOGGER.info("Updated chunk count: %s -> %s", source, count)
        return cur.rowcount > 0

    async def clear(self) -> int:
        """Remove every row. Only for full resets before a rebuild."""
        return await self._run(self._clear)

    def _clear(self) -> int:
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM knowledge_documents")
        LOGGER.warning("Cleared %s registry rows", cur.rowcount)
        return cur.rowcount

    async def ping(self) -> bool:
        await self._run(self._ping)
        return True

    def _ping(self) -> None:
        with self._lock:
            self._conn.execute("SELECT id FROM knowledge_documents LIMIT 1").fetchall()


def _row_to_document(row: sqlite3.Row) -> KnowledgeDocument:
    return KnowledgeDocument(
        id=row["id"],
        source=row["source"],
        title=row["title"],
        type=DocumentType(row["type"]),
        chunk_count=row["chunk_count"],
        date_added=row["date_added"],
        updated_at=row["updated_at"],
    )
