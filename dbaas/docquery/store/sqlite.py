"""
SQLite document store for docquery.

This module manages a single SQLite database that stores every collection:
- Documents as JSON field maps keyed by (collection, doc_id)
- A store-wide revision counter used for optimistic conflict detection

Invariants:
    - All write operations run inside BEGIN IMMEDIATE transactions
    - Every write bumps store_meta.revision and stamps the written rows
    - Transaction commits verify read revisions before applying writes
    - Listeners are notified only after COMMIT succeeds

How to change safely:
    - Schema migrations must be backward compatible
    - Use transactions for all write operations
    - Monitor SQLite file size and query latency on large collections

Table schema:
    documents:
        - collection TEXT
        - doc_id TEXT
        - data_json TEXT (JSON)
        - revision INTEGER
        - created_at INTEGER (Unix ms)
        - updated_at INTEGER (Unix ms)
        - PRIMARY KEY (collection, doc_id)

    store_meta:
        - key TEXT PRIMARY KEY
        - value INTEGER
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from ..config import MAX_BATCH_SIZE
from ..errors import ConflictError, StorageError
from ..values import now_ms
from .base import (
    DOCUMENT_ID,
    ChangeCallback,
    QueryPredicates,
    StoredDocument,
    StoreTransaction,
    WriteKind,
    WriteOp,
    apply_write,
)
from .filters import apply_predicates
from .listeners import DocumentChange, ListenerRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SqliteDocumentStore:
    """SQLite-backed implementation of DocumentStore.

    Provides:
    - Document CRUD with top-level merge writes
    - Atomic batch commits
    - Optimistic transactions checked against per-row revisions
    - In-process change listeners

    Query predicates are evaluated in Python over the collection's rows,
    with id-membership filters pushed down to SQL.

    Thread safety:
        Each database connection is created per-operation.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> store = SqliteDocumentStore("/var/lib/docquery")
        >>> await store.put("tasks", "t1", {"title": "My Task"})
        >>> doc = await store.get("tasks", "t1")
    """

    max_batch_size = MAX_BATCH_SIZE

    def __init__(
        self,
        data_dir: str,
        db_name: str = "docquery.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
    ) -> None:
        """Initialize the SQLite store.

        Args:
            data_dir: Directory for the database file
            db_name: Database file name
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / db_name
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self._listeners = ListenerRegistry()
        self._schema_ready = False

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a database connection, creating the schema on first use.

        Yields:
            SQLite connection
        """
        self.data_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            if not self._schema_ready:
                self._create_schema(conn)
                self._schema_ready = True

            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                doc_id TEXT NOT NULL,
                data_json TEXT NOT NULL DEFAULT '{}',
                revision INTEGER NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (collection, doc_id)
            );

            CREATE INDEX IF NOT EXISTS idx_documents_collection
                ON documents(collection, created_at);

            CREATE TABLE IF NOT EXISTS store_meta (
                key TEXT PRIMARY KEY,
                value INTEGER NOT NULL
            );

            INSERT OR IGNORE INTO store_meta (key, value) VALUES ('revision', 0);
        """)
        logger.info(f"Initialized document store: {self.db_path}")

    def _row_to_document(self, row: sqlite3.Row) -> StoredDocument:
        return StoredDocument(
            collection=row["collection"],
            id=row["doc_id"],
            data=json.loads(row["data_json"]),
            revision=row["revision"],
        )

    def _fetch(self, conn: sqlite3.Connection, collection: str, doc_id: str) -> Optional[StoredDocument]:
        cursor = conn.execute(
            "SELECT * FROM documents WHERE collection = ? AND doc_id = ?",
            (collection, doc_id),
        )
        row = cursor.fetchone()
        return self._row_to_document(row) if row else None

    async def get(self, collection: str, doc_id: str) -> Optional[StoredDocument]:
        """Get a document by id.

        Args:
            collection: Collection name
            doc_id: Document identifier

        Returns:
            StoredDocument or None if not found
        """
        try:
            with self._get_connection() as conn:
                return self._fetch(conn, collection, doc_id)
        except sqlite3.Error as e:
            raise StorageError(str(e), operation="get", collection=collection, doc_id=doc_id) from e

    async def put(
        self,
        collection: str,
        doc_id: str,
        data: Dict[str, Any],
        merge: bool = True,
    ) -> None:
        """Write a document.

        Uses PATCH semantics when merge=True - top-level keys are merged
        into the existing field map.
        """
        await self._commit([WriteOp(WriteKind.SET, collection, doc_id, data, merge)], "put")

    async def delete(self, collection: str, doc_id: str) -> bool:
        """Delete a document.

        Returns:
            True if deleted, False if not found
        """
        changes = await self._commit([WriteOp(WriteKind.DELETE, collection, doc_id)], "delete")
        return bool(changes)

    async def query(self, collection: str, predicates: QueryPredicates) -> List[StoredDocument]:
        """Query a collection.

        Args:
            collection: Collection name
            predicates: Filter, sort and limit clauses

        Returns:
            Matching documents
        """
        sql = "SELECT * FROM documents WHERE collection = ?"
        params: list[Any] = [collection]

        # Push id membership down to SQL
        for field_path, op, value in predicates.where:
            if field_path == DOCUMENT_ID and op == "in" and value:
                ids = [str(v) for v in value if isinstance(v, str)]
                sql += f" AND doc_id IN ({', '.join('?' for _ in ids) or 'NULL'})"
                params.extend(ids)
                break

        sql += " ORDER BY created_at, rowid"

        try:
            with self._get_connection() as conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(str(e), operation="query", collection=collection) from e

        return apply_predicates((self._row_to_document(r) for r in rows), predicates)

    async def commit_batch(self, ops: List[WriteOp]) -> None:
        """Apply writes atomically."""
        await self._commit(ops, "commit_batch")

    async def run_store_transaction(
        self,
        fn: Callable[[StoreTransaction], Awaitable[T]],
    ) -> T:
        """Run one optimistic transaction attempt."""
        txn = StoreTransaction(self.get)
        result = await fn(txn)
        await self._commit(txn.writes, "commit", reads=txn.reads)
        return result

    def listen(
        self,
        collection: str,
        predicates: QueryPredicates,
        on_change: ChangeCallback,
    ) -> Callable[[], None]:
        """Register a change listener."""
        return self._listeners.add(collection, predicates, on_change)

    async def close(self) -> None:
        """Nothing to release - connections are per-operation."""
        logger.debug("SqliteDocumentStore closed")

    async def _commit(
        self,
        ops: List[WriteOp],
        operation: str,
        reads: Optional[Dict[Tuple[str, str], Optional[int]]] = None,
    ) -> List[DocumentChange]:
        """Apply ops in one IMMEDIATE transaction, then notify listeners.

        Raises:
            ConflictError: If a read revision no longer matches
            StorageError: If any op cannot be applied
        """
        now = now_ms()
        try:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    for (collection, doc_id), revision in (reads or {}).items():
                        current = self._fetch(conn, collection, doc_id)
                        if (current.revision if current else None) != revision:
                            raise ConflictError(
                                f"Document changed during transaction: {collection}/{doc_id}",
                                collection=collection,
                                doc_id=doc_id,
                            )

                    changes = self._apply_ops(conn, ops, now)
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
        except sqlite3.Error as e:
            raise StorageError(str(e), operation=operation) from e

        self._listeners.dispatch(changes)
        return changes

    def _apply_ops(
        self,
        conn: sqlite3.Connection,
        ops: List[WriteOp],
        now: int,
    ) -> List[DocumentChange]:
        """Stage every op, then write the final states. Caller holds the transaction."""
        originals: Dict[Tuple[str, str], Optional[StoredDocument]] = {}
        staged: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = {}
        for op in ops:
            key = (op.collection, op.doc_id)
            if key not in originals:
                originals[key] = self._fetch(conn, op.collection, op.doc_id)
            existing = staged[key] if key in staged else (
                originals[key].data if originals[key] else None
            )
            staged[key] = apply_write(existing, op)

        if not staged:
            return []

        row = conn.execute("SELECT value FROM store_meta WHERE key = 'revision'").fetchone()
        revision = row[0]

        changes = []
        for (collection, doc_id), data in staged.items():
            before = originals[(collection, doc_id)]
            if data is None:
                conn.execute(
                    "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                    (collection, doc_id),
                )
                after = None
            else:
                revision += 1
                conn.execute(
                    """
                    INSERT INTO documents (collection, doc_id, data_json, revision,
                                           created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT (collection, doc_id) DO UPDATE SET
                        data_json = excluded.data_json,
                        revision = excluded.revision,
                        updated_at = excluded.updated_at
                    """,
                    (collection, doc_id, json.dumps(data), revision, now, now),
                )
                after = StoredDocument(collection, doc_id, data, revision)
            if before is not None or after is not None:
                changes.append(DocumentChange(collection, doc_id, before, after))

        conn.execute("UPDATE store_meta SET value = ? WHERE key = 'revision'", (revision,))

        logger.debug(
            "Committed writes",
            extra={"ops": len(ops), "documents": len(changes), "revision": revision},
        )
        return changes

    async def get_stats(self) -> Dict[str, int]:
        """Get document counts per collection."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT collection, COUNT(*) AS n FROM documents GROUP BY collection"
            )
            return {row["collection"]: row["n"] for row in cursor.fetchall()}
