"""
In-memory document store implementation for testing.

This module provides a simple in-memory store backend for:
- Unit tests
- Integration tests
- Local development without external dependencies

Invariants:
    - All data is lost on process exit
    - Provides the same atomicity and conflict guarantees as durable backends
    - Safe for concurrent coroutines (asyncio lock around mutations)

How to change safely:
    - Keep interface compatible with DocumentStore protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from ..config import MAX_BATCH_SIZE
from ..errors import ConflictError
from .base import (
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


@dataclass
class _InjectedFailure:
    operation: str
    exception: Exception
    remaining: int
    match: Optional[Callable[[str, str], bool]]


class InMemoryDocumentStore:
    """In-memory implementation of DocumentStore for testing.

    Stores every collection as an insertion-ordered dictionary. Useful for:
    - Unit tests that need store behavior without external dependencies
    - Exercising failure and conflict paths through injection helpers

    Thread safety:
        Uses an asyncio lock for mutations. Safe to use from multiple
        coroutines.

    Example:
        >>> store = InMemoryDocumentStore()
        >>> await store.put("tasks", "t1", {"title": "Ship it"})
        >>> store.inject_failure("get", StorageError("boom"))
    """

    max_batch_size = MAX_BATCH_SIZE

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, StoredDocument]] = defaultdict(dict)
        self._revision = 0
        self._lock = asyncio.Lock()
        self._listeners = ListenerRegistry()
        self._failures: List[_InjectedFailure] = []
        self._pending_conflicts = 0

    async def get(self, collection: str, doc_id: str) -> Optional[StoredDocument]:
        """Get a document by id."""
        self._maybe_fail("get", collection, doc_id)
        doc = self._collections.get(collection, {}).get(doc_id)
        return self._copy(doc) if doc else None

    async def put(
        self,
        collection: str,
        doc_id: str,
        data: Dict[str, Any],
        merge: bool = True,
    ) -> None:
        """Write a document."""
        self._maybe_fail("put", collection, doc_id)
        async with self._lock:
            changes = self._apply_ops([WriteOp(WriteKind.SET, collection, doc_id, data, merge)])
        self._listeners.dispatch(changes)

    async def delete(self, collection: str, doc_id: str) -> bool:
        """Delete a document."""
        self._maybe_fail("delete", collection, doc_id)
        async with self._lock:
            existed = doc_id in self._collections.get(collection, {})
            changes = self._apply_ops([WriteOp(WriteKind.DELETE, collection, doc_id)])
        self._listeners.dispatch(changes)
        return existed

    async def query(self, collection: str, predicates: QueryPredicates) -> List[StoredDocument]:
        """Query a collection."""
        self._maybe_fail("query", collection, "")
        candidates = list(self._collections.get(collection, {}).values())
        return [self._copy(d) for d in apply_predicates(candidates, predicates)]

    async def commit_batch(self, ops: List[WriteOp]) -> None:
        """Apply writes atomically."""
        for op in ops:
            self._maybe_fail("commit_batch", op.collection, op.doc_id)
        async with self._lock:
            changes = self._apply_ops(ops)
        self._listeners.dispatch(changes)

    async def run_store_transaction(
        self,
        fn: Callable[[StoreTransaction], Awaitable[T]],
    ) -> T:
        """Run one optimistic transaction attempt."""
        txn = StoreTransaction(self.get)
        result = await fn(txn)

        async with self._lock:
            if self._pending_conflicts > 0:
                self._pending_conflicts -= 1
                raise ConflictError("Injected transaction conflict")

            for (collection, doc_id), revision in txn.reads.items():
                current = self._collections.get(collection, {}).get(doc_id)
                if (current.revision if current else None) != revision:
                    raise ConflictError(
                        f"Document changed during transaction: {collection}/{doc_id}",
                        collection=collection,
                        doc_id=doc_id,
                    )

            for op in txn.writes:
                self._maybe_fail("commit", op.collection, op.doc_id)
            changes = self._apply_ops(txn.writes)

        self._listeners.dispatch(changes)
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
        """Close (no-op for in-memory)."""
        logger.debug("InMemoryDocumentStore closed")

    def _apply_ops(self, ops: List[WriteOp]) -> List[DocumentChange]:
        """Stage every op, then apply all of them. Caller holds the lock."""
        staged: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = {}
        for op in ops:
            key = (op.collection, op.doc_id)
            if key in staged:
                existing = staged[key]
            else:
                current = self._collections.get(op.collection, {}).get(op.doc_id)
                existing = current.data if current else None
            staged[key] = apply_write(existing, op)

        changes = []
        for (collection, doc_id), data in staged.items():
            before = self._collections[collection].get(doc_id)
            if data is None:
                self._collections[collection].pop(doc_id, None)
                after = None
            else:
                self._revision += 1
                after = StoredDocument(collection, doc_id, data, self._revision)
                self._collections[collection][doc_id] = after
            if before is not None or after is not None:
                changes.append(DocumentChange(collection, doc_id, before, after))
        return changes

    @staticmethod
    def _copy(doc: StoredDocument) -> StoredDocument:
        return StoredDocument(doc.collection, doc.id, copy.deepcopy(doc.data), doc.revision)

    def _maybe_fail(self, operation: str, collection: str, doc_id: str) -> None:
        for failure in self._failures:
            if failure.operation != operation or failure.remaining <= 0:
                continue
            if failure.match is not None and not failure.match(collection, doc_id):
                continue
            failure.remaining -= 1
            if failure.remaining <= 0:
                self._failures.remove(failure)
            raise failure.exception

    # Testing helpers

    def inject_failure(
        self,
        operation: str,
        exception: Exception,
        times: int = 1,
        match: Optional[Callable[[str, str], bool]] = None,
    ) -> None:
        """Make the next matching calls raise an exception (testing helper).

        Args:
            operation: get, put, delete, query, commit_batch or commit
            exception: Exception to raise
            times: Number of calls that fail
            match: Optional (collection, doc_id) filter
        """
        self._failures.append(_InjectedFailure(operation, exception, times, match))

    def inject_conflict(self, times: int = 1) -> None:
        """Make the next transaction commits fail with a conflict (testing helper)."""
        self._pending_conflicts += times

    def document_count(self, collection: str) -> int:
        """Get document count for a collection (testing helper)."""
        return len(self._collections.get(collection, {}))

    @property
    def listener_count(self) -> int:
        """Number of attached listeners (testing helper)."""
        return len(self._listeners)

    def clear(self) -> None:
        """Drop all documents (testing helper)."""
        self._collections.clear()
