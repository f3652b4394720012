"""
Document store abstraction for docquery.

This module provides a pluggable store backend interface supporting:
- SQLite (durable single-file store)
- In-memory (for testing and local development)

The store owns durable state. The engine only reads and writes through
the DocumentStore primitives and never assumes anything about indexing
or storage format.

Invariants:
    - commit_batch is all-or-nothing
    - Transaction commits fail with ConflictError when a read went stale
    - Listeners observe changes only after they are committed

How to change safely:
    - New backends must implement the DocumentStore protocol
    - Reuse filters.apply_predicates so query semantics stay identical
"""

from .base import (
    DOCUMENT_ID,
    ChangeEvent,
    ChangeType,
    DocumentStore,
    QueryPredicates,
    StoredDocument,
    StoreTransaction,
    WriteKind,
    WriteOp,
    create_store,
)
from .memory import InMemoryDocumentStore
from .sqlite import SqliteDocumentStore

__all__ = [
    # Protocol and types
    "DocumentStore",
    "StoredDocument",
    "QueryPredicates",
    "StoreTransaction",
    "WriteKind",
    "WriteOp",
    "ChangeType",
    "ChangeEvent",
    "DOCUMENT_ID",
    # Factory
    "create_store",
    # Implementations
    "InMemoryDocumentStore",
    "SqliteDocumentStore",
]
