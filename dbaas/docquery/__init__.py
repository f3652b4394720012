"""
docquery - Generic document-query layer over a managed document store.

This package sits between route handlers and the raw document store and adds:
- Optimistic versioning with a bounded change history
- Chunked batch writes with partial-failure accounting
- Read-then-write transactions retried on conflict
- Ad-hoc aggregation, fuzzy full-text search and graph traversal
- Buffered real-time change notification

Architecture:
    ┌──────────────┐     ┌──────────────────────────────────────────┐
    │ Route handler│────▶│                 Engine                   │
    │ (collaborator)│    │  write / batch / transaction / query ... │
    └──────────────┘     └───────────────────┬──────────────────────┘
                                             │
                        ┌────────────────────┼────────────────────┐
                        │                    │                    │
                        ▼                    ▼                    ▼
                   ┌─────────┐         ┌──────────┐        ┌────────────┐
                   │  write  │         │  query   │        │    live    │
                   │ (ver/   │         │ (search/ │        │ (buffered  │
                   │ batch/tx)│        │ agg/graph)│       │ listeners) │
                   └────┬────┘         └────┬─────┘        └─────┬──────┘
                        └───────────────────┼────────────────────┘
                                            ▼
                                  ┌───────────────────┐
                                  │  DocumentStore    │
                                  │ (memory / sqlite) │
                                  └───────────────────┘

Invariants:
    - A document's version increases by exactly 1 per successful write
    - History keeps at most the 50 most recent change records
    - Transaction reads always precede transaction writes
    - The store is the owner of durable state; the engine owns projections

How to change safely:
    - New store backends must implement the DocumentStore protocol
    - Reserved metadata keys must never be reused as user fields
    - Keep operations free of module-level state (pass the Engine around)
"""

from ._version import __version__
from .engine import Engine, setup_logging
from .errors import (
    AccessDeniedError,
    ConflictError,
    DocQueryError,
    NotFoundError,
    StorageError,
    TransactionError,
    ValidationError,
)
from .models import ChangeKind, ChangeRecord, Document, FieldDiff
from .values import UNDEFINED

__all__ = [
    "__version__",
    "Engine",
    "setup_logging",
    "AccessDeniedError",
    "ConflictError",
    "DocQueryError",
    "NotFoundError",
    "StorageError",
    "TransactionError",
    "ValidationError",
    "ChangeKind",
    "ChangeRecord",
    "Document",
    "FieldDiff",
    "UNDEFINED",
]
