"""
Write paths for docquery - versioned writes, batches and transactions.

All three paths share VersionedWriter.prepare(), so a document gets the
same version/history treatment however it is written.

Invariants:
    - version increases by exactly 1 per applied write
    - Batch chunks and transactions commit atomically
    - Transaction writes are applied only after every read
"""

from .batch import (
    BatchExecutor,
    BatchFailure,
    BatchOp,
    BatchOpKind,
    BatchOpResult,
    BatchProgress,
    BatchResult,
)
from .transaction import (
    TransactionCoordinator,
    TransactionHandle,
    TransactionOperation,
    TransactionOpKind,
    TransactionResult,
)
from .versioned import PreparedWrite, VersionedWriter

__all__ = [
    "VersionedWriter",
    "PreparedWrite",
    "BatchExecutor",
    "BatchOp",
    "BatchOpKind",
    "BatchOpResult",
    "BatchFailure",
    "BatchProgress",
    "BatchResult",
    "TransactionCoordinator",
    "TransactionHandle",
    "TransactionOperation",
    "TransactionOpKind",
    "TransactionResult",
]
