"""
Base protocol and types for the document store abstraction.

This module defines the DocumentStore protocol that all backends must
implement, along with the common record, predicate, write and change-event
types. The engine treats the store as an opaque collaborator offering
get/put/delete/query/commit/listen primitives.

Invariants:
    - StoredDocument.revision is a store-wide increasing counter
    - commit_batch applies all of its ops or none of them
    - A store transaction applies its buffered writes only if every document
      it read still has the revision it was read at

How to change safely:
    - Protocol changes require updating all implementations
    - Add new methods as optional with default implementations
"""

from __future__ import annotations

import copy
from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Tuple,
    TypeVar,
    runtime_checkable,
)

from ..errors import StorageError

if TYPE_CHECKING:
    from ..config import StorageConfig

T = TypeVar("T")

# Field path addressing the document id in predicates
DOCUMENT_ID = "__name__"


@dataclass(frozen=True)
class StoredDocument:
    """A document as held by the store.

    Attributes:
        collection: Collection name
        id: Document identifier
        data: Full field map (user fields and metadata)
        revision: Store revision of the last write to this document
    """

    collection: str
    id: str
    data: Dict[str, Any]
    revision: int

    @property
    def key(self) -> str:
        return f"{self.collection}/{self.id}"


@dataclass(frozen=True)
class QueryPredicates:
    """Filter, sort and limit clauses for a store query.

    Attributes:
        where: (field, op, value) clauses, applied in order
        order_by: (field, "asc"|"desc") clauses, first is primary
        limit: Maximum documents returned (None = unbounded)
    """

    where: Tuple[Tuple[str, str, Any], ...] = ()
    order_by: Tuple[Tuple[str, str], ...] = ()
    limit: Optional[int] = None


class WriteKind(Enum):
    """Kinds of buffered write operations."""

    SET = "set"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class WriteOp:
    """A single write staged for a batch or transaction commit.

    Attributes:
        kind: set, update or delete
        collection: Collection name
        doc_id: Document identifier
        data: Field map for set/update
        merge: For set, merge into the existing document instead of replacing
    """

    kind: WriteKind
    collection: str
    doc_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    merge: bool = True


class ChangeType(Enum):
    """Kinds of change events delivered to listeners."""

    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True)
class ChangeEvent:
    """A change to one document, as seen by a listener.

    For removed events, document holds the last state before removal.
    """

    type: ChangeType
    document: StoredDocument


def apply_write(existing: Optional[Dict[str, Any]], op: WriteOp) -> Optional[Dict[str, Any]]:
    """Compute the document state produced by a write.

    Args:
        existing: Current field map, or None if the document is absent
        op: Write to apply

    Returns:
        New field map, or None if the document is deleted

    Raises:
        StorageError: If an update targets a missing document
    """
    if op.kind == WriteKind.DELETE:
        return None
    if op.kind == WriteKind.UPDATE:
        if existing is None:
            raise StorageError(
                f"No document to update: {op.collection}/{op.doc_id}",
                operation="update",
                collection=op.collection,
                doc_id=op.doc_id,
            )
        return {**existing, **copy.deepcopy(op.data)}
    if op.merge and existing is not None:
        return {**existing, **copy.deepcopy(op.data)}
    return copy.deepcopy(op.data)


class StoreTransaction:
    """Handle passed to run_store_transaction callbacks.

    Reads go straight to the backend and record the revision they saw.
    Writes are buffered and applied by the backend after the callback
    returns.
    """

    def __init__(
        self,
        reader: Callable[[str, str], Awaitable[Optional[StoredDocument]]],
    ) -> None:
        self._reader = reader
        self.reads: Dict[Tuple[str, str], Optional[int]] = {}
        self.writes: List[WriteOp] = []

    async def get(self, collection: str, doc_id: str) -> Optional[StoredDocument]:
        """Read a document and record its revision for conflict detection."""
        doc = await self._reader(collection, doc_id)
        self.reads.setdefault((collection, doc_id), doc.revision if doc else None)
        return doc

    def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = True) -> None:
        self.writes.append(WriteOp(WriteKind.SET, collection, doc_id, data, merge))

    def update(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        self.writes.append(WriteOp(WriteKind.UPDATE, collection, doc_id, data))

    def delete(self, collection: str, doc_id: str) -> None:
        self.writes.append(WriteOp(WriteKind.DELETE, collection, doc_id))


ChangeCallback = Callable[[List[ChangeEvent]], None]


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol for document store backends.

    Durability contract:
        - put/delete/commit_batch return only after the change is applied
        - Listeners are notified after the change is visible to readers

    Example:
        >>> store = InMemoryDocumentStore()
        >>> await store.put("tasks", "t1", {"title": "Write docs"})
        >>> doc = await store.get("tasks", "t1")
    """

    max_batch_size: int

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[StoredDocument]:
        """Get a document by id, or None if absent."""
        ...

    @abstractmethod
    async def put(
        self,
        collection: str,
        doc_id: str,
        data: Dict[str, Any],
        merge: bool = True,
    ) -> None:
        """Write a document (top-level merge when merge=True)."""
        ...

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> bool:
        """Delete a document. Returns True if it existed."""
        ...

    @abstractmethod
    async def query(self, collection: str, predicates: QueryPredicates) -> List[StoredDocument]:
        """Query a collection."""
        ...

    @abstractmethod
    async def commit_batch(self, ops: List[WriteOp]) -> None:
        """Apply a list of writes atomically.

        Raises:
            StorageError: If any op cannot be applied (nothing is applied)
        """
        ...

    @abstractmethod
    async def run_store_transaction(
        self,
        fn: Callable[[StoreTransaction], Awaitable[T]],
    ) -> T:
        """Run one optimistic transaction attempt.

        Raises:
            ConflictError: If a document read by fn changed before commit
        """
        ...

    @abstractmethod
    def listen(
        self,
        collection: str,
        predicates: QueryPredicates,
        on_change: ChangeCallback,
    ) -> Callable[[], None]:
        """Register a change listener. Returns an idempotent detach callable."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...


def create_store(config: "StorageConfig") -> DocumentStore:
    """Factory function to create a document store from configuration.

    Args:
        config: Storage configuration

    Returns:
        Appropriate DocumentStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StoreBackend
    from .memory import InMemoryDocumentStore
    from .sqlite import SqliteDocumentStore

    if config.backend == StoreBackend.MEMORY:
        return InMemoryDocumentStore()
    elif config.backend == StoreBackend.SQLITE:
        return SqliteDocumentStore(
            data_dir=config.data_dir,
            db_name=config.db_name,
            wal_mode=config.wal_mode,
            busy_timeout_ms=config.busy_timeout_ms,
            cache_size_pages=config.cache_size_pages,
        )
    else:
        raise ValueError(f"Unsupported store backend: {config.backend}")
