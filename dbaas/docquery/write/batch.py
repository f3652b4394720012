"""
Chunked batch writes with partial-failure accounting.

Operations are split into chunks of at most chunk_size (never more than
the store's max_batch_size). Each op in a chunk gets versioned-write
metadata computed exactly like a single write, is staged, and the chunk is
committed atomically.

Invariants:
    - Chunk N is committed before chunk N+1 is staged
    - A chunk commit is all-or-nothing; across chunks there is no such guarantee
    - successful + failed always accounts for every processed op

How to change safely:
    - Keep delete ops free of reads and diffing
    - Progress reports must be emitted once per chunk, after its commit
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union

from ..errors import ValidationError
from ..models import ChangeKind, Document
from ..store.base import DocumentStore, WriteKind, WriteOp
from ..values import now_ms
from .versioned import VersionedWriter

logger = logging.getLogger(__name__)


class BatchOpKind(Enum):
    """Kinds of batch operations."""

    SET = "set"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class BatchOp:
    """A single operation submitted to execute_batch.

    Attributes:
        kind: set, create, update or delete
        collection: Collection name
        doc_id: Document identifier
        fields: User payload (ignored for delete)
    """

    kind: BatchOpKind
    collection: str
    doc_id: str
    fields: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, op: Union[BatchOp, Dict[str, Any]]) -> BatchOp:
        """Accept a BatchOp or an equivalent dictionary.

        Dictionaries use the keys kind (or type), collection, id (or doc_id)
        and fields (or data).

        Raises:
            ValidationError: If the op is malformed
        """
        if isinstance(op, BatchOp):
            return op
        if not isinstance(op, dict):
            raise ValidationError(f"Batch op must be a BatchOp or dict, got {type(op).__name__}")

        kind = op.get("kind", op.get("type", "set"))
        try:
            kind = BatchOpKind(kind.value if isinstance(kind, Enum) else kind)
        except ValueError:
            raise ValidationError(f"Unknown batch op kind '{kind}'", field_name="kind")

        collection = op.get("collection")
        doc_id = op.get("id", op.get("doc_id"))
        if not isinstance(collection, str) or not collection:
            raise ValidationError("Batch op requires a collection", field_name="collection")
        if not isinstance(doc_id, str) or not doc_id:
            raise ValidationError("Batch op requires an id", field_name="id")

        return cls(
            kind=kind,
            collection=collection,
            doc_id=doc_id,
            fields=op.get("fields", op.get("data")) or {},
        )


@dataclass
class BatchOpResult:
    """A committed batch operation."""

    collection: str
    id: str
    kind: BatchOpKind
    document: Optional[Document]


@dataclass
class BatchFailure:
    """An operation that could not be staged or committed."""

    op: Any
    error: Exception


@dataclass(frozen=True)
class BatchProgress:
    """Progress report emitted after each chunk."""

    chunk_index: int
    total_chunks: int
    processed: int
    total: int
    successful: int
    failed: int


@dataclass
class BatchResult:
    """Outcome of execute_batch."""

    total: int
    successful: List[BatchOpResult] = field(default_factory=list)
    failed: List[BatchFailure] = field(default_factory=list)


ProgressCallback = Callable[[BatchProgress], Union[None, Awaitable[None]]]


class BatchExecutor:
    """Commits many writes in atomic chunks."""

    def __init__(self, store: DocumentStore, writer: VersionedWriter, chunk_size: int = 500) -> None:
        self.store = store
        self.writer = writer
        self.chunk_size = chunk_size

    async def execute_batch(
        self,
        ops: Iterable[Union[BatchOp, Dict[str, Any]]],
        continue_on_error: bool = False,
        chunk_size: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
        actor: Optional[str] = None,
    ) -> BatchResult:
        """Execute a list of writes in chunks.

        Args:
            ops: BatchOps or equivalent dicts
            continue_on_error: Record failures and keep going instead of raising
            chunk_size: Ops per atomic commit (clamped to the store limit)
            on_progress: Sync or async callback invoked after each chunk
            actor: Actor recorded in metadata and history

        Returns:
            BatchResult with successful and failed entries

        Raises:
            ValidationError: If chunk_size < 1
            Exception: The first staging or commit error when continue_on_error=False
        """
        chunk_size = self.chunk_size if chunk_size is None else chunk_size
        if chunk_size < 1:
            raise ValidationError("chunk_size must be at least 1", field_name="chunk_size")
        chunk_size = min(chunk_size, self.store.max_batch_size)

        ops = list(ops)
        chunks = [ops[i : i + chunk_size] for i in range(0, len(ops), chunk_size)]
        result = BatchResult(total=len(ops))
        now = now_ms()

        for index, chunk in enumerate(chunks, start=1):
            staged_ops: List[WriteOp] = []
            staged: List[Tuple[Any, BatchOpResult]] = []
            state: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = {}

            for raw in chunk:
                try:
                    op = BatchOp.coerce(raw)
                    write_op, op_result = await self._stage(op, state, actor, now)
                except Exception as e:
                    if not continue_on_error:
                        raise
                    logger.warning(
                        f"Batch op failed to stage: {e}",
                        extra={"chunk": index, "op": repr(raw)},
                    )
                    result.failed.append(BatchFailure(op=raw, error=e))
                    continue
                staged_ops.append(write_op)
                staged.append((raw, op_result))

            if staged_ops:
                try:
                    await self.store.commit_batch(staged_ops)
                except Exception as e:
                    if not continue_on_error:
                        raise
                    logger.warning(
                        f"Batch chunk commit failed: {e}",
                        extra={"chunk": index, "ops": len(staged_ops)},
                    )
                    result.failed.extend(BatchFailure(op=raw, error=e) for raw, _ in staged)
                else:
                    result.successful.extend(r for _, r in staged)

            if on_progress is not None:
                progress = BatchProgress(
                    chunk_index=index,
                    total_chunks=len(chunks),
                    processed=len(result.successful) + len(result.failed),
                    total=len(ops),
                    successful=len(result.successful),
                    failed=len(result.failed),
                )
                outcome = on_progress(progress)
                if inspect.isawaitable(outcome):
                    await outcome

        logger.debug(
            "Batch executed",
            extra={
                "total": result.total,
                "successful": len(result.successful),
                "failed": len(result.failed),
                "chunks": len(chunks),
            },
        )
        return result

    async def _stage(
        self,
        op: BatchOp,
        state: Dict[Tuple[str, str], Optional[Dict[str, Any]]],
        actor: Optional[str],
        now: int,
    ) -> Tuple[WriteOp, BatchOpResult]:
        """Compute the staged write for one op, tracking per-document chunk state."""
        key = (op.collection, op.doc_id)

        if op.kind == BatchOpKind.DELETE:
            state[key] = None
            return (
                WriteOp(WriteKind.DELETE, op.collection, op.doc_id),
                BatchOpResult(op.collection, op.doc_id, op.kind, None),
            )

        if key in state:
            current = state[key]
        else:
            stored = await self.store.get(op.collection, op.doc_id)
            current = stored.data if stored else None

        kind = {
            BatchOpKind.CREATE: ChangeKind.CREATE,
            BatchOpKind.UPDATE: ChangeKind.UPDATE,
        }.get(op.kind)
        prepared = self.writer.prepare(
            op.collection, op.doc_id, current, op.fields, actor=actor, now=now, kind=kind
        )
        state[key] = {**(current or {}), **prepared.data}

        write_kind = WriteKind.UPDATE if op.kind == BatchOpKind.UPDATE else WriteKind.SET
        return (
            WriteOp(write_kind, op.collection, op.doc_id, prepared.data, merge=True),
            BatchOpResult(op.collection, op.doc_id, op.kind, prepared.document),
        )
