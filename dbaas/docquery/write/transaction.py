"""
Read-then-write transactions with optimistic retry.

The handle passed to the user function exposes get/set/update/delete.
Reads go to the store immediately. Writes only enqueue closures; the
closures run after the user function returns, each re-reading the
in-transaction state to compute versioned metadata, and the store commits
the buffered writes atomically.

Invariants:
    - All user reads precede every write of the same attempt
    - A read inside user_fn never observes a write queued in the same attempt
    - ConflictError restarts the whole attempt with a fresh handle
    - NotFoundError and user exceptions are never retried

How to change safely:
    - Do not apply writes from inside handle methods
    - Keep the handle unusable once user_fn has returned
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..config import TransactionConfig
from ..errors import ConflictError, NotFoundError, TransactionError, ValidationError
from ..models import ChangeKind, Document
from ..store.base import DocumentStore, StoreTransaction
from ..values import clean_fields, now_ms
from .versioned import VersionedWriter, check_reserved

logger = logging.getLogger(__name__)


class TransactionOpKind(Enum):
    """Kinds of writes queued by a transaction."""

    SET = "set"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class TransactionOperation:
    """A write applied by a committed transaction."""

    kind: TransactionOpKind
    collection: str
    id: str
    document: Optional[Document] = None


@dataclass
class TransactionResult:
    """Outcome of a committed transaction.

    Attributes:
        result: Value returned by the user function
        operations: Writes applied, in queue order
        attempts: Number of attempts used
    """

    result: Any
    operations: List[TransactionOperation] = field(default_factory=list)
    attempts: int = 1


PendingWrite = Callable[[], Awaitable[TransactionOperation]]


class TransactionHandle:
    """Transaction-scoped handle given to user functions.

    Example:
        >>> async def transfer(txn):
        ...     account = await txn.get("accounts", "a1")
        ...     txn.update("accounts", "a1", {"balance": account.get("balance") - 10})
        >>> await coordinator.run(transfer)
    """

    def __init__(
        self,
        txn: StoreTransaction,
        writer: VersionedWriter,
        actor: Optional[str],
        now: int,
    ) -> None:
        self._txn = txn
        self._writer = writer
        self._actor = actor
        self._now = now
        self._pending: List[PendingWrite] = []
        self._staged: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    def _check_open(self, operation: str) -> None:
        if self._closed:
            raise TransactionError(
                f"Transaction handle used after the transaction function returned ({operation})",
                cause="closed",
            )

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """Read a document as of the start of the commit window."""
        self._check_open("get")
        stored = await self._txn.get(collection, doc_id)
        return Document.from_data(collection, doc_id, stored.data) if stored else None

    def set(self, collection: str, doc_id: str, fields: Dict[str, Any], merge: bool = True) -> None:
        """Queue a versioned set (merge by default)."""
        self._check_open("set")
        check_reserved(fields)
        clean_fields(fields)

        async def apply() -> TransactionOperation:
            current = await self._current(collection, doc_id)
            prepared = self._writer.prepare(
                collection, doc_id, current, fields, actor=self._actor, now=self._now
            )
            payload = prepared.data
            if not merge and current is not None:
                # A replace still keeps the creation stamp
                created = {k: current[k] for k in ("created_at", "created_by") if k in current}
                payload = {**created, **payload}
            data = {**(current or {}), **payload} if merge else payload
            self._txn.set(collection, doc_id, payload, merge=merge)
            self._staged[(collection, doc_id)] = data
            return TransactionOperation(
                TransactionOpKind.SET, collection, doc_id, Document.from_data(collection, doc_id, data)
            )

        self._pending.append(apply)

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """Queue a versioned update. The document must exist at commit time."""
        self._check_open("update")
        check_reserved(fields)
        clean_fields(fields)

        async def apply() -> TransactionOperation:
            current = await self._current(collection, doc_id)
            if current is None:
                raise NotFoundError(collection, doc_id)
            prepared = self._writer.prepare(
                collection,
                doc_id,
                current,
                fields,
                actor=self._actor,
                now=self._now,
                kind=ChangeKind.UPDATE,
            )
            self._txn.update(collection, doc_id, prepared.data)
            self._staged[(collection, doc_id)] = {**current, **prepared.data}
            return TransactionOperation(
                TransactionOpKind.UPDATE, collection, doc_id, prepared.document
            )

        self._pending.append(apply)

    def delete(self, collection: str, doc_id: str) -> None:
        """Queue a delete."""
        self._check_open("delete")

        async def apply() -> TransactionOperation:
            self._txn.delete(collection, doc_id)
            self._staged[(collection, doc_id)] = None
            return TransactionOperation(TransactionOpKind.DELETE, collection, doc_id)

        self._pending.append(apply)

    async def _current(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Store state overlaid with writes staged earlier in this attempt."""
        key = (collection, doc_id)
        if key in self._staged:
            return self._staged[key]
        stored = await self._txn.get(collection, doc_id)
        return stored.data if stored else None

    async def apply_pending(self) -> List[TransactionOperation]:
        """Run the queued write closures in order."""
        operations = []
        for pending in self._pending:
            operations.append(await pending())
        return operations


UserFunction = Callable[[TransactionHandle], Any]


class TransactionCoordinator:
    """Runs user read/write logic transactionally, retrying on conflict."""

    def __init__(
        self,
        store: DocumentStore,
        writer: VersionedWriter,
        config: Optional[TransactionConfig] = None,
    ) -> None:
        self.store = store
        self.writer = writer
        self.config = config or TransactionConfig()

    async def run(
        self,
        user_fn: UserFunction,
        max_attempts: Optional[int] = None,
        timeout: Optional[float] = None,
        actor: Optional[str] = None,
    ) -> TransactionResult:
        """Execute user_fn inside a transaction.

        Args:
            user_fn: Sync or async function receiving a TransactionHandle
            max_attempts: Attempts before giving up on conflicts
            timeout: Seconds allowed for the whole retry loop
            actor: Actor recorded in metadata and history

        Returns:
            TransactionResult with the user result and applied operations

        Raises:
            TransactionError: On exhausted attempts, timeout or handle misuse
            NotFoundError: If an update targets a missing document
        """
        if not callable(user_fn):
            raise ValidationError("Transaction function must be callable")
        max_attempts = max_attempts if max_attempts is not None else self.config.max_attempts
        if max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1", field_name="max_attempts")
        timeout = timeout if timeout is not None else self.config.timeout_seconds

        try:
            return await asyncio.wait_for(
                self._run_with_retries(user_fn, max_attempts, actor),
                timeout,
            )
        except asyncio.TimeoutError:
            raise TransactionError(
                f"Transaction timed out after {timeout}s",
                cause="timeout",
            ) from None

    async def _run_with_retries(
        self,
        user_fn: UserFunction,
        max_attempts: int,
        actor: Optional[str],
    ) -> TransactionResult:
        last_error: Optional[ConflictError] = None

        for attempt in range(1, max_attempts + 1):

            async def attempt_fn(txn: StoreTransaction) -> Tuple[Any, List[TransactionOperation]]:
                handle = TransactionHandle(txn, self.writer, actor, now_ms())
                try:
                    result = user_fn(handle)
                    if inspect.isawaitable(result):
                        result = await result
                finally:
                    handle.close()
                operations = await handle.apply_pending()
                return result, operations

            try:
                result, operations = await self.store.run_store_transaction(attempt_fn)
            except ConflictError as e:
                last_error = e
                logger.warning(
                    f"Transaction conflict: {e}",
                    extra={"attempt": attempt, "max_attempts": max_attempts},
                )
                if attempt < max_attempts:
                    await asyncio.sleep(self.config.retry_delay_ms * attempt / 1000.0)
                continue

            logger.debug(
                "Transaction committed",
                extra={"attempts": attempt, "operations": len(operations)},
            )
            return TransactionResult(result=result, operations=operations, attempts=attempt)

        raise TransactionError(
            f"Transaction failed after {max_attempts} attempts",
            attempts=max_attempts,
            cause=str(last_error) if last_error else None,
        )
