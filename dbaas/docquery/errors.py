"""
Error types for docquery.

This module defines all exception types raised by the engine:
- DocQueryError: Base exception
- StorageError: A store call failed
- ConflictError: Optimistic conflict detected at transaction commit
- NotFoundError: Update of a document that does not exist
- TransactionError: Retry budget exhausted, timeout, or handle misuse
- ValidationError: Malformed parameters or payloads
- AccessDeniedError: Refused by an access hook

Invariants:
    - All errors inherit from DocQueryError
    - Errors include context for debugging
    - Store failures are never swallowed by the engine
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class DocQueryError(Exception):
    """Base exception for all docquery errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "DOCQUERY_ERROR"
        self.details = details or {}


class StorageError(DocQueryError):
    """A call against the document store failed.

    Raised when:
    - The backend rejects or cannot perform a read/write
    - A batch commit cannot be applied atomically
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        collection: Optional[str] = None,
        doc_id: Optional[str] = None,
        code: str = "STORAGE_ERROR",
    ) -> None:
        super().__init__(
            message,
            code=code,
            details={"operation": operation, "collection": collection, "doc_id": doc_id},
        )
        self.operation = operation
        self.collection = collection
        self.doc_id = doc_id


class ConflictError(StorageError):
    """A document read inside a transaction changed before commit."""

    def __init__(
        self,
        message: str,
        collection: Optional[str] = None,
        doc_id: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            operation="commit",
            collection=collection,
            doc_id=doc_id,
            code="CONFLICT",
        )


class NotFoundError(DocQueryError):
    """Document does not exist."""

    def __init__(self, collection: str, doc_id: str) -> None:
        super().__init__(
            f"Document {doc_id} does not exist in {collection}",
            code="NOT_FOUND",
            details={"collection": collection, "doc_id": doc_id},
        )
        self.collection = collection
        self.doc_id = doc_id


class TransactionError(DocQueryError):
    """Transaction could not be completed.

    Raised when:
    - The retry budget (max_attempts) is exhausted
    - The transaction timeout elapses
    - A transaction handle is used after its writes started
    """

    def __init__(
        self,
        message: str,
        attempts: Optional[int] = None,
        cause: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="TRANSACTION_ERROR",
            details={"attempts": attempts, "cause": cause},
        )
        self.attempts = attempts


class ValidationError(DocQueryError):
    """Parameter or payload validation failed.

    Raised when:
    - A required handler (on_event) is missing
    - A relationship spec or aggregate spec is malformed
    - A payload holds an unsupported value type or a reserved field
    """

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        errors: Optional[List[str]] = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field_name, "errors": errors or []},
        )
        self.field_name = field_name
        self.errors = errors or []


class AccessDeniedError(DocQueryError):
    """An access hook refused the operation."""

    def __init__(self, operation: str, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"Access denied for operation '{operation}'",
            code="ACCESS_DENIED",
            details={"operation": operation},
        )
        self.operation = operation
