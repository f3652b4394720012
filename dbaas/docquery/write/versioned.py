"""
Versioned single-document writes.

Every write through this module:
1. Reads the current stored map (absent = version 0)
2. Cleans the payload (UNDEFINED stripped, datetimes to Unix ms)
3. Diffs the payload against the current user fields
4. Stamps version/updated_* (and created_* on first write)
5. Appends a ChangeRecord, keeping the most recent history_limit records
6. Merge-writes the payload plus metadata

Invariants:
    - version increases by exactly 1 per successful write
    - history is oldest-first and never longer than history_limit
    - Fields absent from the payload are left untouched in the store

How to change safely:
    - prepare() is shared by the batch and transaction paths; keep it pure
    - Never let user payloads carry reserved metadata keys
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..config import WriteConfig
from ..errors import ValidationError
from ..models import META_FIELDS, ChangeKind, ChangeRecord, Document, FieldDiff
from ..store.base import DocumentStore
from ..values import clean_fields, diff_fields, now_ms

logger = logging.getLogger(__name__)


@dataclass
class PreparedWrite:
    """Result of the pure metadata/diff computation.

    Attributes:
        data: Payload to merge-write (cleaned fields, metadata and history)
        document: The document view after the write is applied
        record: The ChangeRecord appended to history
    """

    data: Dict[str, Any]
    document: Document
    record: ChangeRecord


def check_reserved(fields: Dict[str, Any]) -> None:
    """Reject payloads that try to set metadata keys directly."""
    reserved = sorted(META_FIELDS.intersection(fields))
    if reserved:
        raise ValidationError(
            f"Reserved field names cannot be written: {', '.join(reserved)}",
            field_name=reserved[0],
            errors=reserved,
        )


class VersionedWriter:
    """Single-document create/update with diffing and bounded history.

    Example:
        >>> writer = VersionedWriter(store, WriteConfig())
        >>> doc = await writer.write("tasks", "t1", {"title": "Draft"}, actor="user:42")
        >>> doc.version
        1
    """

    def __init__(self, store: DocumentStore, config: Optional[WriteConfig] = None) -> None:
        self.store = store
        self.config = config or WriteConfig()

    def prepare(
        self,
        collection: str,
        doc_id: str,
        current: Optional[Dict[str, Any]],
        fields: Dict[str, Any],
        actor: Optional[str] = None,
        now: Optional[int] = None,
        kind: Optional[ChangeKind] = None,
    ) -> PreparedWrite:
        """Compute the versioned payload for a write without touching the store.

        Args:
            collection: Collection name
            doc_id: Document identifier
            current: Current stored map, or None if the document is absent
            fields: Raw user payload
            actor: Actor recorded in metadata and history
            now: Timestamp to stamp (Unix ms), defaults to the current time
            kind: Change kind to record, derived from current when omitted

        Returns:
            PreparedWrite holding the payload and the resulting view

        Raises:
            ValidationError: If the payload is malformed or uses reserved keys
        """
        check_reserved(fields)
        cleaned = clean_fields(fields)

        actor = actor or self.config.default_actor
        now = now if now is not None else now_ms()
        existing = current or {}
        user_fields = {k: v for k, v in existing.items() if k not in META_FIELDS}

        record = ChangeRecord(
            timestamp=now,
            actor_id=actor,
            kind=kind or (ChangeKind.UPDATE if current is not None else ChangeKind.CREATE),
            field_diffs={
                name: FieldDiff(from_value=d["from"], to_value=d["to"])
                for name, d in diff_fields(user_fields, cleaned).items()
            },
        )

        metadata: Dict[str, Any] = {
            "updated_at": now,
            "updated_by": actor,
            "version": (existing.get("version") or 0) + 1,
        }
        if current is None:
            metadata["created_at"] = now
            metadata["created_by"] = actor

        history = list(existing.get("history") or [])
        history.append(record.to_dict())

        data = {**cleaned, **metadata, "history": history[-self.config.history_limit :]}
        document = Document.from_data(collection, doc_id, {**existing, **data})
        return PreparedWrite(data=data, document=document, record=record)

    async def write(
        self,
        collection: str,
        doc_id: str,
        fields: Dict[str, Any],
        actor: Optional[str] = None,
    ) -> Document:
        """Create or update a document with versioning and history.

        Store errors propagate unchanged.

        Returns:
            The document view after the write
        """
        current = await self.store.get(collection, doc_id)
        prepared = self.prepare(
            collection, doc_id, current.data if current else None, fields, actor
        )
        await self.store.put(collection, doc_id, prepared.data, merge=True)

        logger.debug(
            "Versioned write",
            extra={
                "collection": collection,
                "doc_id": doc_id,
                "version": prepared.document.version,
                "changed_fields": sorted(prepared.record.field_diffs),
            },
        )
        return prepared.document
