"""
Core data model for docquery.

Documents are stored as a single field map per (collection, id). The map
holds the user fields plus reserved metadata keys maintained by the
versioned write path:

    version      INTEGER  monotonically increasing, +1 per write
    created_at   INTEGER  Unix ms, set on first write
    created_by   TEXT     actor of the first write
    updated_at   INTEGER  Unix ms of the latest write
    updated_by   TEXT     actor of the latest write
    history      LIST     most recent ChangeRecords, oldest first

Invariants:
    - User payloads never contain reserved keys
    - history holds at most the configured number of records
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

META_FIELDS = frozenset(
    {"version", "created_at", "created_by", "updated_at", "updated_by", "history"}
)


class ChangeKind(Enum):
    """Kind of change recorded in a document's history."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class FieldDiff:
    """Change of a single field between two writes."""

    from_value: Any
    to_value: Any

    def to_dict(self) -> dict[str, Any]:
        return {"from": self.from_value, "to": self.to_value}


@dataclass
class ChangeRecord:
    """One entry of a document's audit trail.

    Attributes:
        timestamp: When the change was made (Unix ms)
        actor_id: Actor performing the write
        kind: create, update or delete
        field_diffs: Per-field before/after values
    """

    timestamp: int
    actor_id: str
    kind: ChangeKind
    field_diffs: dict[str, FieldDiff] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the persisted representation."""
        return {
            "timestamp": self.timestamp,
            "actor_id": self.actor_id,
            "kind": self.kind.value,
            "field_diffs": {name: d.to_dict() for name, d in self.field_diffs.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangeRecord:
        """Create from the persisted representation."""
        diffs = data.get("field_diffs") or {}
        return cls(
            timestamp=data.get("timestamp", 0),
            actor_id=data.get("actor_id", ""),
            kind=ChangeKind(data.get("kind", ChangeKind.UPDATE.value)),
            field_diffs={
                name: FieldDiff(from_value=d.get("from"), to_value=d.get("to"))
                for name, d in diffs.items()
            },
        )


@dataclass
class Document:
    """Engine-side view of a stored document.

    Attributes:
        id: Document identifier
        collection: Collection name
        fields: User fields (metadata keys excluded)
        version: Write counter (0 if never written through the engine)
        created_at: Creation timestamp (Unix ms)
        created_by: Actor who created the document
        updated_at: Last update timestamp (Unix ms)
        updated_by: Actor of the last update
        history: Change records, oldest first
    """

    id: str
    collection: str
    fields: dict[str, Any]
    version: int = 0
    created_at: int | None = None
    created_by: str | None = None
    updated_at: int | None = None
    updated_by: str | None = None
    history: list[ChangeRecord] = field(default_factory=list)

    @classmethod
    def from_data(cls, collection: str, doc_id: str, data: dict[str, Any]) -> Document:
        """Split a stored field map into user fields and metadata."""
        user_fields = {k: copy.deepcopy(v) for k, v in data.items() if k not in META_FIELDS}
        return cls(
            id=doc_id,
            collection=collection,
            fields=user_fields,
            version=data.get("version") or 0,
            created_at=data.get("created_at"),
            created_by=data.get("created_by"),
            updated_at=data.get("updated_at"),
            updated_by=data.get("updated_by"),
            history=[ChangeRecord.from_dict(r) for r in data.get("history") or []],
        )

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def to_dict(self, include_history: bool = True) -> dict[str, Any]:
        """Flatten to a plain dictionary for serialization by callers."""
        result: dict[str, Any] = {"id": self.id, **self.fields}
        result.update(
            {
                "version": self.version,
                "created_at": self.created_at,
                "created_by": self.created_by,
                "updated_at": self.updated_at,
                "updated_by": self.updated_by,
            }
        )
        if include_history:
            result["history"] = [r.to_dict() for r in self.history]
        return result


@dataclass(frozen=True)
class Pagination:
    """Pagination hints for list results.

    has_more is a heuristic (result count reached the limit); it is exact
    only when the store guarantees no ties at the boundary.
    """

    has_more: bool
    last_id: str | None = None
