"""
Group-by and running accumulators over query results.

Each document returned by the query is folded once through every named
aggregate. With group_by, documents are also bucketed by the ordered tuple
of their group-by values and every bucket folds its own accumulator set,
starting from zero.

Invariants:
    - Missing and null values never touch count, sum, min or max
    - Every other value counts, even when its op cannot use it
    - avg is always sum / number of numeric values
    - Groups appear in first-seen order
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from ..errors import ValidationError
from ..models import Document, Pagination
from ..values import UNDEFINED, get_path
from .engine import QueryEngine, result_metadata, to_document
from .params import AggregateSpec, validate_spec

logger = logging.getLogger(__name__)

GROUP_KEY_DELIMITER = "|"


@dataclass
class Accumulator:
    """Running statistics for one named aggregate.

    count covers every present non-null value; avg divides by the number of
    numeric values only.
    """

    count: int = 0
    sum: float = 0
    min: Any = None
    max: Any = None
    avg: float = 0
    numeric_count: int = field(default=0, repr=False, compare=False)

    def add(self, op: str, value: Any) -> None:
        """Fold one value into the accumulator for the given op."""
        if value is None or value is UNDEFINED:
            return
        self.count += 1

        is_number = isinstance(value, (int, float)) and not isinstance(value, bool)
        if op in ("sum", "avg"):
            if not is_number:
                return
            self.numeric_count += 1
            self.sum += value
            if op == "avg":
                self.avg = self.sum / self.numeric_count
        elif op in ("min", "max"):
            current = self.min if op == "min" else self.max
            if not (is_number or isinstance(value, str)):
                return
            if current is not None and isinstance(current, str) != isinstance(value, str):
                return
            if op == "min" and (current is None or value < current):
                self.min = value
            elif op == "max" and (current is None or value > current):
                self.max = value

    def to_dict(self) -> Dict[str, Any]:
        return {"count": self.count, "sum": self.sum, "min": self.min, "max": self.max, "avg": self.avg}


@dataclass
class GroupResult:
    """One group-by bucket."""

    key: str
    group: Dict[str, Any]
    documents: List[Document] = field(default_factory=list)
    aggregates: Dict[str, Accumulator] = field(default_factory=dict)


@dataclass
class AggregateResult:
    """Outcome of aggregate_query.

    results holds GroupResults when group_by was given, Documents otherwise.
    metadata is only filled in when include_metadata was requested.
    """

    results: List[Union[GroupResult, Document]]
    aggregates: Dict[str, Accumulator]
    pagination: Pagination
    metadata: Optional[Dict[str, Any]] = None


def group_key(values: Sequence[Any]) -> str:
    """Join group-by values; missing and null render as empty strings."""
    parts = []
    for value in values:
        if value is None or value is UNDEFINED:
            parts.append("")
        elif isinstance(value, bool):
            parts.append("true" if value else "false")
        else:
            parts.append(str(value))
    return GROUP_KEY_DELIMITER.join(parts)


class AggregationEngine:
    """Aggregates built on top of the QueryEngine."""

    def __init__(self, query_engine: QueryEngine) -> None:
        self.query_engine = query_engine

    async def aggregate_query(
        self,
        collection: str,
        group_by: Optional[Sequence[str]] = None,
        aggregates: Optional[Mapping[str, Any]] = None,
        where: Optional[Sequence[Any]] = None,
        order_by: Optional[Sequence[Any]] = None,
        limit: Optional[int] = None,
        include_metadata: bool = False,
    ) -> AggregateResult:
        """Run a query and fold its results through the named aggregates.

        Args:
            collection: Collection name
            group_by: Field names to bucket by
            aggregates: name -> {"field": ..., "op": "sum"|"min"|"max"|"avg"}
            where: [field, op, value] clauses
            order_by: Sort clauses
            limit: Maximum documents folded
            include_metadata: Attach timestamp, total and the effective params

        Returns:
            AggregateResult

        Raises:
            ValidationError: If an aggregate spec or clause is malformed
        """
        specs = {
            name: validate_spec(AggregateSpec, spec, f"aggregate '{name}'")
            for name, spec in (aggregates or {}).items()
        }
        group_fields = list(group_by or [])
        if any(not isinstance(f, str) or not f for f in group_fields):
            raise ValidationError("group_by must be a list of field names", field_name="group_by")

        spec = self.query_engine.build_spec(where, order_by, limit)
        stored = await self.query_engine.fetch(collection, spec.predicates())
        documents = [to_document(d) for d in stored]

        totals = {name: Accumulator() for name in specs}
        groups: Dict[str, GroupResult] = {}

        for doc in documents:
            for name, agg in specs.items():
                totals[name].add(agg.op, get_path(doc.fields, agg.field))

            if not group_fields:
                continue
            values = [get_path(doc.fields, f) for f in group_fields]
            key = group_key(values)
            bucket = groups.get(key)
            if bucket is None:
                bucket = GroupResult(
                    key=key,
                    group={f: (None if v is UNDEFINED else v) for f, v in zip(group_fields, values)},
                    aggregates={name: Accumulator() for name in specs},
                )
                groups[key] = bucket
            bucket.documents.append(doc)
            for name, agg in specs.items():
                bucket.aggregates[name].add(agg.op, get_path(doc.fields, agg.field))

        logger.debug(
            "Aggregate query executed",
            extra={
                "collection": collection,
                "documents": len(documents),
                "groups": len(groups),
                "aggregates": sorted(specs),
            },
        )

        results: List[Union[GroupResult, Document]] = (
            list(groups.values()) if group_fields else list(documents)
        )
        metadata = None
        if include_metadata:
            params = {
                "group_by": group_fields,
                "aggregates": {n: {"field": a.field, "op": a.op} for n, a in specs.items()},
                "where": where,
                "order_by": order_by,
                "limit": spec.limit,
            }
            metadata = result_metadata(len(documents), params, groups=len(groups))
        return AggregateResult(
            results=results,
            aggregates=totals,
            pagination=Pagination(
                has_more=spec.limit is not None and len(documents) == spec.limit,
                last_id=documents[-1].id if documents else None,
            ),
            metadata=metadata,
        )
