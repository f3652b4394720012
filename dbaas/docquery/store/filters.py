"""
Predicate evaluation shared by the store backends.

Backends hand their candidate documents to apply_predicates(), which
applies where clauses, then order-by clauses in the order given, then the
limit. No clause reordering or optimization happens here.

Supported operators:
    ==, !=, <, <=, >, >=, in, not-in, array-contains, array-contains-any

The field path "__name__" denotes the document id.

Invariants:
    - Comparisons only match values of compatible types
    - Documents missing an order-by field are excluded from ordered results
    - Sorting is stable, so ties keep store order
"""

from __future__ import annotations

from typing import Any, Callable, Iterable

from ..errors import ValidationError
from ..values import UNDEFINED, get_path, values_equal
from .base import DOCUMENT_ID, QueryPredicates, StoredDocument

OPERATORS = frozenset(
    {"==", "!=", "<", "<=", ">", ">=", "in", "not-in", "array-contains", "array-contains-any"}
)


def field_value(doc: StoredDocument, path: str) -> Any:
    """Resolve a field path on a stored document."""
    if path == DOCUMENT_ID:
        return doc.id
    return get_path(doc.data, path)


def _comparable(a: Any, b: Any) -> bool:
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool)
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return True
    return isinstance(a, str) and isinstance(b, str)


def _contains(items: Iterable[Any], value: Any) -> bool:
    return any(values_equal(item, value) for item in items)


def matches(doc: StoredDocument, field: str, op: str, expected: Any) -> bool:
    """Evaluate one where clause against a document."""
    actual = field_value(doc, field)

    if op == "==":
        return actual is not UNDEFINED and values_equal(actual, expected)
    if op == "!=":
        # A missing field never satisfies an inequality
        return actual is not UNDEFINED and actual is not None and not values_equal(actual, expected)
    if op in ("<", "<=", ">", ">="):
        if actual is UNDEFINED or not _comparable(actual, expected):
            return False
        if op == "<":
            return actual < expected
        if op == "<=":
            return actual <= expected
        if op == ">":
            return actual > expected
        return actual >= expected
    if op == "in":
        return actual is not UNDEFINED and _contains(expected, actual)
    if op == "not-in":
        return actual is not UNDEFINED and actual is not None and not _contains(expected, actual)
    if op == "array-contains":
        return isinstance(actual, list) and _contains(actual, expected)
    if op == "array-contains-any":
        return isinstance(actual, list) and any(_contains(actual, e) for e in expected)

    raise ValidationError(f"Unsupported operator '{op}'", field_name=field)


def _type_rank(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        return 1
    if isinstance(value, (int, float)):
        return 2
    if isinstance(value, str):
        return 3
    if isinstance(value, list):
        return 4
    return 5


def sort_key(value: Any) -> tuple:
    """Total ordering key across heterogeneous values."""
    rank = _type_rank(value)
    if rank == 0:
        return (0, 0)
    if rank == 4:
        return (4, tuple(sort_key(v) for v in value))
    if rank == 5:
        return (5, tuple((k, sort_key(v)) for k, v in sorted(value.items())))
    return (rank, value)


def filter_documents(
    docs: Iterable[StoredDocument],
    where: Iterable[tuple[str, str, Any]],
) -> list[StoredDocument]:
    """Apply where clauses in order."""
    result = list(docs)
    for field, op, expected in where:
        result = [d for d in result if matches(d, field, op, expected)]
    return result


def order_documents(
    docs: list[StoredDocument],
    order_by: list[tuple[str, str]],
) -> list[StoredDocument]:
    """Apply order-by clauses; the first clause is the primary key."""
    if not order_by:
        return docs

    fields = [f for f, _ in order_by]
    result = [d for d in docs if all(field_value(d, f) is not UNDEFINED for f in fields)]

    # Stable sorts applied from the least significant clause
    for field, direction in reversed(order_by):
        key: Callable[[StoredDocument], tuple] = lambda d, f=field: sort_key(field_value(d, f))
        result.sort(key=key, reverse=direction == "desc")
    return result


def apply_predicates(
    docs: Iterable[StoredDocument],
    predicates: QueryPredicates,
) -> list[StoredDocument]:
    """Filter, order and limit candidate documents."""
    result = filter_documents(docs, predicates.where)
    result = order_documents(result, list(predicates.order_by))
    if predicates.limit is not None:
        result = result[: predicates.limit]
    return result
