"""
Value model for schema-less document fields.

Documents carry dynamic field maps. Every field value is one of the
tagged-union members of Value:

    None | bool | int | float | str | list[Value] | dict[str, Value]

The UNDEFINED sentinel marks an absent value. It is stripped from maps
before anything is written, whereas None is a real value persisted as null.

Invariants:
    - clean_fields never returns UNDEFINED anywhere in its output
    - datetime values are normalized to Unix milliseconds
    - diff_fields only reports keys present in the new payload
"""

from __future__ import annotations

import copy
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Union

from .errors import ValidationError

Value = Union[None, bool, int, float, str, List["Value"], Dict[str, "Value"]]


class _Undefined:
    """Singleton marker for an absent value."""

    _instance: _Undefined | None = None

    def __new__(cls) -> _Undefined:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNDEFINED"

    def __bool__(self) -> bool:
        return False

    def __copy__(self) -> _Undefined:
        return self

    def __deepcopy__(self, memo: dict) -> _Undefined:
        return self


UNDEFINED = _Undefined()


def now_ms() -> int:
    """Current time as Unix milliseconds."""
    return int(time.time() * 1000)


def clean_value(value: Any, path: str = "") -> Any:
    """Normalize a single value to the Value union.

    Args:
        value: Raw value
        path: Field path, used in error messages

    Returns:
        Normalized value (UNDEFINED passes through for the caller to drop)

    Raises:
        ValidationError: If the value type is not supported
    """
    if value is UNDEFINED or value is None:
        return value
    if isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, (list, tuple)):
        cleaned = []
        for i, item in enumerate(value):
            item = clean_value(item, f"{path}[{i}]")
            # Lists keep their positions
            cleaned.append(None if item is UNDEFINED else item)
        return cleaned
    if isinstance(value, dict):
        return clean_fields(value, path)
    raise ValidationError(
        f"Unsupported value type {type(value).__name__} at '{path or '<root>'}'",
        field_name=path or None,
    )


def clean_fields(fields: Dict[str, Any], path: str = "") -> Dict[str, Any]:
    """Clean a field map, dropping UNDEFINED entries recursively.

    Args:
        fields: Raw field map
        path: Prefix for nested error messages

    Returns:
        New map containing only persistable values
    """
    if not isinstance(fields, dict):
        raise ValidationError(f"Expected a field map, got {type(fields).__name__}")

    clean: Dict[str, Any] = {}
    for key, value in fields.items():
        if not isinstance(key, str):
            raise ValidationError(f"Field names must be strings, got {key!r}")
        child = f"{path}.{key}" if path else key
        cleaned = clean_value(value, child)
        if cleaned is not UNDEFINED:
            clean[key] = cleaned
    return clean


def diff_fields(old: Dict[str, Any], new: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Compare two field maps.

    Only keys present in the new map whose value differs structurally are
    reported. A key absent from the old map is reported with from=None.

    Returns:
        Mapping of field name to {"from": old, "to": new}
    """
    changes: Dict[str, Dict[str, Any]] = {}
    for key, new_value in new.items():
        if new_value is UNDEFINED:
            continue
        old_value = old.get(key, UNDEFINED)
        if old_value is UNDEFINED:
            changes[key] = {"from": None, "to": copy.deepcopy(new_value)}
        elif not values_equal(old_value, new_value):
            changes[key] = {"from": copy.deepcopy(old_value), "to": copy.deepcopy(new_value)}
    return changes


def values_equal(a: Any, b: Any) -> bool:
    """Structural equality that keeps bools distinct from numbers."""
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if isinstance(a, dict) and isinstance(b, dict):
        if a.keys() != b.keys():
            return False
        return all(values_equal(a[k], b[k]) for k in a)
    if isinstance(a, list) and isinstance(b, list):
        return len(a) == len(b) and all(values_equal(x, y) for x, y in zip(a, b))
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return a == b
    return type(a) is type(b) and a == b


def get_path(data: Dict[str, Any], path: str) -> Any:
    """Resolve a dotted field path.

    Args:
        data: Field map
        path: Field name, optionally dotted ("address.city")

    Returns:
        The value, or UNDEFINED when any segment is missing
    """
    if path in data:
        return data[path]
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return UNDEFINED
        current = current[part]
    return current
