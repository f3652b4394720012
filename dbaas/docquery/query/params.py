"""
Validated parameter models for the read paths.

Callers hand in plain lists and dicts (where clauses as [field, op, value],
order clauses as "field" or [field, direction]). These pydantic models
normalize them and reject malformed input with ValidationError before any
store call is made.
"""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError
from ..store.base import QueryPredicates
from ..store.filters import OPERATORS

LIST_OPERATORS = frozenset({"in", "not-in", "array-contains-any"})

Direction = Literal["asc", "desc"]


class PredicateSpec(BaseModel):
    """Where and order-by clauses shared by queries and relationships."""

    model_config = ConfigDict(extra="forbid")

    where: list[tuple[str, str, Any]] = Field(default_factory=list, description="Filter clauses")
    order_by: list[tuple[str, Direction]] = Field(default_factory=list, description="Sort clauses")

    @field_validator("where", mode="before")
    @classmethod
    def _normalize_where(cls, value: Any) -> Any:
        if value is None:
            return []
        return value

    @field_validator("where")
    @classmethod
    def _check_operators(cls, value: list[tuple[str, str, Any]]) -> list[tuple[str, str, Any]]:
        checked = []
        for field_path, op, expected in value:
            if op not in OPERATORS:
                raise ValueError(f"unsupported operator '{op}'")
            if op in LIST_OPERATORS:
                if not isinstance(expected, (list, tuple)):
                    raise ValueError(f"operator '{op}' requires a list value")
                expected = list(expected)
            checked.append((field_path, op, expected))
        return checked

    @field_validator("order_by", mode="before")
    @classmethod
    def _normalize_order_by(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        normalized = []
        for clause in value:
            if isinstance(clause, str):
                normalized.append((clause, "asc"))
            elif isinstance(clause, (list, tuple)) and len(clause) == 1:
                normalized.append((clause[0], "asc"))
            elif isinstance(clause, (list, tuple)) and len(clause) == 2 and isinstance(clause[1], str):
                normalized.append((clause[0], clause[1].lower()))
            else:
                normalized.append(clause)
        return normalized


class QuerySpec(PredicateSpec):
    """Parameters of a collection query."""

    limit: Optional[int] = Field(100, ge=0, description="Maximum results")

    def predicates(self) -> QueryPredicates:
        return QueryPredicates(
            where=tuple(self.where),
            order_by=tuple(self.order_by),
            limit=self.limit,
        )


class RelSpec(PredicateSpec):
    """A relationship followed by graph traversal.

    outbound: the current node's `field` holds the target id(s)
    inbound: target documents whose `field` equals the current node's id
    """

    collection: str = Field(..., min_length=1, description="Target collection")
    direction: Literal["outbound", "inbound"] = Field("outbound", description="Edge direction")
    field: str = Field(..., min_length=1, description="Field holding the link")
    type: Optional[str] = Field(None, description="Relationship type reported on nodes")
    limit: int = Field(10, ge=1, description="Related documents fetched per node")

    @property
    def relationship_type(self) -> str:
        return self.type or self.field

    def predicates(self, extra_where: tuple[tuple[str, str, Any], ...]) -> QueryPredicates:
        return QueryPredicates(
            where=extra_where + tuple(self.where),
            order_by=tuple(self.order_by),
            limit=self.limit,
        )


class AggregateSpec(BaseModel):
    """A named aggregate: which field, which statistic."""

    model_config = ConfigDict(extra="forbid")

    field: str = Field(..., min_length=1, description="Source field")
    op: Literal["sum", "min", "max", "avg"] = Field(..., description="Statistic")

    @model_validator(mode="before")
    @classmethod
    def _accept_type_key(cls, data: Any) -> Any:
        if isinstance(data, dict) and "op" not in data and "type" in data:
            data = {k: v for k, v in data.items() if k != "type"} | {"op": data["type"]}
        return data


def validate_spec(model: type[BaseModel], data: Any, what: str) -> Any:
    """Build a parameter model, mapping pydantic errors to ValidationError.

    Args:
        model: Pydantic model class
        data: Raw parameters (dict or model instance)
        what: Name used in the error message

    Raises:
        ValidationError: If the parameters are malformed
    """
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        ]
        raise ValidationError(
            f"Invalid {what}: {'; '.join(errors)}",
            field_name=what,
            errors=errors,
        ) from None
