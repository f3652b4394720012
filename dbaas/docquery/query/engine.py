"""
Filter/sort/paginate over a collection.

Clauses are applied in the order given (no reordering or optimization),
then the limit. pagination.has_more is the "result count reached the
limit" heuristic: exact only when there are no ties at the boundary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..config import QueryConfig
from ..models import Document, Pagination
from ..store.base import DocumentStore, QueryPredicates, StoredDocument
from ..values import now_ms
from .params import QuerySpec, validate_spec

logger = logging.getLogger(__name__)


@dataclass
class QueryResult:
    """Documents returned by a query with pagination hints."""

    results: List[Document] = field(default_factory=list)
    pagination: Pagination = field(default_factory=lambda: Pagination(has_more=False))


def to_document(stored: StoredDocument) -> Document:
    return Document.from_data(stored.collection, stored.id, stored.data)


def result_metadata(total: int, params: Dict[str, Any], **extra: Any) -> Dict[str, Any]:
    """Describe how a result was produced (returned when include_metadata is set)."""
    return {"timestamp": now_ms(), "total": total, "params": params, **extra}


class QueryEngine:
    """Runs validated queries against the document store."""

    def __init__(self, store: DocumentStore, config: Optional[QueryConfig] = None) -> None:
        self.store = store
        self.config = config or QueryConfig()

    def build_spec(
        self,
        where: Optional[Sequence[Any]] = None,
        order_by: Optional[Sequence[Any]] = None,
        limit: Optional[int] = None,
    ) -> QuerySpec:
        """Validate caller-supplied clauses.

        Raises:
            ValidationError: If a clause is malformed
        """
        return validate_spec(
            QuerySpec,
            {
                "where": list(where or []),
                "order_by": list(order_by or []),
                "limit": self.config.default_limit if limit is None else limit,
            },
            "query",
        )

    async def fetch(self, collection: str, predicates: QueryPredicates) -> List[StoredDocument]:
        """Run predicates against the store and return raw stored documents."""
        docs = await self.store.query(collection, predicates)
        logger.debug(
            "Query executed",
            extra={
                "collection": collection,
                "where": len(predicates.where),
                "order_by": len(predicates.order_by),
                "limit": predicates.limit,
                "returned": len(docs),
            },
        )
        return docs

    async def query(
        self,
        collection: str,
        where: Optional[Sequence[Any]] = None,
        order_by: Optional[Sequence[Any]] = None,
        limit: Optional[int] = None,
    ) -> QueryResult:
        """Query a collection.

        Args:
            collection: Collection name
            where: [field, op, value] clauses
            order_by: "field" or [field, "asc"|"desc"] clauses
            limit: Maximum results (defaults to QueryConfig.default_limit)

        Returns:
            QueryResult with documents and pagination
        """
        spec = self.build_spec(where, order_by, limit)
        docs = await self.fetch(collection, spec.predicates())
        results = [to_document(d) for d in docs]
        return QueryResult(
            results=results,
            pagination=Pagination(
                has_more=spec.limit is not None and len(results) == spec.limit,
                last_id=results[-1].id if results else None,
            ),
        )
