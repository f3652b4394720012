"""
Read paths for docquery - queries, aggregation, search and graph traversal.

Every read path builds on QueryEngine, so where/order_by/limit clauses are
validated and applied identically everywhere.
"""

from .aggregate import Accumulator, AggregateResult, AggregationEngine, GroupResult
from .engine import QueryEngine, QueryResult
from .graph import (
    GraphNode,
    GraphPagination,
    GraphResult,
    GraphTraversalEngine,
    PathEntry,
    TraversalCache,
)
from .params import AggregateSpec, QuerySpec, RelSpec
from .search import SearchEngine, SearchHit, SearchResult
from .text import HighlightSpan

__all__ = [
    "QueryEngine",
    "QueryResult",
    "QuerySpec",
    "RelSpec",
    "AggregateSpec",
    "AggregationEngine",
    "AggregateResult",
    "Accumulator",
    "GroupResult",
    "SearchEngine",
    "SearchHit",
    "SearchResult",
    "HighlightSpan",
    "GraphTraversalEngine",
    "GraphNode",
    "GraphPagination",
    "GraphResult",
    "PathEntry",
    "TraversalCache",
]
