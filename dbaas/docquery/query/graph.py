"""
Multi-hop relationship traversal.

Breadth-first walk from the start documents across the configured
relationships:
- outbound: the current node's `field` holds the target id(s); the target
  collection is queried by document-id membership
- inbound: the target collection is queried for documents whose `field`
  equals the current node's id

Related-document lookups are memoized per (source collection, source id,
target collection, relationship type) in a bounded TraversalCache owned by
the engine instance.

Invariants:
    - Every (collection, id) is emitted at most once; first discovery wins
    - No node is expanded at or beyond min(depth, max_depth)
    - At most max_nodes nodes are emitted; has_more reports hitting the cap

How to change safely:
    - Cached entries are snapshots; callers that need fresh data must
      invalidate the affected collections (live graph subscriptions do)
"""

from __future__ import annotations

import copy
import logging
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Sequence, Tuple

from ..config import GraphConfig
from ..errors import ValidationError
from ..models import Document
from ..store.base import DOCUMENT_ID, StoredDocument
from ..values import get_path
from .engine import QueryEngine, result_metadata
from .params import RelSpec, validate_spec

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str, str, str]


@dataclass(frozen=True)
class PathEntry:
    id: str
    collection: str


@dataclass
class GraphNode:
    """A document reached by traversal.

    Attributes:
        id: Document identifier
        collection: Collection name
        data: User fields of the document
        depth: Hops from the start node (0 for start nodes)
        relationship_type: Relationship that discovered the node (None for start nodes)
        path: Start-to-node path, or None when paths are not requested
    """

    id: str
    collection: str
    data: Dict[str, Any]
    depth: int = 0
    relationship_type: Optional[str] = None
    path: Optional[List[PathEntry]] = None

    @property
    def key(self) -> str:
        return f"{self.collection}/{self.id}"

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "id": self.id,
            "collection": self.collection,
            "data": self.data,
            "depth": self.depth,
            "relationship_type": self.relationship_type,
        }
        if self.path is not None:
            result["path"] = [{"id": p.id, "collection": p.collection} for p in self.path]
        return result


@dataclass(frozen=True)
class GraphPagination:
    has_more: bool
    nodes_processed: int


@dataclass
class GraphResult:
    results: List[GraphNode] = field(default_factory=list)
    pagination: GraphPagination = field(
        default_factory=lambda: GraphPagination(has_more=False, nodes_processed=0)
    )
    metadata: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class _Related:
    id: str
    collection: str
    data: Dict[str, Any]


class TraversalCache:
    """LRU cache of related-document lookups with optional TTL.

    Example:
        >>> cache = TraversalCache(max_entries=2)
        >>> cache.put(("users", "u1", "tasks", "owner"), [])
        >>> cache.invalidate(["tasks"])
        1
    """

    def __init__(
        self,
        max_entries: int = 10000,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[CacheKey, Tuple[float, List[_Related]]] = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._entries

    def get(self, key: CacheKey) -> Optional[List[_Related]]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        stored_at, related = entry
        if self.ttl_seconds is not None and self._clock() - stored_at > self.ttl_seconds:
            del self._entries[key]
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return related

    def put(self, key: CacheKey, related: List[_Related]) -> None:
        self._entries[key] = (self._clock(), related)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
            self.evictions += 1

    def invalidate(self, collections: Iterable[str]) -> int:
        """Drop entries whose source or target collection is in collections.

        Returns:
            Number of entries removed
        """
        names = set(collections)
        stale = [k for k in self._entries if k[0] in names or k[2] in names]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._entries),
            "max_entries": self.max_entries,
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
        }


class GraphTraversalEngine:
    """Breadth-first relationship traversal built on the QueryEngine."""

    def __init__(self, query_engine: QueryEngine, config: Optional[GraphConfig] = None) -> None:
        self.query_engine = query_engine
        self.config = config or GraphConfig()
        self.cache = TraversalCache(
            max_entries=self.config.cache_max_entries,
            ttl_seconds=self.config.cache_ttl_seconds,
        )

    def build_relationships(self, relationships: Iterable[Any]) -> List[RelSpec]:
        """Validate relationship specs.

        Raises:
            ValidationError: If a RelSpec is malformed
        """
        specs = []
        for rel in relationships or ():
            if isinstance(rel, dict) and "limit" not in rel:
                rel = {**rel, "limit": self.config.relationship_limit}
            specs.append(validate_spec(RelSpec, rel, "relationship"))
        return specs

    async def graph_query(
        self,
        start_collection: str,
        start_node: Optional[str] = None,
        relationships: Sequence[Any] = (),
        depth: int = 1,
        where: Optional[Sequence[Any]] = None,
        order_by: Optional[Sequence[Any]] = None,
        limit: Optional[int] = None,
        include_path: bool = True,
        max_nodes: Optional[int] = None,
        use_cache: bool = True,
        include_metadata: bool = False,
    ) -> GraphResult:
        """Traverse relationships breadth-first from the start documents.

        Args:
            start_collection: Collection of the start nodes
            start_node: Seed with this single document instead of querying
            relationships: RelSpecs (or dicts) followed from every node
            depth: Maximum hops (capped at GraphConfig.max_depth)
            where: Start query filter clauses
            order_by: Start query sort clauses
            limit: Start query limit
            include_path: Attach start-to-node paths
            max_nodes: Node cap (defaults to GraphConfig.max_nodes)
            use_cache: Reuse memoized relationship lookups
            include_metadata: Attach timestamp, node totals and the effective params

        Returns:
            GraphResult in discovery order

        Raises:
            ValidationError: On malformed relationships or bounds
        """
        rels = self.build_relationships(relationships)
        max_nodes = self.config.max_nodes if max_nodes is None else max_nodes
        if max_nodes < 1:
            raise ValidationError("max_nodes must be at least 1", field_name="max_nodes")
        if depth < 0:
            raise ValidationError("depth must not be negative", field_name="depth")
        max_depth = min(depth, self.config.max_depth)

        seeds = await self._seeds(start_collection, start_node, where, order_by, limit)

        visited: set[Tuple[str, str]] = set()
        results: List[GraphNode] = []
        queue: Deque[GraphNode] = deque()

        for stored in seeds:
            if len(results) >= max_nodes:
                break
            if (start_collection, stored.id) in visited:
                continue
            visited.add((start_collection, stored.id))
            node = GraphNode(
                id=stored.id,
                collection=start_collection,
                data=Document.from_data(start_collection, stored.id, stored.data).fields,
                depth=0,
                path=[PathEntry(stored.id, start_collection)] if include_path else None,
            )
            results.append(node)
            queue.append(node)

        while queue and len(results) < max_nodes:
            current = queue.popleft()
            if current.depth >= max_depth:
                continue

            for rel in rels:
                if len(results) >= max_nodes:
                    break
                for related in await self._related(current, rel, use_cache):
                    if len(results) >= max_nodes:
                        break
                    key = (related.collection, related.id)
                    if key in visited:
                        continue
                    visited.add(key)
                    node = GraphNode(
                        id=related.id,
                        collection=related.collection,
                        data=copy.deepcopy(related.data),
                        depth=current.depth + 1,
                        relationship_type=rel.relationship_type,
                        path=(
                            current.path + [PathEntry(related.id, related.collection)]
                            if include_path and current.path is not None
                            else None
                        ),
                    )
                    results.append(node)
                    queue.append(node)

        nodes_processed = len(results)
        logger.debug(
            "Graph query executed",
            extra={
                "start_collection": start_collection,
                "relationships": len(rels),
                "max_depth": max_depth,
                "nodes_processed": nodes_processed,
                "cache_size": len(self.cache),
            },
        )
        metadata = None
        if include_metadata:
            params = {
                "start_collection": start_collection,
                "start_node": start_node,
                "relationships": [r.model_dump() for r in rels],
                "depth": depth,
                "where": where,
                "order_by": order_by,
                "limit": limit,
                "include_path": include_path,
                "max_nodes": max_nodes,
            }
            metadata = result_metadata(
                nodes_processed, params, total_nodes=nodes_processed, max_depth=max_depth
            )
        return GraphResult(
            results=results,
            pagination=GraphPagination(
                has_more=nodes_processed >= max_nodes,
                nodes_processed=nodes_processed,
            ),
            metadata=metadata,
        )

    async def _seeds(
        self,
        start_collection: str,
        start_node: Optional[str],
        where: Optional[Sequence[Any]],
        order_by: Optional[Sequence[Any]],
        limit: Optional[int],
    ) -> List[StoredDocument]:
        if start_node is not None:
            stored = await self.query_engine.store.get(start_collection, start_node)
            return [stored] if stored else []
        spec = self.query_engine.build_spec(where, order_by, limit)
        return await self.query_engine.fetch(start_collection, spec.predicates())

    async def _related(self, node: GraphNode, rel: RelSpec, use_cache: bool) -> List[_Related]:
        key: CacheKey = (node.collection, node.id, rel.collection, rel.relationship_type)
        if use_cache:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        if rel.direction == "inbound":
            link = ((rel.field, "==", node.id),)
        else:
            value = get_path(node.data, rel.field)
            candidates = value if isinstance(value, list) else [value]
            ids = list(dict.fromkeys(v for v in candidates if isinstance(v, str) and v))
            if not ids:
                return []
            link = ((DOCUMENT_ID, "in", ids),)

        docs = await self.query_engine.fetch(rel.collection, rel.predicates(link))
        related = [
            _Related(d.id, rel.collection, Document.from_data(rel.collection, d.id, d.data).fields)
            for d in docs
        ]
        if use_cache:
            self.cache.put(key, related)
        return related
