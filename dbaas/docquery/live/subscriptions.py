"""
Live subscriptions over store change events.

subscribe() attaches a store listener to one collection and feeds its
events through a SubscriptionBuffer; every flush hands the handler a
ChangeSet of Documents. subscribe_graph() listens on the start collection
and every relationship target collection through one buffer; every flush
re-runs the graph query and reports node-level changes against the nodes
seen last time.

Invariants:
    - Handlers are never invoked concurrently for the same subscription
    - unsubscribe() flushes pending events before detaching and is idempotent
    - Handler failures go to on_error when given, otherwise they are logged

How to change safely:
    - Keep store listener callbacks synchronous; they only push into the buffer
    - Invalidate the traversal cache before re-running a live graph query
"""

from __future__ import annotations

import copy
import inspect
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from ..config import SubscriptionConfig
from ..errors import ValidationError
from ..models import Document
from ..query.engine import QueryEngine, to_document
from ..query.graph import GraphNode, GraphTraversalEngine
from ..store.base import ChangeEvent, ChangeType, DocumentStore, QueryPredicates
from ..values import values_equal
from .buffer import SubscriptionBuffer

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Union[None, Awaitable[None]]]


@dataclass
class ChangeSet:
    """Documents changed during one buffering window."""

    added: List[Document] = field(default_factory=list)
    modified: List[Document] = field(default_factory=list)
    removed: List[Document] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.added) + len(self.modified) + len(self.removed)


@dataclass
class GraphChangeSet:
    """Graph nodes that appeared, changed or disappeared since the last flush."""

    added: List[GraphNode] = field(default_factory=list)
    modified: List[GraphNode] = field(default_factory=list)
    removed: List[GraphNode] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.added) + len(self.modified) + len(self.removed)


async def _invoke(handler: Handler, payload: Any) -> None:
    outcome = handler(payload)
    if inspect.isawaitable(outcome):
        await outcome


class Subscription:
    """Handle for a live subscription."""

    def __init__(
        self,
        subscription_id: int,
        collections: List[str],
        buffer: SubscriptionBuffer,
        on_close: Callable[[Subscription], None],
    ) -> None:
        self.id = subscription_id
        self.collections = collections
        self.buffer = buffer
        self._detach: List[Callable[[], None]] = []
        self._on_close = on_close
        self._closed = False

    @property
    def active(self) -> bool:
        return not self._closed

    @property
    def last_snapshot(self) -> Dict[str, Any]:
        return self.buffer.last_snapshot

    def attach(self, detach: Callable[[], None]) -> None:
        self._detach.append(detach)

    async def unsubscribe(self) -> None:
        """Cancel the timer, flush pending events, then detach the listeners."""
        if self._closed:
            return
        self._closed = True
        await self.buffer.close()
        for detach in self._detach:
            detach()
        self._detach.clear()
        self._on_close(self)
        logger.info(
            "Subscription closed",
            extra={"subscription_id": self.id, "collections": self.collections},
        )


class SubscriptionManager:
    """Creates and tracks live subscriptions for one engine."""

    def __init__(
        self,
        store: DocumentStore,
        query_engine: QueryEngine,
        graph_engine: GraphTraversalEngine,
        config: Optional[SubscriptionConfig] = None,
    ) -> None:
        self.store = store
        self.query_engine = query_engine
        self.graph_engine = graph_engine
        self.config = config or SubscriptionConfig()
        self._subscriptions: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._subscriptions)

    @property
    def subscriptions(self) -> List[Subscription]:
        return list(self._subscriptions.values())

    def _new_buffer(self, flush: Callable[[List[ChangeEvent]], Awaitable[None]],
                    buffer_window_ms: Optional[int], name: str) -> SubscriptionBuffer:
        window = self.config.buffer_window_ms if buffer_window_ms is None else buffer_window_ms
        if window < 0:
            raise ValidationError("buffer_window_ms must not be negative", field_name="buffer_window_ms")
        return SubscriptionBuffer(flush, window_ms=window, max_pending=self.config.max_pending, name=name)

    def _register(self, collections: List[str], buffer: SubscriptionBuffer,
                  subscription_id: int) -> Subscription:
        subscription = Subscription(
            subscription_id,
            collections,
            buffer,
            on_close=lambda s: self._subscriptions.pop(s.id, None),
        )
        self._subscriptions[subscription_id] = subscription
        return subscription

    @staticmethod
    def _check_handlers(on_event: Any, on_error: Any) -> None:
        if on_event is None or not callable(on_event):
            raise ValidationError("on_event handler is required", field_name="on_event")
        if on_error is not None and not callable(on_error):
            raise ValidationError("on_error must be callable", field_name="on_error")

    async def _report(self, subscription_id: int, on_error: Optional[Handler], error: Exception) -> None:
        if on_error is None:
            logger.error(
                f"Subscription handler failed: {error}",
                extra={"subscription_id": subscription_id},
            )
            return
        try:
            await _invoke(on_error, error)
        except Exception as e:
            logger.error(
                f"Subscription error handler failed: {e}",
                extra={"subscription_id": subscription_id},
            )

    async def subscribe(
        self,
        collection: str,
        on_event: Handler,
        where: Optional[Sequence[Any]] = None,
        order_by: Optional[Sequence[Any]] = None,
        limit: Optional[int] = None,
        on_error: Optional[Handler] = None,
        buffer_window_ms: Optional[int] = None,
    ) -> Subscription:
        """Subscribe to buffered changes of documents matching where.

        Args:
            collection: Collection to watch
            on_event: Sync or async handler receiving a ChangeSet per flush
            where: [field, op, value] clauses selecting watched documents
            order_by: Validated for parity with query(); changes arrive in commit order
            limit: Validated for parity with query(); not applied to change events
            on_error: Sync or async handler receiving handler exceptions
            buffer_window_ms: Window override (defaults to SubscriptionConfig)

        Returns:
            Subscription handle

        Raises:
            ValidationError: If on_event is missing or a clause is malformed
        """
        self._check_handlers(on_event, on_error)
        spec = self.query_engine.build_spec(where, order_by, limit)
        subscription_id = next(self._ids)

        async def flush(events: List[ChangeEvent]) -> None:
            change_set = ChangeSet()
            for event in events:
                doc = to_document(event.document)
                key = event.document.key
                if event.type == ChangeType.ADDED:
                    change_set.added.append(doc)
                    buffer.last_snapshot[key] = doc
                elif event.type == ChangeType.MODIFIED:
                    change_set.modified.append(doc)
                    buffer.last_snapshot[key] = doc
                else:
                    change_set.removed.append(doc)
                    buffer.last_snapshot.pop(key, None)
            try:
                await _invoke(on_event, change_set)
            except Exception as e:
                await self._report(subscription_id, on_error, e)

        buffer = self._new_buffer(flush, buffer_window_ms, name=f"{collection}#{subscription_id}")
        subscription = self._register([collection], buffer, subscription_id)
        subscription.attach(
            self.store.listen(collection, QueryPredicates(where=tuple(spec.where)), buffer.push)
        )

        logger.info(
            "Subscription opened",
            extra={
                "subscription_id": subscription_id,
                "collection": collection,
                "window_ms": buffer.window_ms,
            },
        )
        return subscription

    async def subscribe_graph(
        self,
        start_collection: str,
        on_event: Handler,
        start_node: Optional[str] = None,
        relationships: Sequence[Any] = (),
        depth: int = 1,
        where: Optional[Sequence[Any]] = None,
        order_by: Optional[Sequence[Any]] = None,
        limit: Optional[int] = None,
        include_path: bool = True,
        max_nodes: Optional[int] = None,
        on_error: Optional[Handler] = None,
        buffer_window_ms: Optional[int] = None,
    ) -> Subscription:
        """Subscribe to node-level changes of a graph query.

        The current result is loaded at subscribe time without notifying the
        handler, so the first flush reports only real changes.

        Returns:
            Subscription handle

        Raises:
            ValidationError: If on_event is missing or a RelSpec is malformed
        """
        self._check_handlers(on_event, on_error)
        rels = self.graph_engine.build_relationships(relationships)
        params: Dict[str, Any] = {
            "start_collection": start_collection,
            "start_node": start_node,
            "relationships": rels,
            "depth": depth,
            "where": where,
            "order_by": order_by,
            "limit": limit,
            "include_path": include_path,
            "max_nodes": max_nodes,
        }
        collections = list(dict.fromkeys([start_collection] + [r.collection for r in rels]))
        subscription_id = next(self._ids)

        initial = await self.graph_engine.graph_query(**params)
        # Handlers receive the live nodes; the diff baseline keeps its own copies
        seen: Dict[str, GraphNode] = {node.key: copy.deepcopy(node) for node in initial.results}

        async def flush(events: List[ChangeEvent]) -> None:
            try:
                self.graph_engine.cache.invalidate({e.document.collection for e in events})
                result = await self.graph_engine.graph_query(**params)
            except Exception as e:
                await self._report(subscription_id, on_error, e)
                return

            current = {node.key: node for node in result.results}
            change_set = GraphChangeSet()
            for key, node in current.items():
                previous = seen.get(key)
                if previous is None:
                    change_set.added.append(node)
                elif not values_equal(previous.data, node.data):
                    change_set.modified.append(node)
            change_set.removed.extend(node for key, node in seen.items() if key not in current)

            seen.clear()
            seen.update((key, copy.deepcopy(node)) for key, node in current.items())
            buffer.last_snapshot.clear()
            buffer.last_snapshot.update(seen)

            if not change_set:
                return
            try:
                await _invoke(on_event, change_set)
            except Exception as e:
                await self._report(subscription_id, on_error, e)

        buffer = self._new_buffer(flush, buffer_window_ms, name=f"graph:{start_collection}#{subscription_id}")
        buffer.last_snapshot.update(seen)
        subscription = self._register(collections, buffer, subscription_id)
        for name in collections:
            subscription.attach(self.store.listen(name, QueryPredicates(), buffer.push))

        logger.info(
            "Graph subscription opened",
            extra={
                "subscription_id": subscription_id,
                "collections": collections,
                "initial_nodes": len(seen),
            },
        )
        return subscription

    async def close_all(self) -> None:
        """Unsubscribe every live subscription."""
        for subscription in list(self._subscriptions.values()):
            await subscription.unsubscribe()
