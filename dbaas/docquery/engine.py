"""
Engine composition for docquery.

The Engine is the single object a host process constructs and passes to
its route handlers. It owns one instance of every component (writer,
batch executor, transaction coordinator, query/aggregate/search/graph
engines, subscription manager) and exposes their operations as attributes
wrapped with middleware at construction.

Usage:
    engine = Engine.from_config(EngineConfig.from_env())
    doc = await engine.write("tasks", "t1", {"title": "Ship"}, actor="user:1")
    await engine.close()

Invariants:
    - No module-level state; two engines never share caches or subscriptions
    - Middleware is applied once, in __init__
    - close() unsubscribes every live subscription before closing the store
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import json_log_formatter

from ._version import __version__
from .config import EngineConfig
from .middleware import (
    AccessHook,
    MetricsRegistry,
    Middleware,
    authorize,
    decorate,
    log_calls,
    monitor,
)
from .models import Document
from .query.aggregate import AggregationEngine
from .query.engine import QueryEngine, to_document
from .query.graph import GraphTraversalEngine
from .query.search import SearchEngine
from .live.subscriptions import SubscriptionManager
from .store.base import DocumentStore, create_store
from .write.batch import BatchExecutor
from .write.transaction import TransactionCoordinator
from .write.versioned import VersionedWriter

logger = logging.getLogger(__name__)

OPERATIONS = (
    "write",
    "execute_batch",
    "run_transaction",
    "query",
    "aggregate_query",
    "full_text_search",
    "graph_query",
    "subscribe",
    "subscribe_graph",
    "get_document",
)


def setup_logging(config: EngineConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Engine configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]


class Engine:
    """docquery engine.

    Attributes:
        config: Engine configuration
        store: Document store backend
        metrics: Per-operation metrics (empty when metrics are disabled)

    Example:
        >>> engine = Engine(InMemoryDocumentStore())
        >>> await engine.write("tasks", "t1", {"title": "Draft"})
        >>> result = await engine.query("tasks", where=[["title", "==", "Draft"]])
        >>> await engine.close()
    """

    def __init__(
        self,
        store: DocumentStore,
        config: Optional[EngineConfig] = None,
        access_hook: Optional[AccessHook] = None,
    ) -> None:
        """Build every component and apply middleware.

        Args:
            store: Document store backend
            config: Engine configuration (defaults when not provided)
            access_hook: Optional hook(operation, args, kwargs) consulted before every call
        """
        self.config = config or EngineConfig()
        self.config.validate()
        self.store = store
        self.metrics = MetricsRegistry()
        self._closed = False

        self.writer = VersionedWriter(store, self.config.write)
        self.batch_executor = BatchExecutor(store, self.writer, self.config.batch.chunk_size)
        self.transactions = TransactionCoordinator(store, self.writer, self.config.transaction)
        self.query_engine = QueryEngine(store, self.config.query)
        self.aggregation_engine = AggregationEngine(self.query_engine)
        self.search_engine = SearchEngine(self.query_engine, self.config.search)
        self.graph_engine = GraphTraversalEngine(self.query_engine, self.config.graph)
        self.subscriptions = SubscriptionManager(
            store, self.query_engine, self.graph_engine, self.config.subscription
        )

        middlewares: list[Middleware] = []
        if self.config.observability.metrics_enabled:
            middlewares.append(monitor(self.metrics))
        if access_hook is not None:
            middlewares.append(authorize(access_hook))
        middlewares.append(log_calls(logger))

        operations = {
            "write": self.writer.write,
            "execute_batch": self.batch_executor.execute_batch,
            "run_transaction": self.transactions.run,
            "query": self.query_engine.query,
            "aggregate_query": self.aggregation_engine.aggregate_query,
            "full_text_search": self.search_engine.full_text_search,
            "graph_query": self.graph_engine.graph_query,
            "subscribe": self.subscriptions.subscribe,
            "subscribe_graph": self.subscriptions.subscribe_graph,
            "get_document": self._get_document,
        }
        for name in OPERATIONS:
            setattr(self, name, decorate(name, operations[name], *middlewares))

        logger.info(
            "Engine started",
            extra={
                "version": __version__,
                "store": type(store).__name__,
                "middlewares": len(middlewares),
            },
        )

    @classmethod
    def from_config(
        cls,
        config: Optional[EngineConfig] = None,
        access_hook: Optional[AccessHook] = None,
    ) -> Engine:
        """Build an engine and its store from configuration.

        Args:
            config: Engine configuration (loaded from env if not provided)
            access_hook: Optional access hook
        """
        config = config or EngineConfig.from_env()
        config.log_config()
        return cls(create_store(config.storage), config, access_hook)

    async def _get_document(self, collection: str, doc_id: str) -> Optional[Document]:
        """Read a single document, or None if absent."""
        stored = await self.store.get(collection, doc_id)
        return to_document(stored) if stored else None

    def status(self) -> Dict[str, Any]:
        """Report component state for health endpoints."""
        return {
            "version": __version__,
            "closed": self._closed,
            "store": type(self.store).__name__,
            "graph_cache": self.graph_engine.cache.stats(),
            "subscriptions": [
                {
                    "id": s.id,
                    "collections": s.collections,
                    "state": s.buffer.state.value,
                    "pending": s.buffer.pending_count,
                    "flushes": s.buffer.flush_count,
                }
                for s in self.subscriptions.subscriptions
            ],
            "metrics": self.metrics.snapshot(),
        }

    async def close(self) -> None:
        """Unsubscribe every live subscription and close the store."""
        if self._closed:
            return
        self._closed = True
        await self.subscriptions.close_all()
        self.graph_engine.cache.clear()
        await self.store.close()
        logger.info("Engine closed")
