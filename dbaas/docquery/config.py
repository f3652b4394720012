"""
Configuration management for docquery.

All configuration is done via environment variables - the engine is a
library and never reads config files. This module provides typed
configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Batch chunk size never exceeds the store's hard limit (500)
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep from_env() and the dataclass defaults in sync
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 500


class StoreBackend(Enum):
    """Supported document store backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class StorageConfig:
    """Document store configuration.

    Attributes:
        backend: Which store backend to use
        data_dir: Directory for the SQLite database file
        db_name: SQLite database file name
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    backend: StoreBackend = StoreBackend.MEMORY
    data_dir: str = "/var/lib/docquery"
    db_name: str = "docquery.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -64000  # 64MB

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("STORE_BACKEND", "memory").lower()
        try:
            backend = StoreBackend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid STORE_BACKEND '{backend_str}'. Must be one of: memory, sqlite")

        return cls(
            backend=backend,
            data_dir=os.getenv("DATA_DIR", "/var/lib/docquery"),
            db_name=os.getenv("SQLITE_DB_NAME", "docquery.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-64000")),
        )


@dataclass(frozen=True)
class WriteConfig:
    """Versioned write configuration.

    Attributes:
        history_limit: Maximum change records kept per document
        default_actor: Actor recorded when the caller supplies none
    """

    history_limit: int = 50
    default_actor: str = "system:docquery"

    @classmethod
    def from_env(cls) -> WriteConfig:
        """Load configuration from environment variables."""
        return cls(
            history_limit=int(os.getenv("HISTORY_LIMIT", "50")),
            default_actor=os.getenv("DEFAULT_ACTOR", "system:docquery"),
        )


@dataclass(frozen=True)
class BatchConfig:
    """Batch executor configuration.

    Attributes:
        chunk_size: Operations committed per atomic chunk
    """

    chunk_size: int = MAX_BATCH_SIZE

    @classmethod
    def from_env(cls) -> BatchConfig:
        """Load configuration from environment variables."""
        return cls(chunk_size=int(os.getenv("BATCH_CHUNK_SIZE", str(MAX_BATCH_SIZE))))


@dataclass(frozen=True)
class TransactionConfig:
    """Transaction coordinator configuration.

    Attributes:
        max_attempts: Attempts before giving up on conflicts
        timeout_seconds: Wall-clock budget for the whole retry loop
        retry_delay_ms: Linear backoff step between attempts
    """

    max_attempts: int = 5
    timeout_seconds: float = 30.0
    retry_delay_ms: int = 10

    @classmethod
    def from_env(cls) -> TransactionConfig:
        """Load configuration from environment variables."""
        return cls(
            max_attempts=int(os.getenv("TXN_MAX_ATTEMPTS", "5")),
            timeout_seconds=float(os.getenv("TXN_TIMEOUT_SECONDS", "30")),
            retry_delay_ms=int(os.getenv("TXN_RETRY_DELAY_MS", "10")),
        )


@dataclass(frozen=True)
class QueryConfig:
    """Query engine configuration."""

    default_limit: int = 100

    @classmethod
    def from_env(cls) -> QueryConfig:
        """Load configuration from environment variables."""
        return cls(default_limit=int(os.getenv("QUERY_DEFAULT_LIMIT", "100")))


@dataclass(frozen=True)
class SearchConfig:
    """Full-text search configuration.

    Attributes:
        min_score: Default relevance threshold
        fuzzy_ratio: Allowed edit distance as a fraction of token length
        overfetch_factor: Candidates fetched per requested result
    """

    min_score: float = 0.2
    fuzzy_ratio: float = 0.3
    overfetch_factor: int = 3

    @classmethod
    def from_env(cls) -> SearchConfig:
        """Load configuration from environment variables."""
        return cls(
            min_score=float(os.getenv("SEARCH_MIN_SCORE", "0.2")),
            fuzzy_ratio=float(os.getenv("SEARCH_FUZZY_RATIO", "0.3")),
            overfetch_factor=int(os.getenv("SEARCH_OVERFETCH", "3")),
        )


@dataclass(frozen=True)
class GraphConfig:
    """Graph traversal configuration.

    Attributes:
        max_depth: Hard cap on traversal depth
        max_nodes: Default node cap per traversal
        relationship_limit: Default per-relationship fetch limit
        cache_max_entries: LRU bound of the relationship cache
        cache_ttl_seconds: Optional expiry of cached relationships
    """

    max_depth: int = 5
    max_nodes: int = 1000
    relationship_limit: int = 10
    cache_max_entries: int = 10000
    cache_ttl_seconds: float | None = None

    @classmethod
    def from_env(cls) -> GraphConfig:
        """Load configuration from environment variables."""
        ttl = os.getenv("GRAPH_CACHE_TTL_SECONDS")
        return cls(
            max_depth=int(os.getenv("GRAPH_MAX_DEPTH", "5")),
            max_nodes=int(os.getenv("GRAPH_MAX_NODES", "1000")),
            relationship_limit=int(os.getenv("GRAPH_REL_LIMIT", "10")),
            cache_max_entries=int(os.getenv("GRAPH_CACHE_MAX_ENTRIES", "10000")),
            cache_ttl_seconds=float(ttl) if ttl else None,
        )


@dataclass(frozen=True)
class SubscriptionConfig:
    """Subscription buffer configuration.

    Attributes:
        buffer_window_ms: Delay after the first unflushed event before a flush
        max_pending: Pending event count that forces an immediate flush
    """

    buffer_window_ms: int = 1000
    max_pending: int = 100

    @classmethod
    def from_env(cls) -> SubscriptionConfig:
        """Load configuration from environment variables."""
        return cls(
            buffer_window_ms=int(os.getenv("SUBSCRIPTION_BUFFER_MS", "1000")),
            max_pending=int(os.getenv("SUBSCRIPTION_MAX_PENDING", "100")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Observability and logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
        metrics_enabled: Whether operation metrics are collected
    """

    log_level: str = "INFO"
    log_format: str = "json"
    metrics_enabled: bool = True

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
            metrics_enabled=_env_bool("METRICS_ENABLED", "true"),
        )


@dataclass
class EngineConfig:
    """Complete engine configuration.

    Aggregates all configuration sections and provides validation.
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    write: WriteConfig = field(default_factory=WriteConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    transaction: TransactionConfig = field(default_factory=TransactionConfig)
    query: QueryConfig = field(default_factory=QueryConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    graph: GraphConfig = field(default_factory=GraphConfig)
    subscription: SubscriptionConfig = field(default_factory=SubscriptionConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            write=WriteConfig.from_env(),
            batch=BatchConfig.from_env(),
            transaction=TransactionConfig.from_env(),
            query=QueryConfig.from_env(),
            search=SearchConfig.from_env(),
            graph=GraphConfig.from_env(),
            subscription=SubscriptionConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not 1 <= self.batch.chunk_size <= MAX_BATCH_SIZE:
            raise ValueError(f"BATCH_CHUNK_SIZE must be between 1 and {MAX_BATCH_SIZE}")
        if self.write.history_limit < 1:
            raise ValueError("HISTORY_LIMIT must be positive")
        if self.transaction.max_attempts < 1:
            raise ValueError("TXN_MAX_ATTEMPTS must be positive")
        if self.transaction.timeout_seconds <= 0:
            raise ValueError("TXN_TIMEOUT_SECONDS must be positive")
        if self.graph.max_depth < 0 or self.graph.max_nodes < 1:
            raise ValueError("GRAPH_MAX_DEPTH must be >= 0 and GRAPH_MAX_NODES >= 1")
        if self.graph.cache_max_entries < 1:
            raise ValueError("GRAPH_CACHE_MAX_ENTRIES must be positive")
        if self.subscription.buffer_window_ms < 0 or self.subscription.max_pending < 1:
            raise ValueError("SUBSCRIPTION_BUFFER_MS must be >= 0 and SUBSCRIPTION_MAX_PENDING >= 1")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be one of: json, text")

        if self.storage.backend == StoreBackend.SQLITE and not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Engine configuration loaded",
            extra={
                "store_backend": self.storage.backend.value,
                "data_dir": self.storage.data_dir
                if self.storage.backend == StoreBackend.SQLITE
                else None,
                "history_limit": self.write.history_limit,
                "batch_chunk_size": self.batch.chunk_size,
                "txn_max_attempts": self.transaction.max_attempts,
                "graph_max_nodes": self.graph.max_nodes,
                "graph_cache_max_entries": self.graph.cache_max_entries,
                "subscription_buffer_ms": self.subscription.buffer_window_ms,
                "log_level": self.observability.log_level,
            },
        )
