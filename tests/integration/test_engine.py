"""
Integration tests for the Engine over the SQLite store.

Tests cover:
- Versioned writes persisted across engine instances
- Batches, transactions and reads through the engine facade
- Live subscriptions fed by SQLite commits
- Middleware (metrics and access hooks) on engine operations
- Shutdown
"""

import tempfile

import pytest

from dbaas.docquery import AccessDeniedError, Engine, NotFoundError
from dbaas.docquery.config import EngineConfig, StorageConfig, StoreBackend
from dbaas.docquery.store.memory import InMemoryDocumentStore


class TestEngineIntegration:
    """End-to-end tests for Engine with SQLite."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def config(self, data_dir):
        return EngineConfig(storage=StorageConfig(backend=StoreBackend.SQLITE, data_dir=data_dir))

    @pytest.fixture
    async def engine(self, config):
        engine = Engine.from_config(config)
        yield engine
        await engine.close()

    @pytest.mark.asyncio
    async def test_write_and_reopen(self, config, engine):
        await engine.write("tasks", "t1", {"title": "Draft"}, actor="user:1")
        await engine.write("tasks", "t1", {"title": "Final"}, actor="user:2")

        reopened = Engine.from_config(config)
        doc = await reopened.get_document("tasks", "t1")
        await reopened.close()

        assert doc.fields == {"title": "Final"}
        assert doc.version == 2
        assert doc.created_by == "user:1"
        assert doc.updated_by == "user:2"
        assert [r.field_diffs["title"].to_dict() for r in doc.history] == [
            {"from": None, "to": "Draft"},
            {"from": "Draft", "to": "Final"},
        ]

    @pytest.mark.asyncio
    async def test_batch_then_aggregate(self, engine):
        ops = [
            {"kind": "set", "collection": "orders", "id": f"o{i}", "fields": {"region": region, "amount": i}}
            for i, region in enumerate(["eu", "us", "eu", "eu", "us"])
        ]

        batch = await engine.execute_batch(ops, chunk_size=2)
        result = await engine.aggregate_query(
            "orders",
            group_by=["region"],
            aggregates={"total": {"field": "amount", "op": "sum"}},
        )

        assert len(batch.successful) == 5
        totals = {g.key: g.aggregates["total"].sum for g in result.results}
        assert totals == {"eu": 0 + 2 + 3, "us": 1 + 4}

    @pytest.mark.asyncio
    async def test_transaction_counter(self, engine):
        await engine.write("counters", "visits", {"value": 5})

        async def increment(txn):
            counter = await txn.get("counters", "visits")
            txn.update("counters", "visits", {"value": counter.get("value") + 1})

        await engine.run_transaction(increment)

        doc = await engine.get_document("counters", "visits")
        assert doc.fields["value"] == 6
        assert doc.version == 2

    @pytest.mark.asyncio
    async def test_transaction_update_missing(self, engine):
        async def fn(txn):
            txn.update("counters", "ghost", {"value": 1})

        with pytest.raises(NotFoundError):
            await engine.run_transaction(fn)

    @pytest.mark.asyncio
    async def test_query_search_graph(self, engine):
        await engine.write("users", "u1", {"name": "Ann"})
        await engine.write("tasks", "t1", {"title": "hello world", "owner_id": "u1", "n": 2})
        await engine.write("tasks", "t2", {"title": "other", "owner_id": "u1", "n": 1})

        queried = await engine.query("tasks", order_by=["n"])
        searched = await engine.full_text_search("tasks", "helo", fields=["title"])
        graph = await engine.graph_query(
            "users",
            start_node="u1",
            relationships=[{"collection": "tasks", "field": "owner_id", "direction": "inbound"}],
        )

        assert [d.id for d in queried.results] == ["t2", "t1"]
        assert [h.document.id for h in searched.results] == ["t1"]
        assert [n.key for n in graph.results] == ["users/u1", "tasks/t1", "tasks/t2"]

    @pytest.mark.asyncio
    async def test_subscription_sees_sqlite_commits(self, engine):
        received = []
        subscription = await engine.subscribe("tasks", received.append, buffer_window_ms=60000)

        await engine.write("tasks", "t1", {"title": "a"})
        await engine.write("tasks", "t1", {"title": "b"})
        await subscription.unsubscribe()

        [change_set] = received
        assert [d.version for d in change_set.added] == [1]
        assert [d.fields["title"] for d in change_set.modified] == ["b"]

    @pytest.mark.asyncio
    async def test_metrics_and_status(self, engine):
        await engine.write("tasks", "t1", {"title": "a"})
        await engine.query("tasks")

        status = engine.status()

        assert status["metrics"]["write"]["count"] == 1
        assert status["metrics"]["query"]["count"] == 1
        assert status["store"] == "SqliteDocumentStore"


class TestEngineLifecycle:
    """Tests for access hooks and shutdown."""

    @pytest.mark.asyncio
    async def test_access_hook_denies_writes(self):
        def read_only(operation, args, kwargs):
            return operation not in ("write", "execute_batch", "run_transaction")

        engine = Engine(InMemoryDocumentStore(), access_hook=read_only)

        with pytest.raises(AccessDeniedError):
            await engine.write("tasks", "t1", {"a": 1})
        assert (await engine.query("tasks")).results == []
        assert engine.metrics.get("write").errors == 1

        await engine.close()

    @pytest.mark.asyncio
    async def test_close_unsubscribes_and_is_idempotent(self):
        store = InMemoryDocumentStore()
        engine = Engine(store)
        await engine.subscribe("tasks", lambda change_set: None)

        await engine.close()
        await engine.close()

        assert store.listener_count == 0
        assert engine.status()["closed"] is True
        assert engine.status()["subscriptions"] == []
