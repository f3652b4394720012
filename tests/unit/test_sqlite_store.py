"""
Unit tests for the SQLite document store.

Tests cover:
- Schema creation and persistence across instances
- CRUD and merge semantics
- Atomic batch commits and transaction conflicts
- Listener dispatch after commit
"""

import tempfile

import pytest

from dbaas.docquery.errors import ConflictError, StorageError
from dbaas.docquery.store.base import ChangeType, QueryPredicates, WriteKind, WriteOp
from dbaas.docquery.store.sqlite import SqliteDocumentStore


class TestSqliteDocumentStore:
    """Tests for SqliteDocumentStore."""

    @pytest.fixture
    def data_dir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def store(self, data_dir):
        return SqliteDocumentStore(data_dir)

    @pytest.mark.asyncio
    async def test_put_get_roundtrip(self, store):
        await store.put("tasks", "t1", {"title": "Ship", "tags": ["a"], "meta": {"n": 1.5}})

        doc = await store.get("tasks", "t1")

        assert doc.id == "t1"
        assert doc.collection == "tasks"
        assert doc.data == {"title": "Ship", "tags": ["a"], "meta": {"n": 1.5}}
        assert doc.revision == 1

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, data_dir):
        await SqliteDocumentStore(data_dir).put("tasks", "t1", {"a": 1})

        doc = await SqliteDocumentStore(data_dir).get("tasks", "t1")

        assert doc.data == {"a": 1}

    @pytest.mark.asyncio
    async def test_merge_and_replace(self, store):
        await store.put("tasks", "t1", {"a": 1, "b": 2})
        await store.put("tasks", "t1", {"b": 3})
        assert (await store.get("tasks", "t1")).data == {"a": 1, "b": 3}

        await store.put("tasks", "t1", {"c": 4}, merge=False)
        assert (await store.get("tasks", "t1")).data == {"c": 4}

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.put("tasks", "t1", {"a": 1})

        assert await store.delete("tasks", "t1") is True
        assert await store.delete("tasks", "t1") is False

    @pytest.mark.asyncio
    async def test_query_by_id_membership(self, store):
        for i in range(5):
            await store.put("tasks", f"t{i}", {"n": i})

        docs = await store.query(
            "tasks",
            QueryPredicates(where=(("__name__", "in", ["t1", "t3", "zz"]),), order_by=(("n", "asc"),)),
        )

        assert [d.id for d in docs] == ["t1", "t3"]

    @pytest.mark.asyncio
    async def test_query_keeps_insertion_order(self, store):
        for doc_id in ["c", "a", "b"]:
            await store.put("tasks", doc_id, {"x": 1})

        docs = await store.query("tasks", QueryPredicates())

        assert [d.id for d in docs] == ["c", "a", "b"]

    @pytest.mark.asyncio
    async def test_batch_rolls_back_on_failure(self, store):
        ops = [
            WriteOp(WriteKind.SET, "tasks", "t1", {"a": 1}),
            WriteOp(WriteKind.UPDATE, "tasks", "missing", {"a": 1}),
        ]

        with pytest.raises(StorageError):
            await store.commit_batch(ops)

        assert await store.get("tasks", "t1") is None

    @pytest.mark.asyncio
    async def test_transaction_conflict(self, store):
        await store.put("counters", "c", {"n": 1})

        async def fn(txn):
            await txn.get("counters", "c")
            await store.put("counters", "c", {"n": 50})
            txn.set("counters", "c", {"n": 2})

        with pytest.raises(ConflictError):
            await store.run_store_transaction(fn)

        assert (await store.get("counters", "c")).data == {"n": 50}

    @pytest.mark.asyncio
    async def test_transaction_commit(self, store):
        await store.put("counters", "c", {"n": 1})

        async def fn(txn):
            doc = await txn.get("counters", "c")
            txn.update("counters", "c", {"n": doc.data["n"] + 1})

        await store.run_store_transaction(fn)

        assert (await store.get("counters", "c")).data == {"n": 2}

    @pytest.mark.asyncio
    async def test_listeners_notified_after_commit(self, store):
        received = []
        store.listen("tasks", QueryPredicates(), received.extend)

        await store.put("tasks", "t1", {"a": 1})
        await store.delete("tasks", "t1")

        assert [e.type for e in received] == [ChangeType.ADDED, ChangeType.REMOVED]

    @pytest.mark.asyncio
    async def test_stats(self, store):
        await store.put("tasks", "t1", {"a": 1})
        await store.put("projects", "p1", {"a": 1})
        await store.put("projects", "p2", {"a": 1})

        assert await store.get_stats() == {"tasks": 1, "projects": 2}
