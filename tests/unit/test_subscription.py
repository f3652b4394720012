"""
Unit tests for buffered live subscriptions.

Tests cover:
- Buffer batching by count and by window
- Sequential (never concurrent) flush delivery
- Unsubscribe flushing and idempotence
- Handler validation and error routing
- Live graph subscriptions
"""

import asyncio

import pytest

from dbaas.docquery.config import SubscriptionConfig
from dbaas.docquery.errors import ValidationError
from dbaas.docquery.live.buffer import BufferState, SubscriptionBuffer
from dbaas.docquery.live.subscriptions import SubscriptionManager
from dbaas.docquery.query.engine import QueryEngine
from dbaas.docquery.query.graph import GraphTraversalEngine
from dbaas.docquery.store.base import WriteKind, WriteOp
from dbaas.docquery.store.memory import InMemoryDocumentStore


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def manager(store):
    query_engine = QueryEngine(store)
    return SubscriptionManager(
        store,
        query_engine,
        GraphTraversalEngine(query_engine),
        SubscriptionConfig(buffer_window_ms=10, max_pending=100),
    )


class TestSubscriptionBuffer:
    """Tests for SubscriptionBuffer."""

    @pytest.mark.asyncio
    async def test_window_flush(self):
        batches = []

        async def on_flush(events):
            batches.append(list(events))

        buffer = SubscriptionBuffer(on_flush, window_ms=10, max_pending=100)
        buffer.push(["e1"])
        buffer.push(["e2"])

        assert buffer.state == BufferState.BUFFERING
        assert buffer.timer_armed

        await asyncio.sleep(0.05)

        assert batches == [["e1", "e2"]]
        assert buffer.state == BufferState.IDLE

    @pytest.mark.asyncio
    async def test_window_is_fixed_from_first_event(self):
        loop = asyncio.get_running_loop()
        flushed_at = []
        batches = []

        async def on_flush(events):
            flushed_at.append(loop.time())
            batches.append(list(events))

        buffer = SubscriptionBuffer(on_flush, window_ms=200, max_pending=100)
        started = loop.time()
        buffer.push(["e1"])
        await asyncio.sleep(0.14)
        buffer.push(["e2"])

        # A debounced window would restart here and fire near 340ms
        await asyncio.sleep(0.12)

        assert batches == [["e1", "e2"]]
        assert 0.19 <= flushed_at[0] - started < 0.3

    @pytest.mark.asyncio
    async def test_max_pending_cuts_immediately(self):
        batches = []

        async def on_flush(events):
            batches.append(len(events))

        buffer = SubscriptionBuffer(on_flush, window_ms=60000, max_pending=3)
        buffer.push(list(range(7)))
        await buffer.flush()

        assert batches == [3, 3, 1]
        assert not buffer.timer_armed

    @pytest.mark.asyncio
    async def test_flushes_never_overlap(self):
        in_flight = []
        peak = []

        async def on_flush(events):
            in_flight.append(1)
            peak.append(len(in_flight))
            await asyncio.sleep(0.01)
            in_flight.pop()

        buffer = SubscriptionBuffer(on_flush, window_ms=60000, max_pending=2)
        for i in range(10):
            buffer.push([i])
            await asyncio.sleep(0)
        await buffer.flush()

        assert max(peak) == 1
        assert buffer.flush_count == 5

    @pytest.mark.asyncio
    async def test_flush_error_is_logged_not_raised(self):
        calls = []

        async def on_flush(events):
            calls.append(events)
            raise RuntimeError("handler bug")

        buffer = SubscriptionBuffer(on_flush, window_ms=1, max_pending=1)
        buffer.push(["a", "b"])
        await buffer.flush()

        assert calls == [["a"], ["b"]]

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        batches = []

        async def on_flush(events):
            batches.append(list(events))

        buffer = SubscriptionBuffer(on_flush, window_ms=60000, max_pending=100)
        buffer.push(["a"])
        await buffer.close()
        await buffer.close()
        buffer.push(["b"])
        await asyncio.sleep(0)

        assert batches == [["a"]]
        assert buffer.closed


class TestSubscribe:
    """Tests for SubscriptionManager.subscribe."""

    @pytest.mark.asyncio
    async def test_batches_of_max_pending(self, store, manager):
        """150 events arrive as a batch of 100 then a batch of 50."""
        sizes = []
        in_flight = []
        peak = []

        async def on_event(change_set):
            in_flight.append(1)
            peak.append(len(in_flight))
            sizes.append(len(change_set.added))
            await asyncio.sleep(0.005)
            in_flight.pop()

        subscription = await manager.subscribe("items", on_event)
        await store.commit_batch(
            [WriteOp(WriteKind.SET, "items", f"i{n}", {"n": n}) for n in range(150)]
        )
        await asyncio.sleep(0.02)
        await subscription.buffer.flush()

        assert sizes == [100, 50]
        assert max(peak) == 1
        await subscription.unsubscribe()

    @pytest.mark.asyncio
    async def test_change_kinds_and_where(self, store, manager):
        received = []
        subscription = await manager.subscribe(
            "tasks", received.append, where=[["open", "==", True]], buffer_window_ms=60000
        )

        await store.put("tasks", "t1", {"open": True})
        await store.put("tasks", "t1", {"open": True, "title": "x"})
        await store.put("tasks", "t2", {"open": False})
        await store.delete("tasks", "t1")
        await subscription.buffer.flush()

        [change_set] = received
        assert [d.id for d in change_set.added] == ["t1"]
        assert [d.fields for d in change_set.modified] == [{"open": True, "title": "x"}]
        assert [d.id for d in change_set.removed] == ["t1"]
        assert subscription.last_snapshot == {}

    @pytest.mark.asyncio
    async def test_unsubscribe_flushes_once_and_detaches(self, store, manager):
        received = []
        subscription = await manager.subscribe("tasks", received.append, buffer_window_ms=60000)

        await store.put("tasks", "t1", {"a": 1})
        await subscription.unsubscribe()
        await subscription.unsubscribe()
        await store.put("tasks", "t2", {"a": 1})
        await asyncio.sleep(0.02)

        assert len(received) == 1
        assert not subscription.active
        assert len(manager) == 0
        assert store.listener_count == 0

    @pytest.mark.asyncio
    async def test_missing_handler(self, manager):
        with pytest.raises(ValidationError):
            await manager.subscribe("tasks", None)

    @pytest.mark.asyncio
    async def test_handler_errors_go_to_on_error(self, store, manager):
        errors = []

        def on_event(change_set):
            raise RuntimeError("boom")

        subscription = await manager.subscribe(
            "tasks", on_event, on_error=errors.append, buffer_window_ms=60000
        )
        await store.put("tasks", "t1", {"a": 1})
        await subscription.buffer.flush()

        assert [str(e) for e in errors] == ["boom"]

    @pytest.mark.asyncio
    async def test_close_all(self, manager):
        await manager.subscribe("a", lambda cs: None)
        await manager.subscribe("b", lambda cs: None)

        await manager.close_all()

        assert manager.subscriptions == []


class TestSubscribeGraph:
    """Tests for SubscriptionManager.subscribe_graph."""

    OWNER = {"collection": "users", "field": "owner_id"}

    @pytest.mark.asyncio
    async def test_reports_node_changes(self, store, manager):
        await store.put("users", "u1", {"name": "Ann"})
        await store.put("users", "u2", {"name": "Ben"})
        await store.put("tasks", "t1", {"owner_id": "u1"})
        received = []

        subscription = await manager.subscribe_graph(
            "tasks",
            received.append,
            start_node="t1",
            relationships=[self.OWNER],
            buffer_window_ms=60000,
        )
        assert set(subscription.last_snapshot) == {"tasks/t1", "users/u1"}

        await store.put("tasks", "t1", {"owner_id": "u2"})
        await subscription.buffer.flush()

        [change_set] = received
        assert [n.key for n in change_set.added] == ["users/u2"]
        assert [n.key for n in change_set.modified] == ["tasks/t1"]
        assert [n.key for n in change_set.removed] == ["users/u1"]
        await subscription.unsubscribe()

    @pytest.mark.asyncio
    async def test_related_document_update_is_seen(self, store, manager):
        await store.put("users", "u1", {"name": "Ann"})
        await store.put("tasks", "t1", {"owner_id": "u1"})
        received = []
        subscription = await manager.subscribe_graph(
            "tasks",
            received.append,
            start_node="t1",
            relationships=[self.OWNER],
            buffer_window_ms=60000,
        )

        await store.put("users", "u1", {"name": "Annie"})
        await subscription.buffer.flush()

        [change_set] = received
        assert [n.data["name"] for n in change_set.modified] == ["Annie"]

    @pytest.mark.asyncio
    async def test_handler_mutation_does_not_skew_diff(self, store, manager):
        await store.put("users", "u1", {"name": "Ann"})
        await store.put("tasks", "t1", {"owner_id": "u1"})
        received = []

        def on_event(change_set):
            received.append(change_set)
            for node in change_set.modified:
                node.data["name"] = "changed"

        subscription = await manager.subscribe_graph(
            "tasks",
            on_event,
            start_node="t1",
            relationships=[self.OWNER],
            buffer_window_ms=60000,
        )

        await store.put("users", "u1", {"name": "Annie"})
        await subscription.buffer.flush()
        await store.put("users", "u1", {"name": "Annie"})
        await subscription.buffer.flush()

        assert len(received) == 1
        assert subscription.last_snapshot["users/u1"].data == {"name": "Annie"}
        await subscription.unsubscribe()

    @pytest.mark.asyncio
    async def test_unrelated_change_is_silent(self, store, manager):
        await store.put("users", "u1", {"name": "Ann"})
        await store.put("tasks", "t1", {"owner_id": "u1"})
        received = []
        subscription = await manager.subscribe_graph(
            "tasks",
            received.append,
            start_node="t1",
            relationships=[self.OWNER],
            buffer_window_ms=60000,
        )

        await store.put("users", "u9", {"name": "Zed"})
        await subscription.buffer.flush()

        assert received == []
        assert subscription.buffer.flush_count == 1

    @pytest.mark.asyncio
    async def test_bad_relationship(self, manager):
        with pytest.raises(ValidationError):
            await manager.subscribe_graph("tasks", print, relationships=[{"field": "x"}])
