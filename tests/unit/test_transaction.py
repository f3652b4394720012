"""
Unit tests for the transaction coordinator.

Tests cover:
- Read-modify-write with versioned metadata
- Conflict retries and exhaustion
- Timeouts
- Handle misuse after the function returns
- Errors that are never retried
"""

import asyncio

import pytest

from dbaas.docquery.config import TransactionConfig
from dbaas.docquery.errors import NotFoundError, TransactionError, ValidationError
from dbaas.docquery.store.memory import InMemoryDocumentStore
from dbaas.docquery.write.transaction import TransactionCoordinator, TransactionOpKind
from dbaas.docquery.write.versioned import VersionedWriter


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def writer(store):
    return VersionedWriter(store)


@pytest.fixture
def coordinator(store, writer):
    return TransactionCoordinator(store, writer, TransactionConfig(retry_delay_ms=0))


async def increment(txn):
    counter = await txn.get("counters", "c")
    txn.update("counters", "c", {"value": counter.get("value") + 1})
    return counter.get("value") + 1


class TestTransactionCoordinator:
    """Tests for TransactionCoordinator.run."""

    @pytest.mark.asyncio
    async def test_increment_counter(self, store, writer, coordinator):
        await writer.write("counters", "c", {"value": 5})

        outcome = await coordinator.run(increment)

        stored = await store.get("counters", "c")
        assert outcome.result == 6
        assert outcome.attempts == 1
        assert stored.data["value"] == 6
        assert stored.data["version"] == 2
        assert stored.data["history"][-1]["field_diffs"] == {"value": {"from": 5, "to": 6}}

    @pytest.mark.asyncio
    async def test_operations_reported(self, writer, coordinator):
        await writer.write("counters", "c", {"value": 1})

        outcome = await coordinator.run(increment)

        [op] = outcome.operations
        assert op.kind == TransactionOpKind.UPDATE
        assert op.id == "c"
        assert op.document.fields == {"value": 2}

    @pytest.mark.asyncio
    async def test_sync_user_function(self, store, coordinator):
        def create(txn):
            txn.set("counters", "c", {"value": 0})
            return "created"

        outcome = await coordinator.run(create)

        assert outcome.result == "created"
        assert (await store.get("counters", "c")).data["version"] == 1

    @pytest.mark.asyncio
    async def test_conflict_is_retried(self, store, writer, coordinator):
        await writer.write("counters", "c", {"value": 5})
        store.inject_conflict(times=2)

        outcome = await coordinator.run(increment)

        assert outcome.attempts == 3
        assert (await store.get("counters", "c")).data["value"] == 6

    @pytest.mark.asyncio
    async def test_concurrent_write_between_read_and_commit(self, store, writer, coordinator):
        await writer.write("counters", "c", {"value": 5})
        calls = []

        async def racing(txn):
            counter = await txn.get("counters", "c")
            if not calls:
                # Another writer bumps the counter during the first attempt
                await writer.write("counters", "c", {"value": 10})
            calls.append(counter.get("value"))
            txn.update("counters", "c", {"value": counter.get("value") + 1})

        outcome = await coordinator.run(racing)

        assert calls == [5, 10]
        assert outcome.attempts == 2
        assert (await store.get("counters", "c")).data["value"] == 11

    @pytest.mark.asyncio
    async def test_attempts_exhausted(self, store, writer, coordinator):
        await writer.write("counters", "c", {"value": 5})
        store.inject_conflict(times=10)

        with pytest.raises(TransactionError) as exc_info:
            await coordinator.run(increment, max_attempts=3)

        assert exc_info.value.attempts == 3
        assert (await store.get("counters", "c")).data["value"] == 5

    @pytest.mark.asyncio
    async def test_update_missing_document(self, coordinator):
        async def fn(txn):
            txn.update("counters", "ghost", {"value": 1})

        with pytest.raises(NotFoundError):
            await coordinator.run(fn)

    @pytest.mark.asyncio
    async def test_user_exception_not_retried(self, coordinator):
        calls = []

        async def fn(txn):
            calls.append(1)
            raise RuntimeError("bad input")

        with pytest.raises(RuntimeError):
            await coordinator.run(fn)

        assert calls == [1]

    @pytest.mark.asyncio
    async def test_handle_unusable_after_return(self, coordinator):
        captured = []

        async def fn(txn):
            captured.append(txn)

        await coordinator.run(fn)

        with pytest.raises(TransactionError):
            captured[0].set("counters", "c", {"value": 1})
        with pytest.raises(TransactionError):
            await captured[0].get("counters", "c")

    @pytest.mark.asyncio
    async def test_reads_do_not_see_queued_writes(self, coordinator):
        seen = []

        async def fn(txn):
            txn.set("items", "a", {"n": 1})
            seen.append(await txn.get("items", "a"))

        await coordinator.run(fn)

        assert seen == [None]

    @pytest.mark.asyncio
    async def test_queued_writes_chain_versions(self, store, coordinator):
        async def fn(txn):
            txn.set("items", "a", {"n": 1})
            txn.update("items", "a", {"n": 2})

        await coordinator.run(fn)

        stored = await store.get("items", "a")
        assert stored.data["version"] == 2
        assert stored.data["n"] == 2

    @pytest.mark.asyncio
    async def test_delete(self, store, writer, coordinator):
        await writer.write("items", "a", {"n": 1})

        async def fn(txn):
            txn.delete("items", "a")

        outcome = await coordinator.run(fn)

        assert await store.get("items", "a") is None
        assert outcome.operations[0].kind == TransactionOpKind.DELETE

    @pytest.mark.asyncio
    async def test_replace_keeps_creation_stamp(self, store, writer, coordinator):
        first = await writer.write("items", "a", {"n": 1, "extra": True}, actor="user:1")

        async def fn(txn):
            txn.set("items", "a", {"n": 2}, merge=False)

        await coordinator.run(fn)

        stored = await store.get("items", "a")
        assert "extra" not in stored.data
        assert stored.data["created_by"] == "user:1"
        assert stored.data["created_at"] == first.created_at

    @pytest.mark.asyncio
    async def test_timeout(self, coordinator):
        async def slow(txn):
            await asyncio.sleep(1)

        with pytest.raises(TransactionError) as exc_info:
            await coordinator.run(slow, timeout=0.01)

        assert exc_info.value.details["cause"] == "timeout"

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, coordinator):
        with pytest.raises(ValidationError):
            await coordinator.run("not callable")
        with pytest.raises(ValidationError):
            await coordinator.run(increment, max_attempts=0)

    @pytest.mark.asyncio
    async def test_reserved_fields_rejected_eagerly(self, coordinator):
        async def fn(txn):
            txn.set("items", "a", {"history": []})

        with pytest.raises(ValidationError):
            await coordinator.run(fn)
