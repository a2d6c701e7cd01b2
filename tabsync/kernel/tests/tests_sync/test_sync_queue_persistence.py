"""
tabsync Sync Queue -- Durable Persistence Tests

Covers:
  - save/load round trip under the sync_queue key
  - operations caught mid-flight come back as pending
  - malformed saved records are dropped, valid ones kept
  - storage failures are logged and the in-memory queue keeps working
"""

import logging

import pytest

from tabsync.kernel.storage import MemoryDurableStore
from tabsync.kernel.sync_queue import SyncQueue
from tabsync.kernel.types import SYNC_QUEUE_KEY, StorageError, SyncOperation


class BrokenStore(MemoryDurableStore):
    """Durable storage that is unavailable."""

    async def get(self, key):
        raise StorageError("disk gone")

    async def put(self, key, value):
        raise StorageError("disk gone")


def make_op(**overrides):
    fields = {"type": "create", "table": "clients", "data": {"id": "c1", "name": "Acme"}, "timestamp": 1}
    fields.update(overrides)
    return SyncOperation(**fields)


class TestRoundTrip:
    @pytest.mark.asyncio
    async def test_enqueue_persists_json_array(self):
        durable = MemoryDurableStore()
        queue = SyncQueue(durable)

        await queue.enqueue(make_op(id="op-1"))

        saved = await durable.get(SYNC_QUEUE_KEY)
        assert saved == [
            {
                "id": "op-1",
                "type": "create",
                "table": "clients",
                "data": {"id": "c1", "name": "Acme"},
                "timestamp": 1,
                "retries": 0,
                "status": "pending",
            }
        ]

    @pytest.mark.asyncio
    async def test_load_restores_order_and_resets_syncing(self):
        durable = MemoryDurableStore()
        first = SyncQueue(durable)
        await first.enqueue(make_op(id="a"))
        await first.enqueue(make_op(id="b", type="update", status="syncing"))
        await first.enqueue(make_op(id="c", type="delete", status="failed", retries=3, error="503"))

        second = SyncQueue(durable)
        await second.load()

        assert [op.id for op in second.operations] == ["a", "b", "c"]
        assert [op.status for op in second.operations] == ["pending", "pending", "failed"]
        assert second.operations[2].error == "503"

    @pytest.mark.asyncio
    async def test_malformed_records_dropped(self, caplog):
        durable = MemoryDurableStore()
        await durable.put(SYNC_QUEUE_KEY, [{"type": "explode"}, make_op(id="ok").to_record()])

        queue = SyncQueue(durable)
        with caplog.at_level(logging.WARNING, logger="tabsync.kernel.sync_queue"):
            await queue.load()

        assert [op.id for op in queue.operations] == ["ok"]
        assert "dropping malformed operation" in caplog.text

    @pytest.mark.asyncio
    async def test_missing_key_loads_empty(self):
        queue = SyncQueue(MemoryDurableStore())
        await queue.load()
        assert len(queue) == 0


class TestStatusHelpers:
    def test_pending_failed_prune_reset(self):
        queue = SyncQueue(MemoryDurableStore())
        queue.operations = [
            make_op(id="p"),
            make_op(id="f", status="failed", retries=3, error="x"),
            make_op(id="c", status="completed"),
        ]

        assert [op.id for op in queue.pending()] == ["p"]
        assert [op.id for op in queue.failed()] == ["f"]
        assert queue.prune_completed() == 1

        reset = queue.reset_failed()
        assert [op.id for op in reset] == ["f"]
        assert reset[0].status == "pending"
        assert reset[0].retries == 0
        assert reset[0].error is None


class TestStorageUnavailable:
    @pytest.mark.asyncio
    async def test_enqueue_still_works_in_memory(self, caplog):
        queue = SyncQueue(BrokenStore())
        with caplog.at_level(logging.WARNING, logger="tabsync.kernel.sync_queue"):
            await queue.enqueue(make_op())
            saved = await queue.save()

        assert saved is False
        assert len(queue) == 1
        assert "failed to persist" in caplog.text

    @pytest.mark.asyncio
    async def test_load_failure_starts_empty(self):
        queue = SyncQueue(BrokenStore())
        await queue.load()
        assert queue.operations == []
