"""
tabsync Kernel — Sync Queue

The durable, ordered list of mutations still owed to the remote.
Persisted as a JSON array under SYNC_QUEUE_KEY after every change.

Order is enqueue order for the whole queue (not per record): two writes to the
same record are always drained in the order they were issued.

If durable storage is unavailable the failure is logged and the in-memory
queue keeps working for the rest of the session.
"""

from __future__ import annotations

import logging

from pydantic import ValidationError

from tabsync.kernel.storage import DurableStore
from tabsync.kernel.types import SYNC_QUEUE_KEY, StorageError, SyncOperation

logger = logging.getLogger(__name__)


class SyncQueue:
    def __init__(self, durable: DurableStore, key: str = SYNC_QUEUE_KEY):
        self._durable = durable
        self.key = key
        self.operations: list[SyncOperation] = []

    def __len__(self) -> int:
        return len(self.operations)

    async def load(self) -> None:
        """
        Restore the queue saved by a previous session.
        Operations caught mid-flight ("syncing") go back to "pending".
        """
        try:
            saved = await self._durable.get(self.key)
        except StorageError:
            logger.exception("sync_queue: failed to load, starting empty")
            self.operations = []
            return

        operations: list[SyncOperation] = []
        for record in saved if isinstance(saved, list) else []:
            try:
                op = SyncOperation.model_validate(record)
            except ValidationError as e:
                logger.warning("sync_queue: dropping malformed operation %r: %s", record, e)
                continue
            if op.status == "syncing":
                op.status = "pending"
            operations.append(op)
        self.operations = operations
        logger.info("sync_queue: loaded %d operations", len(operations))

    async def save(self) -> bool:
        try:
            await self._durable.put(self.key, [op.to_record() for op in self.operations])
        except StorageError as e:
            logger.warning("sync_queue: failed to persist %d operations: %s", len(self.operations), e)
            return False
        return True

    async def enqueue(self, op: SyncOperation) -> None:
        self.operations.append(op)
        await self.save()

    def pending(self) -> list[SyncOperation]:
        return [op for op in self.operations if op.status == "pending"]

    def failed(self) -> list[SyncOperation]:
        return [op for op in self.operations if op.status == "failed"]

    def prune_completed(self) -> int:
        before = len(self.operations)
        self.operations = [op for op in self.operations if op.status != "completed"]
        return before - len(self.operations)

    def reset_failed(self) -> list[SyncOperation]:
        failed = self.failed()
        for op in failed:
            op.status = "pending"
            op.retries = 0
            op.error = None
        return failed
