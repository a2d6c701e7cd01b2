"""
tabsync Kernel — Sync Engine

Sits between the store (pure, synchronous) and the outside world (remote,
durable storage, connectivity signals). Offline-first CRUD:

  online   → write to the remote, dispatch the confirmed record, refresh cache
  offline  → dispatch an optimistic record now, queue the write durably
  drain    → replay queued writes in enqueue order when the connection is back

Operations: create, update, delete, read, load, sync_all, retry_failed_operations,
get_sync_status, get_failed_operations, clear_cache, export_data.

Drain passes are single-flight: a caller that asks for a drain while one is in
progress waits for that pass instead of starting a second one. In-flight remote
writes are never cancelled; close() only stops scheduling new drains.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Coroutine
from typing import Any

from tabsync.kernel import actions
from tabsync.kernel.cache import Cache
from tabsync.kernel.config import SyncConfig
from tabsync.kernel.conflict import ConflictResolver, default_policies
from tabsync.kernel.connectivity import ConnectivitySource
from tabsync.kernel.remote import ConflictError, Remote
from tabsync.kernel.storage import DurableStore
from tabsync.kernel.store import Store
from tabsync.kernel.sync_queue import SyncQueue
from tabsync.kernel.types import (
    CACHE_KEY_PREFIX,
    ENTITY_TABLES,
    Action,
    Clock,
    ConflictResolution,
    OfflineError,
    StorageError,
    SyncOperation,
    SyncStatus,
    ms_to_iso,
    new_id,
    now_iso,
    now_ms,
)

logger = logging.getLogger(__name__)


def cache_key(table: str, filters: dict[str, Any] | None = None) -> str:
    return f"{table}:{json.dumps(filters, sort_keys=True, default=str) if filters else 'all'}"


class SyncEngine:
    def __init__(
        self,
        store: Store,
        remote: Remote,
        durable: DurableStore,
        connectivity: ConnectivitySource,
        *,
        config: SyncConfig | None = None,
        cache: Cache | None = None,
        resolver: ConflictResolver | None = None,
        clock: Clock = now_ms,
    ):
        self.store = store
        self.remote = remote
        self.durable = durable
        self.connectivity = connectivity
        self.config = config or SyncConfig()
        self.queue = SyncQueue(durable)
        self.cache = cache or Cache(ttl=self.config.cache_ttl_ms, max_size=self.config.cache_max_size, clock=clock)
        self.resolver = resolver or ConflictResolver(clock=clock)
        self._clock = clock
        self._drain_waiter: asyncio.Future | None = None
        self._timer: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._next_attempt: dict[str, int] = {}
        self._unsubscribers: list = []

    @property
    def is_online(self) -> bool:
        return self.connectivity.is_online

    # -- lifecycle --

    async def initialize(self) -> None:
        """
        Register default conflict policies, restore the durable queue, hook the
        environment signals, then either drain (online) or hydrate the store
        from saved read snapshots (offline).
        """
        for table, resolution in default_policies(self._clock).items():
            if not self.resolver.has_policy(table):
                self.resolver.set_policy(table, resolution)

        await self.queue.load()
        self._unsubscribers = [
            self.connectivity.on_online_change(self._on_online_change),
            self.connectivity.on_visibility_change(self._on_visibility_change),
        ]

        if self.is_online:
            await self.sync_all()
            self._start_timer()
        elif self.config.enable_offline_mode:
            await self.load_cached_data()
        logger.info("sync_engine: initialized (online=%s, queued=%d)", self.is_online, len(self.queue))

    async def close(self) -> None:
        """Stop the timer and listeners; let in-flight drains finish."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        await self._stop_timer()
        await self.wait_idle()

    async def wait_idle(self) -> None:
        """Wait for drains started by signals to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # -- CRUD with offline support --

    async def create(self, table: str, data: dict[str, Any]) -> dict[str, Any]:
        if self._use_remote(table, data.get("id")):
            try:
                record = await self.remote.create(table, data)
            except Exception as e:
                self._fallback_or_raise("create", table, e)
            else:
                self._dispatch_confirmed(actions.create_record(table, record, source="sync"), table)
                return record

        record = {
            **data,
            "id": data.get("id") or new_id(),
            "created_at": now_iso(),
            "updated_at": now_iso(),
            "_optimistic": True,
        }
        self.store.dispatch(actions.create_record(table, record, source="persistence", optimistic=True))
        await self._enqueue("create", table, {**data, "id": record["id"]})
        return record

    async def update(self, table: str, record_id: str, data: dict[str, Any]) -> dict[str, Any]:
        if self._use_remote(table, record_id):
            try:
                record = await self.remote.update(table, record_id, data)
            except Exception as e:
                self._fallback_or_raise("update", table, e)
            else:
                self._dispatch_confirmed(actions.update_record(table, record, source="sync"), table)
                return record

        record = {**data, "id": record_id, "updated_at": now_iso(), "_optimistic": True}
        self.store.dispatch(actions.update_record(table, record, source="persistence", optimistic=True))
        await self._enqueue("update", table, {**data, "id": record_id})
        return record

    async def delete(self, table: str, record_id: str) -> None:
        if self._use_remote(table, record_id):
            try:
                await self.remote.delete(table, record_id)
            except Exception as e:
                self._fallback_or_raise("delete", table, e)
            else:
                self._dispatch_confirmed(actions.delete_record(table, record_id, source="sync"), table)
                return

        self.store.dispatch(actions.delete_record(table, record_id, source="persistence", optimistic=True))
        await self._enqueue("delete", table, {"id": record_id})

    async def read(self, table: str, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Remote read when online (cached for offline use); cached rows otherwise."""
        key = cache_key(table, filters)
        if self._use_remote():
            try:
                rows = await self.remote.read(table, filters)
            except Exception as e:
                self._fallback_or_raise("read", table, e)
            else:
                self.cache.set(key, rows)
                await self._save_snapshot(key, rows, filters)
                return rows
        return await self._cached_rows(key)

    async def load(self, table: str, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """read() wrapped in the table's load_start / load_success / load_error actions."""
        self.store.dispatch(actions.load_start(table))
        try:
            rows = await self.read(table, filters)
        except Exception as e:
            logger.warning("sync_engine: load of %s failed: %s", table, e)
            self.store.dispatch(actions.load_error(table, str(e)))
            return []
        self.store.dispatch(actions.load_success(table, rows))
        return rows

    async def load_cached_data(self) -> None:
        for table in ENTITY_TABLES:
            rows = await self._cached_rows(cache_key(table))
            if rows:
                self.store.dispatch(actions.load_success(table, rows))

    # -- drain --

    async def sync_all(self) -> None:
        if not self.is_online:
            logger.info("sync_engine: offline, not syncing")
            return
        if self._drain_waiter is not None:
            await asyncio.shield(self._drain_waiter)
            return

        waiter = self._drain_waiter = asyncio.get_running_loop().create_future()
        try:
            await self._drain()
        except asyncio.CancelledError:
            waiter.cancel()
            raise
        except Exception as e:
            # Joiners see the same failure; mark it retrieved for the case nobody joined.
            waiter.set_exception(e)
            waiter.exception()
            raise
        else:
            waiter.set_result(None)
        finally:
            self._drain_waiter = None

    async def _drain(self) -> None:
        if not self.queue.pending():
            return

        logger.info("sync_engine: draining %d pending operations", len(self.queue.pending()))
        blocked: set[tuple[str, Any]] = set()
        started: set[str] = set()
        synced_tables: set[str] = set()
        failed_tables: dict[str, str] = {}

        # Walk the whole queue so an unfinished write blocks later writes to the same record.
        for op in list(self.queue.operations):
            record_key = (op.table, op.record_id)
            if op.status == "failed":
                blocked.add(record_key)
                continue
            if op.status != "pending":
                continue
            if record_key in blocked or not self._due(op) or not self.is_online:
                blocked.add(record_key)
                continue

            if op.table not in started:
                started.add(op.table)
                self.store.dispatch(actions.make_action("sync.start", op.table, source="sync", timestamp=self._clock()))
            await self._sync_operation(op)

            if op.status == "completed":
                synced_tables.add(op.table)
            else:
                blocked.add(record_key)
                failed_tables[op.table] = op.error or "sync failed"

        pruned = self.queue.prune_completed()
        await self.queue.save()

        ts = self._clock()
        for table in sorted(synced_tables):
            self.cache.invalidate(f"^{table}:")
            self.store.dispatch(actions.make_action("sync.success", table, source="sync", timestamp=ts))
        for table, error in sorted(failed_tables.items()):
            payload = {"table": table, "error": error}
            self.store.dispatch(actions.make_action("sync.error", payload, source="sync", timestamp=ts))
        logger.info("sync_engine: drain finished, %d completed, %d remaining", pruned, len(self.queue))

    async def _sync_operation(self, op: SyncOperation) -> None:
        op.status = "syncing"
        try:
            record = await self._execute(op)
        except ConflictError as e:
            await self._resolve_and_retry(op, e)
        except Exception as e:
            # Transport timeouts and undecodable responses count as failed attempts too.
            self._record_failure(op, e)
        else:
            self._complete(op, record)

    async def _resolve_and_retry(self, op: SyncOperation, conflict: ConflictError) -> None:
        server = conflict.server_data
        resolved = self.resolver.resolve(op.table, op.data, server)
        strategy = self.resolver.policy(op.table).strategy
        logger.info("sync_engine: conflict on %s/%s resolved with %s", op.table, op.record_id, strategy)
        conflict_record = {
            "id": new_id(),
            "table": op.table,
            "record_id": op.record_id,
            "operation_id": op.id,
            "strategy": strategy,
            "client": op.data,
            "server": server,
            "detected_at": ms_to_iso(self._clock()),
        }
        self.store.dispatch(
            actions.make_action("sync.add_conflict", conflict_record, source="sync", timestamp=self._clock())
        )

        if resolved is server:
            # Server copy stands: nothing left to write.
            self._complete(op, server)
            return

        op.data = {**resolved, "id": op.record_id}
        if op.type == "create":
            # The record already exists remotely; what is left to send is a patch.
            op.type = "update"
        try:
            record = await self._execute(op)
        except Exception as e:
            self._record_failure(op, e)
        else:
            self._complete(op, record)

    async def _execute(self, op: SyncOperation) -> dict[str, Any] | None:
        if op.type == "create":
            return await self.remote.create(op.table, op.data)
        if op.type == "update":
            fields = {k: v for k, v in op.data.items() if k != "id"}
            return await self.remote.update(op.table, op.data["id"], fields)
        await self.remote.delete(op.table, op.data["id"])
        return None

    def _complete(self, op: SyncOperation, record: dict[str, Any] | None) -> None:
        op.status = "completed"
        op.error = None
        self._next_attempt.pop(op.id, None)
        if record is not None and not self._deleted_later(op):
            self.store.dispatch(actions.confirm_record(op.table, op.record_id, record))
        logger.debug("sync_engine: synced %s %s/%s", op.type, op.table, op.record_id)

    def _deleted_later(self, op: SyncOperation) -> bool:
        """A delete queued after op for the same record; confirming op would resurrect it locally."""
        later = self.queue.operations[self.queue.operations.index(op) + 1 :]
        return any(o.type == "delete" and o.table == op.table and o.record_id == op.record_id for o in later)

    def _record_failure(self, op: SyncOperation, error: Exception) -> None:
        op.retries += 1
        op.error = str(error)
        if op.retries >= self.config.max_retries:
            op.status = "failed"
            self._next_attempt.pop(op.id, None)
            logger.warning(
                "sync_engine: %s %s/%s failed after %d attempts: %s",
                op.type, op.table, op.record_id, op.retries, error,
            )
        else:
            op.status = "pending"
            delay = self.config.retry_delay_ms * 2 ** (op.retries - 1)
            self._next_attempt[op.id] = self._clock() + delay
            logger.info("sync_engine: %s %s/%s failed, will retry: %s", op.type, op.table, op.record_id, error)

    def _due(self, op: SyncOperation) -> bool:
        due = self._next_attempt.get(op.id)
        return due is None or due <= self._clock()

    # -- status & recovery --

    def get_sync_status(self) -> SyncStatus:
        return SyncStatus(
            is_online=self.is_online,
            queue_length=len(self.queue),
            pending_operations=len(self.queue.pending()),
            failed_operations=len(self.queue.failed()),
        )

    def get_failed_operations(self) -> list[SyncOperation]:
        return [op.model_copy(deep=True) for op in self.queue.failed()]

    async def retry_failed_operations(self) -> None:
        for op in self.queue.reset_failed():
            self._next_attempt.pop(op.id, None)
        await self.queue.save()
        if self.is_online:
            await self.sync_all()

    def set_conflict_resolver(self, table: str, resolution: ConflictResolution) -> None:
        self.resolver.set_policy(table, resolution)

    # -- cache --

    async def clear_cache(self) -> None:
        self.cache.clear()
        try:
            for key in await self.durable.keys(CACHE_KEY_PREFIX):
                await self.durable.delete(key)
        except StorageError as e:
            logger.warning("sync_engine: failed to clear durable cache: %s", e)

    async def export_data(self) -> str:
        snapshots: dict[str, Any] = {}
        try:
            for key in await self.durable.keys(CACHE_KEY_PREFIX):
                snapshots[key] = await self.durable.get(key)
        except StorageError as e:
            logger.warning("sync_engine: failed to read durable cache for export: %s", e)
        return json.dumps(
            {
                "sync_queue": [op.to_record() for op in self.queue.operations],
                "cache": snapshots,
                "timestamp": ms_to_iso(self._clock()),
            },
            indent=2,
        )

    # -- internals --

    def _use_remote(self, table: str | None = None, record_id: Any = None) -> bool:
        """
        True when the call should go straight to the remote.
        Writes to a record that still has queued operations join the queue behind them.
        Raises OfflineError when offline with offline mode off.
        """
        if not self.is_online:
            if not self.config.enable_offline_mode:
                raise OfflineError("Offline mode disabled and no internet connection")
            return False
        if record_id is not None and self._has_queued(table, record_id):
            return False
        return True

    def _has_queued(self, table: str, record_id: Any) -> bool:
        return any(
            op.table == table and op.record_id == record_id and op.status != "completed"
            for op in self.queue.operations
        )

    def _fallback_or_raise(self, verb: str, table: str, error: Exception) -> None:
        if not self.config.enable_offline_mode:
            raise error
        logger.warning("sync_engine: %s on %s failed, falling back to offline path: %s", verb, table, error)

    def _dispatch_confirmed(self, action: Action, table: str) -> None:
        self.store.dispatch(action)
        self.cache.invalidate(f"^{table}:")

    async def _enqueue(self, type: str, table: str, data: dict[str, Any]) -> None:
        op = SyncOperation(type=type, table=table, data=data, timestamp=self._clock())
        await self.queue.enqueue(op)
        logger.debug("sync_engine: queued %s %s/%s", type, table, op.record_id)

    async def _save_snapshot(self, key: str, rows: list[dict[str, Any]], filters: dict[str, Any] | None) -> None:
        try:
            await self.durable.put(
                CACHE_KEY_PREFIX + key,
                {"data": rows, "timestamp": self._clock(), "filters": filters},
            )
        except StorageError as e:
            logger.warning("sync_engine: failed to save read snapshot %s: %s", key, e)

    async def _cached_rows(self, key: str) -> list[dict[str, Any]]:
        rows = self.cache.get(key)
        if rows is not None:
            return rows
        try:
            saved = await self.durable.get(CACHE_KEY_PREFIX + key)
        except StorageError as e:
            logger.warning("sync_engine: failed to read snapshot %s: %s", key, e)
            return []
        return list(saved.get("data") or []) if isinstance(saved, dict) else []

    # -- environment signals --

    def _on_online_change(self, online: bool) -> None:
        if online:
            self._start_timer()
            self._spawn(self.sync_all())
        else:
            self._cancel_timer()

    def _on_visibility_change(self, visible: bool) -> None:
        if visible and self.is_online:
            self._spawn(self.sync_all())

    def _start_timer(self) -> None:
        self._cancel_timer()
        self._timer = asyncio.get_running_loop().create_task(self._periodic())

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()

    async def _stop_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is None:
            return
        timer.cancel()
        try:
            await timer
        except asyncio.CancelledError:
            pass

    async def _periodic(self) -> None:
        interval = self.config.sync_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            # Spawned, not awaited: cancelling the timer must not cancel a write.
            self._spawn(self.sync_all())

    def _spawn(self, coro: Coroutine) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._reap)

    def _reap(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("sync_engine: background sync failed", exc_info=task.exception())
