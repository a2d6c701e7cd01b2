"""
tabsync Kernel — Remote Collaborator

The hosted database as seen by the sync engine. Four async calls, each of
which may fail. Adapters translate their transport errors into RemoteError so
the sync engine can tell a failed write apart from a programming error.

Implement with PostgrestRemote (http_remote.py) in production, or
MemoryRemote for tests and headless runs.
"""

from __future__ import annotations

import copy
import uuid
from typing import Any

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class RemoteError(Exception):
    """A remote call was rejected or never completed."""
    pass


class ConflictError(RemoteError):
    """The remote record changed since the write was queued; carries the server copy."""

    def __init__(self, message: str, server_data: dict[str, Any]):
        super().__init__(message)
        self.server_data = server_data


# ---------------------------------------------------------------------------
# Remote protocol
# ---------------------------------------------------------------------------


class Remote:
    """Abstract remote interface."""

    async def create(self, table: str, data: dict[str, Any]) -> dict[str, Any]:
        """Insert a record and return the stored copy."""
        raise NotImplementedError

    async def update(self, table: str, record_id: str, data: dict[str, Any]) -> dict[str, Any]:
        """Patch a record and return the stored copy."""
        raise NotImplementedError

    async def delete(self, table: str, record_id: str) -> None:
        raise NotImplementedError

    async def read(self, table: str, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Records matching every filter by equality."""
        raise NotImplementedError


class MemoryRemote(Remote):
    """
    In-memory remote for testing.

    Records every call in `calls`, can be switched unreachable, and can have
    failures or conflicts injected ahead of time.
    """

    def __init__(self) -> None:
        self.tables: dict[str, dict[str, dict[str, Any]]] = {}
        self.calls: list[tuple[str, str, str | None, dict[str, Any] | None]] = []
        self.reachable = True
        self._failures: list[str] = []
        self._conflicts: set[tuple[str, str]] = set()

    # -- test controls --

    def fail_next(self, count: int = 1, message: str = "503 Service Unavailable") -> None:
        self._failures.extend([message] * count)

    def inject_conflict(self, table: str, record_id: str, server_fields: dict[str, Any] | None = None) -> None:
        """Make the next write to (table, record_id) fail as stale; optionally change the server copy first."""
        if server_fields:
            row = self.tables.setdefault(table, {}).setdefault(record_id, {"id": record_id})
            row.update(server_fields)
        self._conflicts.add((table, record_id))

    def seed(self, table: str, records: list[dict[str, Any]]) -> None:
        rows = self.tables.setdefault(table, {})
        for record in records:
            rows[record["id"]] = copy.deepcopy(record)

    # -- Remote --

    async def create(self, table: str, data: dict[str, Any]) -> dict[str, Any]:
        self._check("create", table, data.get("id"), data)
        rows = self.tables.setdefault(table, {})
        record = {k: v for k, v in copy.deepcopy(data).items() if k != "_optimistic"}
        record.setdefault("id", str(uuid.uuid4()))
        # Retried creates carry the same client id: the second one is a no-op.
        rows.setdefault(record["id"], record)
        return copy.deepcopy(rows[record["id"]])

    async def update(self, table: str, record_id: str, data: dict[str, Any]) -> dict[str, Any]:
        self._check("update", table, record_id, data)
        rows = self.tables.setdefault(table, {})
        if record_id not in rows:
            raise RemoteError(f"404 {table}/{record_id} not found")
        rows[record_id].update({k: v for k, v in copy.deepcopy(data).items() if k != "_optimistic"})
        return copy.deepcopy(rows[record_id])

    async def delete(self, table: str, record_id: str) -> None:
        self._check("delete", table, record_id, None)
        self.tables.setdefault(table, {}).pop(record_id, None)

    async def read(self, table: str, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        self._check("read", table, None, filters)
        rows = self.tables.get(table, {}).values()
        filters = filters or {}
        return [copy.deepcopy(r) for r in rows if all(r.get(k) == v for k, v in filters.items())]

    def _check(self, op: str, table: str, record_id: str | None, data: dict[str, Any] | None) -> None:
        self.calls.append((op, table, record_id, copy.deepcopy(data)))
        if not self.reachable:
            raise RemoteError("network unreachable")
        if self._failures:
            raise RemoteError(self._failures.pop(0))
        if record_id is not None and (table, record_id) in self._conflicts:
            self._conflicts.discard((table, record_id))
            server = self.tables.get(table, {}).get(record_id, {"id": record_id})
            raise ConflictError(f"409 {table}/{record_id} is stale", copy.deepcopy(server))
