"""
tabsync Kernel — Shared Types

Data classes used across the store, reducer, cache and sync engine.
These are the contracts that bind the kernel together.

- Action: what flows through dispatch (wire shape preserved by to_dict/from_dict)
- SyncOperation: one queued mutation, persisted as JSON under a fixed key
- CacheEntry: one TTL-bound cache slot
- ConflictResolution: per-table conflict policy
- SyncStatus: what get_sync_status() reports
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Registries
# ---------------------------------------------------------------------------

# Entity collections that get a standard slice in the state tree.
ENTITY_TABLES: tuple[str, ...] = (
    "clients",
    "tasks",
    "events",
    "projects",
    "invoices",
    "emails",
    "notifications",
)

# Per-table action suffixes handled by the generic entity reducer.
ENTITY_ACTIONS: tuple[str, ...] = (
    "load_start",
    "load_success",
    "load_error",
    "create",
    "update",
    "delete",
    "confirm",
    "select",
    "set_filters",
    "set_pagination",
)

ACTION_TYPES: set[str] = {
    # User
    "user.login",
    "user.logout",
    "user.update_profile",
    "user.update_preferences",
    "user.set_permissions",
    # Slice-specific entity extras
    "clients.set_sort",
    "tasks.set_group_by",
    "events.set_view_mode",
    "events.set_date",
    "emails.set_folder",
    "notifications.add",
    "notifications.mark_read",
    # UI
    "ui.set_active_tab",
    "ui.toggle_sidebar",
    "ui.set_theme",
    "ui.show_modal",
    "ui.hide_modal",
    "ui.set_loading",
    "ui.set_error",
    "ui.add_toast",
    "ui.remove_toast",
    # Cache mirror
    "cache.set",
    "cache.invalidate",
    "cache.clear",
    # Sync bookkeeping
    "sync.start",
    "sync.success",
    "sync.error",
    "sync.add_conflict",
    "sync.resolve_conflict",
    "sync.add_offline_action",
    "sync.remove_offline_action",
} | {f"{table}.{suffix}" for table in ENTITY_TABLES for suffix in ENTITY_ACTIONS}

# Dotted state paths written to durable storage after every dispatch.
DEFAULT_PERSISTED_KEYS: tuple[str, ...] = ("user", "ui.theme", "ui.sidebar_collapsed")

# Durable storage keys
SYNC_QUEUE_KEY = "sync_queue"
APP_STATE_KEY = "app_state"
CACHE_KEY_PREFIX = "cache:"

OperationType = Literal["create", "update", "delete"]
OperationStatus = Literal["pending", "syncing", "completed", "failed"]
ConflictStrategy = Literal["client-wins", "server-wins", "merge", "manual"]

CONFLICT_STRATEGIES: set[str] = {"client-wins", "server-wins", "merge", "manual"}

Clock = Callable[[], int]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class MalformedActionError(ValueError):
    """A known action type arrived with a payload that cannot be reduced."""

    def __init__(self, action_type: str, errors: list[str]):
        self.action_type = action_type
        self.errors = errors
        super().__init__(f"{action_type}: {'; '.join(errors)}")


class StorageError(Exception):
    """Durable storage could not be read or written."""
    pass


class OfflineError(Exception):
    """Offline mode is disabled and there is no connection."""
    pass


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ActionMeta:
    timestamp: int
    source: str | None = "user"
    optimistic: bool = False

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"timestamp": self.timestamp}
        if self.source is not None:
            d["source"] = self.source
        if self.optimistic:
            d["optimistic"] = True
        return d


@dataclass(frozen=True)
class Action:
    """
    One intent flowing through Store.dispatch.
    The reducer reads only `type` and `payload`; `meta` is stamped at dispatch.
    Never mutated after creation.
    """

    type: str
    payload: Any = None
    meta: ActionMeta | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"type": self.type}
        if self.payload is not None:
            d["payload"] = self.payload
        if self.meta is not None:
            d["meta"] = self.meta.to_dict()
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Action:
        meta = d.get("meta")
        return cls(
            type=d["type"],
            payload=d.get("payload"),
            meta=ActionMeta(
                timestamp=meta["timestamp"],
                source=meta.get("source"),
                optimistic=meta.get("optimistic", False),
            )
            if meta
            else None,
        )


class SyncOperation(BaseModel):
    """
    A queued mutation waiting to reach the remote.
    Persisted as one element of the JSON array under SYNC_QUEUE_KEY.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: OperationType
    table: str
    data: dict[str, Any]
    timestamp: int
    retries: int = 0
    status: OperationStatus = "pending"
    error: str | None = None

    @property
    def record_id(self) -> str | None:
        return self.data.get("id")

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


@dataclass
class CacheEntry:
    key: str
    data: Any
    timestamp: int
    ttl: int

    def expired(self, now: int) -> bool:
        return now - self.timestamp > self.ttl


@dataclass(frozen=True)
class ConflictResolution:
    """How to reconcile a queued local write with a diverged server record."""

    strategy: ConflictStrategy = "server-wins"
    resolver: Callable[[dict[str, Any], dict[str, Any]], dict[str, Any]] | None = None


@dataclass(frozen=True)
class SyncStatus:
    is_online: bool
    queue_length: int
    pending_operations: int
    failed_operations: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "isOnline": self.is_online,
            "queueLength": self.queue_length,
            "pendingOperations": self.pending_operations,
            "failedOperations": self.failed_operations,
        }


@dataclass
class CacheStats:
    size: int
    max_size: int
    hits: int
    misses: int
    pending_requests: int = 0
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def now_iso() -> str:
    """Current UTC time as ISO 8601 string."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def ms_to_iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def new_id() -> str:
    return str(uuid.uuid4())
