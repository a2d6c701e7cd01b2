"""
tabsync Kernel — client-side state plus offline-first sync.

Two halves:
  store        — actions → middleware → reducer → state; selectors notify on change
  sync_engine  — CRUD against a remote, with a durable queue while offline

Supporting pieces:
  cache        — TTL snapshot cache with single-flight fetches
  conflict     — per-table conflict policies
  sync_queue   — durable, ordered list of writes owed to the remote
  storage      — DurableStore adapters and the persisted-state writer
"""

from tabsync.kernel.cache import Cache
from tabsync.kernel.config import SyncConfig
from tabsync.kernel.conflict import ConflictResolver
from tabsync.kernel.reducer import initial_state, reduce, replay
from tabsync.kernel.remote import ConflictError, MemoryRemote, Remote, RemoteError
from tabsync.kernel.storage import FileDurableStore, MemoryDurableStore, StatePersister
from tabsync.kernel.store import Store, open_store
from tabsync.kernel.sync_engine import SyncEngine
from tabsync.kernel.types import (
    Action,
    ConflictResolution,
    MalformedActionError,
    OfflineError,
    StorageError,
    SyncOperation,
    SyncStatus,
)
from tabsync.kernel.validation import validate_action

__all__ = [
    "Action",
    "Cache",
    "ConflictError",
    "ConflictResolution",
    "ConflictResolver",
    "FileDurableStore",
    "MalformedActionError",
    "MemoryDurableStore",
    "MemoryRemote",
    "OfflineError",
    "Remote",
    "RemoteError",
    "StatePersister",
    "StorageError",
    "Store",
    "SyncConfig",
    "SyncEngine",
    "SyncOperation",
    "SyncStatus",
    "initial_state",
    "open_store",
    "reduce",
    "replay",
    "validate_action",
]
