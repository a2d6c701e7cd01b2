"""
tabsync Kernel — Durable Storage

Key → JSON value storage that survives a process restart. This is where the
sync queue, the persisted state subset, and read snapshots live.

Implement DurableStore with a file directory for desktop hosts, Postgres for
server-side hosts, or in-memory for tests. Values always cross this boundary
by value (serialized), never as shared references.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any
from urllib.parse import quote, unquote

from tabsync.kernel.types import APP_STATE_KEY, DEFAULT_PERSISTED_KEYS, StorageError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Storage protocol
# ---------------------------------------------------------------------------


class DurableStore:
    """
    Abstract storage interface.
    Implementations raise StorageError when the backend is unavailable.
    """

    async def get(self, key: str) -> Any | None:
        """Fetch the JSON value stored under key. Returns None if not found."""
        raise NotImplementedError

    async def put(self, key: str, value: Any) -> None:
        """Write a JSON-serializable value under key."""
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        """Remove key. Missing keys are ignored."""
        raise NotImplementedError

    async def keys(self, prefix: str = "") -> list[str]:
        """All stored keys starting with prefix."""
        raise NotImplementedError


class MemoryDurableStore(DurableStore):
    """In-memory storage for testing. Stores serialized JSON to keep by-value semantics."""

    def __init__(self) -> None:
        self.items: dict[str, str] = {}

    async def get(self, key: str) -> Any | None:
        raw = self.items.get(key)
        return json.loads(raw) if raw is not None else None

    async def put(self, key: str, value: Any) -> None:
        try:
            self.items[key] = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value for {key!r} is not JSON-serializable: {e}") from e

    async def delete(self, key: str) -> None:
        self.items.pop(key, None)

    async def keys(self, prefix: str = "") -> list[str]:
        return [k for k in self.items if k.startswith(prefix)]


class FileDurableStore(DurableStore):
    """
    One JSON file per key inside a directory.
    Keys are percent-encoded into file names.
    """

    def __init__(self, root: Path | str):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        return self.root / f"{quote(key, safe='')}.json"

    async def get(self, key: str) -> Any | None:
        path = self._path(key)
        try:
            if not path.exists():
                return None
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Failed to read {key!r}: {e}") from e

    async def put(self, key: str, value: Any) -> None:
        path = self._path(key)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_text(json.dumps(value), encoding="utf-8")
            tmp.replace(path)
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Failed to write {key!r}: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to delete {key!r}: {e}") from e

    async def keys(self, prefix: str = "") -> list[str]:
        if not self.root.exists():
            return []
        found = (unquote(p.stem) for p in self.root.glob("*.json"))
        return sorted(k for k in found if k.startswith(prefix))


# ---------------------------------------------------------------------------
# Persisted state subset
# ---------------------------------------------------------------------------


def extract_paths(state: dict[str, Any], paths: tuple[str, ...]) -> dict[str, Any]:
    """
    Copy the whitelisted dotted paths out of state into a nested dict.

    extract_paths(state, ("user", "ui.theme")) →
        {"user": {...}, "ui": {"theme": "dark"}}
    """
    result: dict[str, Any] = {}
    for path in paths:
        keys = path.split(".")
        value: Any = state
        for k in keys:
            if not isinstance(value, dict) or k not in value:
                value = _MISSING
                break
            value = value[k]
        if value is _MISSING:
            continue
        target = result
        for k in keys[:-1]:
            target = target.setdefault(k, {})
        target[keys[-1]] = value
    return result


def merge_deep(target: dict[str, Any], source: dict[str, Any]) -> dict[str, Any]:
    """New dict with source merged into target; nested dicts merge, everything else replaces."""
    result = dict(target)
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge_deep(result[key], value)
        else:
            result[key] = value
    return result


_MISSING = object()


class StatePersister:
    """
    Writes the persisted subset of the state tree after every dispatch.

    schedule() is synchronous (it runs inside dispatch): it records the latest
    subset and, when an event loop is running, starts a background write.
    Writes are coalesced to the most recent subset. flush() awaits completion.
    Storage failures are logged and never reach the dispatching caller.
    """

    def __init__(
        self,
        durable: DurableStore,
        paths: tuple[str, ...] = DEFAULT_PERSISTED_KEYS,
        key: str = APP_STATE_KEY,
    ):
        self._durable = durable
        self.paths = paths
        self.key = key
        self._latest: dict[str, Any] | None = None
        self._task: asyncio.Task | None = None

    def schedule(self, state: dict[str, Any]) -> None:
        self._latest = extract_paths(state, self.paths)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no loop: the next flush() writes it
        if self._task is None or self._task.done():
            self._task = loop.create_task(self._write_latest())

    async def flush(self) -> None:
        if self._task is not None and not self._task.done():
            await self._task
        await self._write_latest()

    async def load(self) -> dict[str, Any] | None:
        try:
            saved = await self._durable.get(self.key)
        except StorageError:
            logger.exception("state_persister: failed to load persisted state")
            return None
        return saved if isinstance(saved, dict) else None

    async def _write_latest(self) -> None:
        while self._latest is not None:
            subset, self._latest = self._latest, None
            try:
                await self._durable.put(self.key, subset)
            except StorageError as e:
                logger.warning("state_persister: failed to persist state: %s", e)
