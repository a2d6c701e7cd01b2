"""
tabsync Kernel — Conflict Resolution

Reconciles a queued local write with a server record that changed since the
write was queued. One policy per table, registered at startup:

  client-wins  → the queued client data, unchanged
  server-wins  → the server record, unchanged (default)
  merge        → {**server, **client, "updated_at": now}; client wins per field
  manual       → registered resolver(client, server); server-wins if none

resolve() has no side effects. Given the same inputs and clock it returns the
same value.
"""

from __future__ import annotations

import logging
from typing import Any

from tabsync.kernel.types import CONFLICT_STRATEGIES, ConflictResolution, ms_to_iso, now_ms

logger = logging.getLogger(__name__)

_SERVER_WINS = ConflictResolution(strategy="server-wins")


class ConflictResolver:
    def __init__(self, clock=now_ms):
        self._policies: dict[str, ConflictResolution] = {}
        self._clock = clock

    def set_policy(self, table: str, resolution: ConflictResolution) -> None:
        if resolution.strategy not in CONFLICT_STRATEGIES:
            raise ValueError(f"Unknown conflict strategy: {resolution.strategy}")
        self._policies[table] = resolution

    def has_policy(self, table: str) -> bool:
        return table in self._policies

    def policy(self, table: str) -> ConflictResolution:
        return self._policies.get(table, _SERVER_WINS)

    def resolve(self, table: str, client: dict[str, Any], server: dict[str, Any]) -> dict[str, Any]:
        resolution = self.policy(table)
        strategy = resolution.strategy

        if strategy == "client-wins":
            return client
        if strategy == "merge":
            return {**server, **client, "updated_at": ms_to_iso(self._clock())}
        if strategy == "manual":
            if resolution.resolver is not None:
                return resolution.resolver(client, server)
            logger.warning("conflict: table %s is manual but has no resolver, keeping server copy", table)
            return server
        return server


def merge_fields(clock=now_ms):
    """A manual resolver equivalent to the merge strategy, for tables that want it spelled out."""

    def resolver(client: dict[str, Any], server: dict[str, Any]) -> dict[str, Any]:
        return {**server, **client, "updated_at": ms_to_iso(clock())}

    return resolver


def default_policies(clock=now_ms) -> dict[str, ConflictResolution]:
    """Per-table policies registered at startup unless the caller overrides them."""
    return {
        "clients": ConflictResolution(strategy="manual", resolver=merge_fields(clock)),
        "tasks": ConflictResolution(strategy="client-wins"),
        "projects": ConflictResolution(strategy="merge"),
    }
