"""
tabsync Kernel — Action Validation

Validates action payloads before they reach the reducer.
Validation is structural (well-formed?) not semantic (will it change anything?).

Unknown action types are not an error: the reducer treats them as no-ops.
A known type with a malformed payload is a programming error and the store
raises MalformedActionError instead of reducing it.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from tabsync.kernel.types import ACTION_TYPES, ENTITY_TABLES, Action

VIEW_MODES: set[str] = {"month", "week", "day", "agenda"}
SORT_ORDERS: set[str] = {"asc", "desc"}

# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def validate_action(action: Action) -> list[str]:
    """
    Validate an action's payload structure.
    Returns a list of error strings. Empty list = valid (or unknown type).
    """
    if not isinstance(action.type, str) or not action.type:
        return ["Action type must be a non-empty string"]
    if action.type not in ACTION_TYPES:
        return []

    validator = _VALIDATORS.get(action.type)
    if validator is None:
        table, _, suffix = action.type.partition(".")
        if table in ENTITY_TABLES:
            validator = _ENTITY_VALIDATORS.get(suffix)
    if validator is None:
        return []
    return validator(action.payload)


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------


def _none(p: Any) -> list[str]:
    return []


def _string(name: str) -> Callable[[Any], list[str]]:
    def check(p: Any) -> list[str]:
        if not isinstance(p, str) or not p:
            return [f"{name} must be a non-empty string"]
        return []

    return check


def _object(name: str, required: tuple[str, ...] = ()) -> Callable[[Any], list[str]]:
    def check(p: Any) -> list[str]:
        if not isinstance(p, dict):
            return [f"{name} must be an object"]
        return [f"{name} requires '{key}'" for key in required if key not in p]

    return check


def _record_id(p: Any) -> list[str]:
    if isinstance(p, bool) or not isinstance(p, str | int) or p == "":
        return ["record id must be a non-empty string or an int"]
    return []


def _record(p: Any) -> list[str]:
    errors = _object("record", ("id",))(p)
    if not errors:
        errors.extend(_record_id(p["id"]))
    return errors


def _optional_record(p: Any) -> list[str]:
    return [] if p is None else _record(p)


def _load_success(p: Any) -> list[str]:
    errors = _object("load_success payload", ("items",))(p)
    if not errors and not isinstance(p["items"], list):
        errors.append("'items' must be a list")
    return errors


def _confirm(p: Any) -> list[str]:
    errors = _object("confirm payload", ("local_id", "record"))(p)
    if not errors:
        errors.extend(_record(p["record"]))
    return errors


def _login(p: Any) -> list[str]:
    errors = _object("login payload", ("user",))(p)
    if not errors and not isinstance(p.get("permissions", []), list):
        errors.append("'permissions' must be a list")
    return errors


def _permissions(p: Any) -> list[str]:
    if not isinstance(p, list) or not all(isinstance(x, str) for x in p):
        return ["permissions must be a list of strings"]
    return []


def _sort(p: Any) -> list[str]:
    errors = _object("sort payload", ("sort_by",))(p)
    if not errors and p.get("sort_order", "asc") not in SORT_ORDERS:
        errors.append(f"sort_order must be one of {sorted(SORT_ORDERS)}")
    return errors


def _view_mode(p: Any) -> list[str]:
    if not isinstance(p, str) or p not in VIEW_MODES:
        return [f"view mode must be one of {sorted(VIEW_MODES)}"]
    return []


def _keyed_flag(p: Any) -> list[str]:
    return _object("payload", ("key", "value"))(p)


def _cache_set(p: Any) -> list[str]:
    errors = _object("cache.set payload", ("key",))(p)
    if errors:
        return errors
    if not isinstance(p["key"], str):
        errors.append("cache key must be a string")
    ttl = p.get("ttl")
    if ttl is not None and (not isinstance(ttl, int) or isinstance(ttl, bool) or ttl < 0):
        errors.append("ttl must be a non-negative int")
    return errors


_ENTITY_VALIDATORS: dict[str, Callable[[Any], list[str]]] = {
    "load_start": _none,
    "load_success": _load_success,
    "load_error": _string("load_error message"),
    "create": _record,
    "update": _record,
    "delete": _record_id,
    "confirm": _confirm,
    "select": _optional_record,
    "set_filters": _object("filters"),
    "set_pagination": _object("pagination"),
}

_VALIDATORS: dict[str, Callable[[Any], list[str]]] = {
    "user.login": _login,
    "user.logout": _none,
    "user.update_profile": _object("profile"),
    "user.update_preferences": _object("preferences"),
    "user.set_permissions": _permissions,
    "clients.set_sort": _sort,
    "tasks.set_group_by": _string("group_by"),
    "events.set_view_mode": _view_mode,
    "events.set_date": _string("date"),
    "emails.set_folder": _string("folder"),
    "notifications.add": _record,
    "notifications.mark_read": _record_id,
    "ui.set_active_tab": _string("tab"),
    "ui.toggle_sidebar": _none,
    "ui.set_theme": _string("theme"),
    "ui.show_modal": _string("modal id"),
    "ui.hide_modal": _string("modal id"),
    "ui.set_loading": _keyed_flag,
    "ui.set_error": _keyed_flag,
    "ui.add_toast": _record,
    "ui.remove_toast": _string("toast id"),
    "cache.set": _cache_set,
    "cache.invalidate": _string("cache key"),
    "cache.clear": _none,
    "sync.start": _string("table"),
    "sync.success": _string("table"),
    "sync.error": _object("sync error payload", ("table", "error")),
    "sync.add_conflict": _record,
    "sync.resolve_conflict": _string("conflict id"),
    "sync.add_offline_action": _record,
    "sync.remove_offline_action": _string("offline action id"),
}
