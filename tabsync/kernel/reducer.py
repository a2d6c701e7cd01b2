"""
tabsync Kernel — Reducer

Pure function: (state, action) → state
No side effects. No IO. No clock reads. Deterministic.

Copy-on-write per slice: a handler returns a new top-level dict and a new dict
for each slice it touches. Untouched slices keep their identity, which is what
lets selectors detect change by reference. The input state is never modified.

Unknown action types return the input state unchanged (no-op, not an error).
Exceptions raised by a handler are programming errors and propagate.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from tabsync.kernel.types import ENTITY_TABLES, Action, ms_to_iso

DEFAULT_CACHE_TTL_MS = 300_000

Handler = Callable[[dict[str, Any], Action], dict[str, Any]]

# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def initial_state() -> dict[str, Any]:
    """
    The fixed shape the store starts from.
    Entity slices start empty and are repopulated by explicit load actions.
    """
    state: dict[str, Any] = {
        "user": {
            "current_user": None,
            "preferences": {},
            "permissions": [],
            "is_authenticated": False,
            "profile": None,
        },
    }
    for table in ENTITY_TABLES:
        state[table] = _empty_entity_slice()

    state["clients"].update({"sort_by": "name", "sort_order": "asc"})
    state["tasks"].update({"group_by": "status"})
    state["events"].update({"view_mode": "month", "current_date": None})
    state["emails"].update({"folders": ["inbox", "sent", "drafts", "trash"], "current_folder": "inbox"})
    state["notifications"].update({"unread_count": 0})

    state["ui"] = {
        "active_tab": "dashboard",
        "sidebar_collapsed": False,
        "theme": "default",
        "modals": {},
        "loading": {},
        "errors": {},
        "toasts": [],
    }
    state["cache"] = {"data": {}, "timestamps": {}, "ttl": {}}
    state["sync"] = {
        "last_sync": {},
        "syncing": {},
        "errors": {},
        "conflicts": [],
        "offline_actions": [],
    }
    return state


def reduce(state: dict[str, Any], action: Action) -> dict[str, Any]:
    """
    Apply one action to the current state.
    Returns the same object when the action type is unknown.
    """
    handler = _HANDLERS.get(action.type)
    if handler is None:
        return state
    return handler(state, action)


def replay(actions: list[Action], state: dict[str, Any] | None = None) -> dict[str, Any]:
    """
    Rebuild state by reducing over a sequence of actions.
    replay([a1, a2]) == reduce(reduce(initial_state(), a1), a2)
    """
    current = initial_state() if state is None else state
    for action in actions:
        current = reduce(current, action)
    return current


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _empty_entity_slice() -> dict[str, Any]:
    return {
        "items": [],
        "selected": None,
        "filters": {},
        "pagination": {"page": 1, "limit": 20, "total": 0, "has_more": False},
        "loading": False,
        "error": None,
    }


def _set(state: dict[str, Any], slice_name: str, **changes: Any) -> dict[str, Any]:
    """New state with one slice replaced by a shallow-updated copy."""
    return {**state, slice_name: {**state[slice_name], **changes}}


def _timestamp(action: Action) -> int:
    return action.meta.timestamp if action.meta is not None else 0


def _table(action: Action) -> str:
    return action.type.partition(".")[0]


def _strip_local_flags(record: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in record.items() if k != "_optimistic"}


def _index_of(items: list[dict[str, Any]], record_id: Any) -> int:
    for i, item in enumerate(items):
        if item.get("id") == record_id:
            return i
    return -1


# ---------------------------------------------------------------------------
# User handlers
# ---------------------------------------------------------------------------


def _handle_user_login(state: dict, action: Action) -> dict:
    p = action.payload
    return _set(
        state,
        "user",
        current_user=p["user"],
        is_authenticated=True,
        permissions=list(p.get("permissions") or []),
    )


def _handle_user_logout(state: dict, action: Action) -> dict:
    return _set(state, "user", current_user=None, is_authenticated=False, permissions=[])


def _handle_user_update_profile(state: dict, action: Action) -> dict:
    profile = {**(state["user"]["profile"] or {}), **action.payload}
    return _set(state, "user", profile=profile)


def _handle_user_update_preferences(state: dict, action: Action) -> dict:
    return _set(state, "user", preferences={**state["user"]["preferences"], **action.payload})


def _handle_user_set_permissions(state: dict, action: Action) -> dict:
    return _set(state, "user", permissions=list(action.payload))


# ---------------------------------------------------------------------------
# Entity handlers (shared by every table in ENTITY_TABLES)
# ---------------------------------------------------------------------------


def _handle_load_start(state: dict, action: Action) -> dict:
    return _set(state, _table(action), loading=True, error=None)


def _handle_load_success(state: dict, action: Action) -> dict:
    table = _table(action)
    p = action.payload
    items = list(p["items"])
    pagination = p.get("pagination") or {**state[table]["pagination"], "total": len(items)}
    return _set(state, table, items=items, pagination=dict(pagination), loading=False, error=None)


def _handle_load_error(state: dict, action: Action) -> dict:
    return _set(state, _table(action), loading=False, error=action.payload)


def _handle_create(state: dict, action: Action) -> dict:
    table = _table(action)
    record = dict(action.payload)
    items = list(state[table]["items"])
    idx = _index_of(items, record["id"])
    # A repeated create for an id we already hold replaces it in place.
    if idx >= 0:
        items[idx] = record
    else:
        items.append(record)
    return _set(state, table, items=items)


def _handle_update(state: dict, action: Action) -> dict:
    table = _table(action)
    p = action.payload
    items = state[table]["items"]
    idx = _index_of(items, p["id"])
    if idx < 0:
        return state
    items = list(items)
    items[idx] = {**items[idx], **p}
    changes: dict[str, Any] = {"items": items}
    selected = state[table]["selected"]
    if selected is not None and selected.get("id") == p["id"]:
        changes["selected"] = items[idx]
    return _set(state, table, **changes)


def _handle_delete(state: dict, action: Action) -> dict:
    table = _table(action)
    record_id = action.payload
    items = state[table]["items"]
    if _index_of(items, record_id) < 0:
        return state
    changes: dict[str, Any] = {"items": [item for item in items if item.get("id") != record_id]}
    selected = state[table]["selected"]
    if selected is not None and selected.get("id") == record_id:
        changes["selected"] = None
    return _set(state, table, **changes)


def _handle_confirm(state: dict, action: Action) -> dict:
    """Swap the optimistic record (by local id) for the server's copy."""
    table = _table(action)
    p = action.payload
    record = _strip_local_flags(p["record"])
    items = list(state[table]["items"])
    idx = _index_of(items, p["local_id"])
    if idx < 0:
        idx = _index_of(items, record["id"])
    if idx >= 0:
        items[idx] = record
    else:
        items.append(record)
    changes: dict[str, Any] = {"items": items}
    selected = state[table]["selected"]
    if selected is not None and selected.get("id") in (p["local_id"], record["id"]):
        changes["selected"] = record
    return _set(state, table, **changes)


def _handle_select(state: dict, action: Action) -> dict:
    return _set(state, _table(action), selected=action.payload)


def _handle_set_filters(state: dict, action: Action) -> dict:
    return _set(state, _table(action), filters=dict(action.payload))


def _handle_set_pagination(state: dict, action: Action) -> dict:
    table = _table(action)
    return _set(state, table, pagination={**state[table]["pagination"], **action.payload})


_ENTITY_HANDLERS: dict[str, Handler] = {
    "load_start": _handle_load_start,
    "load_success": _handle_load_success,
    "load_error": _handle_load_error,
    "create": _handle_create,
    "update": _handle_update,
    "delete": _handle_delete,
    "confirm": _handle_confirm,
    "select": _handle_select,
    "set_filters": _handle_set_filters,
    "set_pagination": _handle_set_pagination,
}


# ---------------------------------------------------------------------------
# Slice-specific entity extras
# ---------------------------------------------------------------------------


def _handle_clients_set_sort(state: dict, action: Action) -> dict:
    p = action.payload
    return _set(state, "clients", sort_by=p["sort_by"], sort_order=p.get("sort_order", "asc"))


def _handle_tasks_set_group_by(state: dict, action: Action) -> dict:
    return _set(state, "tasks", group_by=action.payload)


def _handle_events_set_view_mode(state: dict, action: Action) -> dict:
    return _set(state, "events", view_mode=action.payload)


def _handle_events_set_date(state: dict, action: Action) -> dict:
    return _set(state, "events", current_date=action.payload)


def _handle_emails_set_folder(state: dict, action: Action) -> dict:
    return _set(state, "emails", current_folder=action.payload)


def _handle_notifications_add(state: dict, action: Action) -> dict:
    notification = dict(action.payload)
    n = state["notifications"]
    unread = n["unread_count"] + (0 if notification.get("read") else 1)
    return _set(state, "notifications", items=[notification, *n["items"]], unread_count=unread)


def _handle_notifications_mark_read(state: dict, action: Action) -> dict:
    n = state["notifications"]
    idx = _index_of(n["items"], action.payload)
    if idx < 0 or n["items"][idx].get("read"):
        return state
    items = list(n["items"])
    items[idx] = {**items[idx], "read": True}
    return _set(state, "notifications", items=items, unread_count=max(n["unread_count"] - 1, 0))


# ---------------------------------------------------------------------------
# UI handlers
# ---------------------------------------------------------------------------


def _handle_ui_set_active_tab(state: dict, action: Action) -> dict:
    return _set(state, "ui", active_tab=action.payload)


def _handle_ui_toggle_sidebar(state: dict, action: Action) -> dict:
    return _set(state, "ui", sidebar_collapsed=not state["ui"]["sidebar_collapsed"])


def _handle_ui_set_theme(state: dict, action: Action) -> dict:
    return _set(state, "ui", theme=action.payload)


def _handle_ui_show_modal(state: dict, action: Action) -> dict:
    return _set(state, "ui", modals={**state["ui"]["modals"], action.payload: True})


def _handle_ui_hide_modal(state: dict, action: Action) -> dict:
    return _set(state, "ui", modals={**state["ui"]["modals"], action.payload: False})


def _handle_ui_set_loading(state: dict, action: Action) -> dict:
    p = action.payload
    return _set(state, "ui", loading={**state["ui"]["loading"], p["key"]: bool(p["value"])})


def _handle_ui_set_error(state: dict, action: Action) -> dict:
    p = action.payload
    errors = dict(state["ui"]["errors"])
    if p["value"] is None:
        errors.pop(p["key"], None)
    else:
        errors[p["key"]] = p["value"]
    return _set(state, "ui", errors=errors)


def _handle_ui_add_toast(state: dict, action: Action) -> dict:
    return _set(state, "ui", toasts=[*state["ui"]["toasts"], dict(action.payload)])


def _handle_ui_remove_toast(state: dict, action: Action) -> dict:
    toasts = [t for t in state["ui"]["toasts"] if t.get("id") != action.payload]
    return _set(state, "ui", toasts=toasts)


# ---------------------------------------------------------------------------
# Cache mirror handlers
# ---------------------------------------------------------------------------


def _handle_cache_set(state: dict, action: Action) -> dict:
    p = action.payload
    key = p["key"]
    c = state["cache"]
    return _set(
        state,
        "cache",
        data={**c["data"], key: p.get("value")},
        timestamps={**c["timestamps"], key: _timestamp(action)},
        ttl={**c["ttl"], key: p.get("ttl") or DEFAULT_CACHE_TTL_MS},
    )


def _handle_cache_invalidate(state: dict, action: Action) -> dict:
    key = action.payload
    c = state["cache"]
    if key not in c["data"]:
        return state
    return _set(
        state,
        "cache",
        data={k: v for k, v in c["data"].items() if k != key},
        timestamps={k: v for k, v in c["timestamps"].items() if k != key},
        ttl={k: v for k, v in c["ttl"].items() if k != key},
    )


def _handle_cache_clear(state: dict, action: Action) -> dict:
    return {**state, "cache": {"data": {}, "timestamps": {}, "ttl": {}}}


# ---------------------------------------------------------------------------
# Sync bookkeeping handlers
# ---------------------------------------------------------------------------


def _handle_sync_start(state: dict, action: Action) -> dict:
    return _set(state, "sync", syncing={**state["sync"]["syncing"], action.payload: True})


def _handle_sync_success(state: dict, action: Action) -> dict:
    table = action.payload
    s = state["sync"]
    return _set(
        state,
        "sync",
        syncing={**s["syncing"], table: False},
        last_sync={**s["last_sync"], table: ms_to_iso(_timestamp(action))},
        errors={k: v for k, v in s["errors"].items() if k != table},
    )


def _handle_sync_error(state: dict, action: Action) -> dict:
    p = action.payload
    s = state["sync"]
    return _set(
        state,
        "sync",
        syncing={**s["syncing"], p["table"]: False},
        errors={**s["errors"], p["table"]: p["error"]},
    )


def _handle_sync_add_conflict(state: dict, action: Action) -> dict:
    return _set(state, "sync", conflicts=[*state["sync"]["conflicts"], dict(action.payload)])


def _handle_sync_resolve_conflict(state: dict, action: Action) -> dict:
    conflicts = [c for c in state["sync"]["conflicts"] if c.get("id") != action.payload]
    return _set(state, "sync", conflicts=conflicts)


def _handle_sync_add_offline_action(state: dict, action: Action) -> dict:
    return _set(state, "sync", offline_actions=[*state["sync"]["offline_actions"], dict(action.payload)])


def _handle_sync_remove_offline_action(state: dict, action: Action) -> dict:
    remaining = [a for a in state["sync"]["offline_actions"] if a.get("id") != action.payload]
    return _set(state, "sync", offline_actions=remaining)


# ---------------------------------------------------------------------------
# Handler registry
# ---------------------------------------------------------------------------

_HANDLERS: dict[str, Handler] = {
    "user.login": _handle_user_login,
    "user.logout": _handle_user_logout,
    "user.update_profile": _handle_user_update_profile,
    "user.update_preferences": _handle_user_update_preferences,
    "user.set_permissions": _handle_user_set_permissions,
    "clients.set_sort": _handle_clients_set_sort,
    "tasks.set_group_by": _handle_tasks_set_group_by,
    "events.set_view_mode": _handle_events_set_view_mode,
    "events.set_date": _handle_events_set_date,
    "emails.set_folder": _handle_emails_set_folder,
    "notifications.add": _handle_notifications_add,
    "notifications.mark_read": _handle_notifications_mark_read,
    "ui.set_active_tab": _handle_ui_set_active_tab,
    "ui.toggle_sidebar": _handle_ui_toggle_sidebar,
    "ui.set_theme": _handle_ui_set_theme,
    "ui.show_modal": _handle_ui_show_modal,
    "ui.hide_modal": _handle_ui_hide_modal,
    "ui.set_loading": _handle_ui_set_loading,
    "ui.set_error": _handle_ui_set_error,
    "ui.add_toast": _handle_ui_add_toast,
    "ui.remove_toast": _handle_ui_remove_toast,
    "cache.set": _handle_cache_set,
    "cache.invalidate": _handle_cache_invalidate,
    "cache.clear": _handle_cache_clear,
    "sync.start": _handle_sync_start,
    "sync.success": _handle_sync_success,
    "sync.error": _handle_sync_error,
    "sync.add_conflict": _handle_sync_add_conflict,
    "sync.resolve_conflict": _handle_sync_resolve_conflict,
    "sync.add_offline_action": _handle_sync_add_offline_action,
    "sync.remove_offline_action": _handle_sync_remove_offline_action,
}

for _table_name in ENTITY_TABLES:
    for _suffix, _handler in _ENTITY_HANDLERS.items():
        _HANDLERS[f"{_table_name}.{_suffix}"] = _handler
