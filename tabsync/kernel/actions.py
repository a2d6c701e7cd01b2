"""
tabsync Kernel — Action Construction

Factory functions for creating well-formed actions.
Used by callers to build intents before handing them to Store.dispatch,
by the sync engine for optimistic and confirmed writes, and by tests.

Action creators here only build actions; they never dispatch and never do IO.
"""

from __future__ import annotations

from typing import Any

from tabsync.kernel.types import Action, ActionMeta, now_ms


def make_action(
    type: str,
    payload: Any = None,
    *,
    source: str | None = None,
    optimistic: bool = False,
    timestamp: int | None = None,
) -> Action:
    """
    Build an Action from minimal inputs.

    Meta is only attached when something was supplied; otherwise the store
    stamps it at dispatch time.
    """
    meta = None
    if source is not None or optimistic or timestamp is not None:
        meta = ActionMeta(
            timestamp=timestamp if timestamp is not None else now_ms(),
            source=source if source is not None else "user",
            optimistic=optimistic,
        )
    return Action(type=type, payload=payload, meta=meta)


# ---------------------------------------------------------------------------
# User
# ---------------------------------------------------------------------------


def login(user: dict[str, Any], permissions: list[str] | None = None) -> Action:
    return make_action("user.login", {"user": user, "permissions": permissions or []})


def logout() -> Action:
    return make_action("user.logout")


def update_profile(profile: dict[str, Any]) -> Action:
    return make_action("user.update_profile", profile)


def update_preferences(preferences: dict[str, Any]) -> Action:
    return make_action("user.update_preferences", preferences)


def set_permissions(permissions: list[str]) -> Action:
    return make_action("user.set_permissions", permissions)


# ---------------------------------------------------------------------------
# Entity collections
# ---------------------------------------------------------------------------


def load_start(table: str) -> Action:
    return make_action(f"{table}.load_start")


def load_success(table: str, items: list[dict[str, Any]], pagination: dict[str, Any] | None = None) -> Action:
    if pagination is None:
        pagination = {"page": 1, "limit": max(len(items), 20), "total": len(items), "has_more": False}
    return make_action(f"{table}.load_success", {"items": items, "pagination": pagination})


def load_error(table: str, message: str) -> Action:
    return make_action(f"{table}.load_error", message)


def create_record(table: str, record: dict[str, Any], **meta: Any) -> Action:
    return make_action(f"{table}.create", record, **meta)


def update_record(table: str, record: dict[str, Any], **meta: Any) -> Action:
    return make_action(f"{table}.update", record, **meta)


def delete_record(table: str, record_id: str, **meta: Any) -> Action:
    return make_action(f"{table}.delete", record_id, **meta)


def confirm_record(table: str, local_id: str, record: dict[str, Any]) -> Action:
    """Replace an optimistic record with the server's confirmed copy."""
    return make_action(f"{table}.confirm", {"local_id": local_id, "record": record}, source="sync")


def select_record(table: str, record: dict[str, Any] | None) -> Action:
    return make_action(f"{table}.select", record)


def set_filters(table: str, filters: dict[str, Any]) -> Action:
    return make_action(f"{table}.set_filters", filters)


# ---------------------------------------------------------------------------
# UI
# ---------------------------------------------------------------------------


def set_active_tab(tab: str) -> Action:
    return make_action("ui.set_active_tab", tab)


def toggle_sidebar() -> Action:
    return make_action("ui.toggle_sidebar")


def set_theme(theme: str) -> Action:
    return make_action("ui.set_theme", theme)


def show_modal(modal_id: str) -> Action:
    return make_action("ui.show_modal", modal_id)


def hide_modal(modal_id: str) -> Action:
    return make_action("ui.hide_modal", modal_id)


def add_toast(toast: dict[str, Any]) -> Action:
    return make_action("ui.add_toast", toast)


def remove_toast(toast_id: str) -> Action:
    return make_action("ui.remove_toast", toast_id)


# ---------------------------------------------------------------------------
# Cache mirror
# ---------------------------------------------------------------------------


def set_cache(key: str, value: Any, ttl: int | None = None) -> Action:
    return make_action("cache.set", {"key": key, "value": value, "ttl": ttl})


def clear_cache() -> Action:
    return make_action("cache.clear")
