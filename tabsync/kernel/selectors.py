"""
tabsync Kernel — Selectors and Subscriptions

A subscription pairs a selector (pure function of state) with a callback.
After every dispatch the store re-evaluates each selector in registration
order and calls callback(new, old) only when the value changed.

Change detection is O(1) per subscription: identity for containers and
objects, value inequality for scalars. No deep comparison. Because the reducer
keeps the identity of untouched slices, a selector that returns a slice (or a
value inside one) fires only when that slice was actually rewritten.

Selectors that close over mutable external state are a misuse; the registry
does not try to detect it.
"""

from __future__ import annotations

import itertools
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

_SCALARS = (str, int, float, bool, bytes, type(None))

Selector = Callable[[dict[str, Any]], Any]
Callback = Callable[[Any, Any], None]


def value_changed(new: Any, old: Any) -> bool:
    """Reference inequality, or value inequality for scalars of the same type."""
    if new is old:
        return False
    if isinstance(new, _SCALARS) and type(new) is type(old):
        return new != old
    return True


@dataclass
class Subscription:
    id: int
    selector: Selector
    callback: Callback
    last_value: Any


class SubscriptionRegistry:
    """Ordered set of selector subscriptions owned by one store."""

    def __init__(self) -> None:
        self._subscriptions: dict[int, Subscription] = {}
        self._ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._subscriptions)

    def add(self, selector: Selector, callback: Callback, state: dict[str, Any]) -> Callable[[], None]:
        """Evaluate the selector now (no callback) and return an unsubscribe function."""
        sub = Subscription(id=next(self._ids), selector=selector, callback=callback, last_value=selector(state))
        self._subscriptions[sub.id] = sub

        def unsubscribe() -> None:
            self._subscriptions.pop(sub.id, None)

        return unsubscribe

    def notify(self, state: dict[str, Any]) -> None:
        # Copy: a callback may unsubscribe itself or others mid-notification.
        for sub in list(self._subscriptions.values()):
            if sub.id not in self._subscriptions:
                continue
            new_value = sub.selector(state)
            if value_changed(new_value, sub.last_value):
                old_value = sub.last_value
                sub.last_value = new_value
                sub.callback(new_value, old_value)


def create_selector(*inputs: Selector, combiner: Callable[..., Any]) -> Selector:
    """
    Memoized derived selector.

    combiner(*input_values) is recomputed only when some input value changed
    (per value_changed). Otherwise the previous result object is returned, so a
    derived list or dict keeps its identity and does not re-trigger callbacks.
    """
    last_args: tuple[Any, ...] | None = None
    last_result: Any = None

    def selector(state: dict[str, Any]) -> Any:
        nonlocal last_args, last_result
        args = tuple(inp(state) for inp in inputs)
        if last_args is not None and not any(value_changed(a, b) for a, b in zip(args, last_args, strict=True)):
            return last_result
        last_args = args
        last_result = combiner(*args)
        return last_result

    return selector


# ---------------------------------------------------------------------------
# Named selectors
# ---------------------------------------------------------------------------


def get_current_user(state: dict[str, Any]) -> Any:
    return state["user"]["current_user"]


def is_authenticated(state: dict[str, Any]) -> bool:
    return state["user"]["is_authenticated"]


def get_user_preferences(state: dict[str, Any]) -> dict[str, Any]:
    return state["user"]["preferences"]


def get_user_permissions(state: dict[str, Any]) -> list[str]:
    return state["user"]["permissions"]


def get_items(table: str) -> Selector:
    return lambda state: state[table]["items"]


def get_selected(table: str) -> Selector:
    return lambda state: state[table]["selected"]


def is_loading(table: str) -> Selector:
    return lambda state: state[table]["loading"]


def get_error(table: str) -> Selector:
    return lambda state: state[table]["error"]


def get_optimistic_items(table: str) -> Selector:
    return create_selector(
        get_items(table),
        combiner=lambda items: [item for item in items if item.get("_optimistic")],
    )


def get_active_tab(state: dict[str, Any]) -> str:
    return state["ui"]["active_tab"]


def is_sidebar_collapsed(state: dict[str, Any]) -> bool:
    return state["ui"]["sidebar_collapsed"]


def get_theme(state: dict[str, Any]) -> str:
    return state["ui"]["theme"]


def get_modals(state: dict[str, Any]) -> dict[str, bool]:
    return state["ui"]["modals"]


def get_toasts(state: dict[str, Any]) -> list[dict[str, Any]]:
    return state["ui"]["toasts"]


def get_cache_value(key: str) -> Selector:
    return lambda state: state["cache"]["data"].get(key)


def is_cache_valid(key: str, now: int) -> Selector:
    """True while the mirrored cache entry for key is younger than its ttl at time `now`."""

    def selector(state: dict[str, Any]) -> bool:
        ts = state["cache"]["timestamps"].get(key)
        if ts is None:
            return False
        return now - ts < state["cache"]["ttl"].get(key, 300_000)

    return selector


def get_conflicts(state: dict[str, Any]) -> list[dict[str, Any]]:
    return state["sync"]["conflicts"]


def get_last_sync(table: str) -> Selector:
    return lambda state: state["sync"]["last_sync"].get(table)
