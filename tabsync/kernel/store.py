"""
tabsync Kernel — Store

Holds one state snapshot, applies actions through the middleware chain and the
pure reducer, then notifies listeners and selector subscriptions.

There is no module-level instance: construct a Store and pass it to whoever
needs it. Tests build as many isolated stores as they like.

Dispatch is synchronous. Once dispatch() returns, every later get_state() and
selector evaluation sees the new snapshot.
"""

from __future__ import annotations

import dataclasses
import json
from collections import deque
from collections.abc import Callable, Iterable
from typing import Any

from tabsync.kernel.config import SyncConfig
from tabsync.kernel.middleware import Middleware, compose, logging_middleware, persistence_middleware
from tabsync.kernel.reducer import initial_state, reduce
from tabsync.kernel.selectors import Callback, Selector, SubscriptionRegistry
from tabsync.kernel.storage import DurableStore, StatePersister, merge_deep
from tabsync.kernel.types import Action, ActionMeta, Clock, MalformedActionError, now_ms
from tabsync.kernel.validation import validate_action

Reducer = Callable[[dict[str, Any], Action], dict[str, Any]]
Listener = Callable[[dict[str, Any]], None]


class Store:
    def __init__(
        self,
        reducer: Reducer = reduce,
        *,
        initial: Callable[[], dict[str, Any]] = initial_state,
        middlewares: Iterable[Middleware] = (),
        history_size: int = 100,
        clock: Clock = now_ms,
    ):
        self._reducer = reducer
        self._initial = initial
        self._clock = clock
        self._state = initial()
        self._listeners: list[Listener] = []
        self._subscriptions = SubscriptionRegistry()
        self._middlewares: list[Middleware] = list(middlewares)
        self._chain: Callable[[Action], None] | None = None
        self._history: deque[Action] = deque(maxlen=history_size)

    # -- core --

    def dispatch(self, action: Action) -> None:
        """
        Stamp metadata, validate, run the middleware chain around the reducer.
        Malformed payloads and reducer exceptions propagate to the caller.
        """
        action = self._stamp(action)
        errors = validate_action(action)
        if errors:
            raise MalformedActionError(action.type, errors)
        if self._chain is None:
            self._chain = compose(self._middlewares, self, self._apply)
        self._chain(action)

    def get_state(self) -> dict[str, Any]:
        """The current snapshot. Treat it as read-only; it is replaced, never edited."""
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def select(self, selector: Selector, callback: Callback) -> Callable[[], None]:
        return self._subscriptions.add(selector, callback, self._state)

    def use(self, middleware: Middleware) -> None:
        self._middlewares.append(middleware)
        self._chain = None

    # -- lifecycle --

    def hydrate(self, persisted: dict[str, Any]) -> None:
        """Merge a persisted subset (see StatePersister) into the current state."""
        self._replace(merge_deep(self._state, persisted))

    def reset_state(self) -> None:
        self._replace(self._initial())

    # -- development tools --

    def get_action_history(self) -> list[Action]:
        return list(self._history)

    def replay_actions(self, actions: Iterable[Action]) -> None:
        for action in actions:
            self.dispatch(action)

    def get_performance_metrics(self) -> dict[str, int]:
        return {
            "state_size": len(json.dumps(self._state, default=str)),
            "listeners_count": len(self._listeners),
            "subscriptions_count": len(self._subscriptions),
            "action_history_size": len(self._history),
            "cache_size": len(self._state.get("cache", {}).get("data", {})),
        }

    # -- internals --

    def _stamp(self, action: Action) -> Action:
        if action.meta is None:
            return dataclasses.replace(action, meta=ActionMeta(timestamp=self._clock(), source="user"))
        return action

    def _apply(self, action: Action) -> None:
        """Innermost dispatch: reduce, record, notify."""
        self._state = self._reducer(self._state, action)
        self._history.append(action)
        self._notify()

    def _replace(self, state: dict[str, Any]) -> None:
        self._state = state
        self._notify()

    def _notify(self) -> None:
        state = self._state
        for listener in list(self._listeners):
            listener(state)
        self._subscriptions.notify(state)


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------


async def open_store(
    durable: DurableStore,
    config: SyncConfig | None = None,
    *,
    clock: Clock = now_ms,
    middlewares: Iterable[Middleware] = (),
) -> tuple[Store, StatePersister]:
    """
    Build a store with logging and persistence middleware and hydrate it from
    the subset saved by a previous session. Extra middlewares run innermost.
    """
    config = config or SyncConfig()
    persister = StatePersister(durable)
    store = Store(
        middlewares=[logging_middleware, persistence_middleware(persister), *middlewares],
        history_size=config.history_size,
        clock=clock,
    )
    persisted = await persister.load()
    if persisted:
        store.hydrate(persisted)
    return store, persister
