"""
tabsync Kernel — Middleware

A middleware wraps dispatch: middleware(store)(next)(action).
The store composes them so that the first registered middleware is the
outermost wrapper and the innermost one wraps the reducer call.

Built-ins:
  logging_middleware      — DEBUG log of each action and the slices it rewrote
  persistence_middleware  — hands the new state to a StatePersister
  ActionTracker           — per-type action counts (analytics)
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from tabsync.kernel.storage import StatePersister
from tabsync.kernel.types import Action

if TYPE_CHECKING:
    from tabsync.kernel.store import Store

logger = logging.getLogger(__name__)

Dispatch = Callable[[Action], None]
Middleware = Callable[["Store"], Callable[[Dispatch], Dispatch]]


def compose(middlewares: list[Middleware], store: Store, base: Dispatch) -> Dispatch:
    """Wrap base so that middlewares[0] runs first."""
    dispatch = base
    for middleware in reversed(middlewares):
        dispatch = middleware(store)(dispatch)
    return dispatch


def logging_middleware(store: Store) -> Callable[[Dispatch], Dispatch]:
    def wrap(next_dispatch: Dispatch) -> Dispatch:
        def handle(action: Action) -> None:
            before = store.get_state()
            next_dispatch(action)
            after = store.get_state()
            changed = [k for k, v in after.items() if before.get(k) is not v]
            logger.debug(
                "store: %s source=%s changed=%s",
                action.type,
                action.meta.source if action.meta else None,
                changed,
            )

        return handle

    return wrap


def persistence_middleware(persister: StatePersister) -> Middleware:
    def middleware(store: Store) -> Callable[[Dispatch], Dispatch]:
        def wrap(next_dispatch: Dispatch) -> Dispatch:
            def handle(action: Action) -> None:
                next_dispatch(action)
                persister.schedule(store.get_state())

            return handle

        return wrap

    return middleware


class ActionTracker:
    """Counts dispatched actions by type."""

    def __init__(self) -> None:
        self.counts: Counter[str] = Counter()
        self.optimistic = 0
        self.last_timestamp: int | None = None

    def middleware(self, store: Store) -> Callable[[Dispatch], Dispatch]:
        def wrap(next_dispatch: Dispatch) -> Dispatch:
            def handle(action: Action) -> None:
                next_dispatch(action)
                self.counts[action.type] += 1
                if action.meta is not None:
                    self.last_timestamp = action.meta.timestamp
                    if action.meta.optimistic:
                        self.optimistic += 1

            return handle

        return wrap

    def summary(self) -> dict[str, Any]:
        return {
            "total": sum(self.counts.values()),
            "optimistic": self.optimistic,
            "by_type": dict(self.counts),
            "last_timestamp": self.last_timestamp,
        }
