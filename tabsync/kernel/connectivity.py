"""
tabsync Kernel — Environment Signals

The sync engine reacts to two signals: connectivity (online/offline) and
visibility (the session came back to the foreground). Both come from a
ConnectivitySource injected at construction, so the engine runs headless.

ManualConnectivity is driven by the host (or a test) calling set_online() and
set_visible(). HttpConnectivityProbe derives connectivity from a health URL.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

import httpx

logger = logging.getLogger(__name__)

OnlineListener = Callable[[bool], None]
VisibilityListener = Callable[[bool], None]


class ConnectivitySource:
    """Abstract signal source. Listeners are called synchronously on change."""

    def __init__(self, online: bool = True, visible: bool = True) -> None:
        self._online = online
        self._visible = visible
        self._online_listeners: list[OnlineListener] = []
        self._visibility_listeners: list[VisibilityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def is_visible(self) -> bool:
        return self._visible

    def on_online_change(self, listener: OnlineListener) -> Callable[[], None]:
        self._online_listeners.append(listener)
        return lambda: self._discard(self._online_listeners, listener)

    def on_visibility_change(self, listener: VisibilityListener) -> Callable[[], None]:
        self._visibility_listeners.append(listener)
        return lambda: self._discard(self._visibility_listeners, listener)

    def _set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info("connectivity: %s", "online" if online else "offline")
        for listener in list(self._online_listeners):
            listener(online)

    def _set_visible(self, visible: bool) -> None:
        if visible == self._visible:
            return
        self._visible = visible
        for listener in list(self._visibility_listeners):
            listener(visible)

    @staticmethod
    def _discard(listeners: list, listener: Callable) -> None:
        if listener in listeners:
            listeners.remove(listener)


class ManualConnectivity(ConnectivitySource):
    """Signals pushed in by the host environment."""

    def set_online(self, online: bool) -> None:
        self._set_online(online)

    def set_visible(self, visible: bool) -> None:
        self._set_visible(visible)


class HttpConnectivityProbe(ConnectivitySource):
    """
    Online while a GET to health_url answers below 500.
    Call probe() whenever a fresh reading is wanted (e.g. from a timer).
    """

    def __init__(self, health_url: str, *, client: httpx.AsyncClient | None = None, timeout: float = 5.0):
        super().__init__(online=False)
        self.health_url = health_url
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def probe(self) -> bool:
        try:
            res = await self.client.get(self.health_url)
            online = res.status_code < 500
        except httpx.HTTPError as e:
            logger.debug("connectivity: probe failed: %s", e)
            online = False
        self._set_online(online)
        return online

    def set_visible(self, visible: bool) -> None:
        self._set_visible(visible)

    async def close(self) -> None:
        await self.client.aclose()
