"""
tabsync kernel test configuration.

Shared fixtures: a simulated clock, in-memory durable storage and remote, and
manually driven connectivity. Nothing here sleeps or touches the network.
"""

import pytest

from tabsync.kernel.config import SyncConfig
from tabsync.kernel.connectivity import ManualConnectivity
from tabsync.kernel.remote import MemoryRemote
from tabsync.kernel.storage import MemoryDurableStore
from tabsync.kernel.store import Store
from tabsync.kernel.sync_engine import SyncEngine


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def durable():
    return MemoryDurableStore()


@pytest.fixture
def remote():
    return MemoryRemote()


@pytest.fixture
def connectivity():
    """Starts offline so writes queue until a test flips it."""
    return ManualConnectivity(online=False)


@pytest.fixture
def store(clock):
    return Store(clock=clock)


@pytest.fixture
def config():
    return SyncConfig()


@pytest.fixture
async def engine(store, remote, durable, connectivity, config, clock):
    """A SyncEngine that has not been initialized (no listeners, no timer)."""
    eng = SyncEngine(store, remote, durable, connectivity, config=config, clock=clock)
    yield eng
    await eng.close()
