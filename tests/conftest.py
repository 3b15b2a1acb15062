"""
Shared fixtures: a controllable clock, a small tier catalog and a broker wired
to the in-memory store and gateway.
"""

import asyncio

import pytest
import pytest_asyncio

from meshlink.lib.services.broker_loop import Broker, BrokerIntervals
from meshlink.lib.services.enforcement_gateway import MemoryEnforcementGateway
from meshlink.lib.services.event_dispatcher import BrokerEventDispatcher, BrokerEventDispatcherConfig
from meshlink.lib.services.session_store import MemorySessionStore
from meshlink.lib.session.models import Tier
from meshlink.lib.session.tiers import TierCatalog


class FakeClock:
    """Wall clock and sleep that only move when the test advances them."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start
        self._waiters: list[tuple[float, asyncio.Future]] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        if delay <= 0:
            await asyncio.sleep(0)
            return
        fut = asyncio.get_running_loop().create_future()
        self._waiters.append((self.now + delay, fut))
        await fut

    async def advance(self, seconds: float) -> None:
        self.now += seconds
        for deadline, fut in self._waiters:
            if deadline <= self.now and not fut.done():
                fut.set_result(None)
        self._waiters = [(d, f) for d, f in self._waiters if not f.done()]
        await settle()


async def settle(rounds: int = 50) -> None:
    """Let woken tasks run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)


TEST_TIERS = (
    Tier(name="free", duration_seconds=60, download_kbit=1000, upload_kbit=256, data_quota_bytes=10_000, price=0.0),
    Tier(name="lightweight", duration_seconds=600, download_kbit=5000, upload_kbit=1000, data_quota_bytes=1_000_000, price=1.0),
    Tier(name="premium", duration_seconds=3600, download_kbit=50000, upload_kbit=10000, data_quota_bytes=None, price=5.0),
)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tiers():
    return TierCatalog(TEST_TIERS)


@pytest.fixture
def store(clock):
    return MemorySessionStore(clock=clock)


@pytest.fixture
def gateway(tiers):
    return MemoryEnforcementGateway(tiers.names())


@pytest.fixture
def dispatcher():
    return BrokerEventDispatcher(
        BrokerEventDispatcherConfig(broker_id="test-broker", broker_instance_id="test-instance", test_mode=True)
    )


@pytest.fixture
def intervals():
    return BrokerIntervals(reconcile=30, quota_poll=10, archive=3600, archive_after=86400)


@pytest.fixture
def make_broker(store, gateway, tiers, dispatcher, intervals, clock):
    """Build a broker over the shared store and gateway; call again to simulate a restart."""

    def _make() -> Broker:
        return Broker(store, gateway, tiers, dispatcher, intervals, clock=clock, sleep=clock.sleep)

    return _make


@pytest_asyncio.fixture
async def broker(make_broker):
    b = make_broker()
    await b.start()
    yield b
    await b.stop()
