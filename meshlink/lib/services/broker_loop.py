import asyncio
import contextlib
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import structlog

from meshlink.lib.config import BrokerConfig
from meshlink.lib.services.address_locks import AddressLockPool
from meshlink.lib.services.authorization import AuthorizationService
from meshlink.lib.services.enforcement_gateway import EnforcementGateway
from meshlink.lib.services.event_dispatcher import BrokerEventDispatcher
from meshlink.lib.services.expiry_scheduler import ExpiryScheduler
from meshlink.lib.services.quota_meter import QuotaMeter
from meshlink.lib.services.reconciler import Reconciler
from meshlink.lib.services.session_store import SessionStore
from meshlink.lib.session.tiers import TierCatalog

log = structlog.get_logger(__name__)


@dataclass
class BrokerIntervals:
    reconcile: float
    quota_poll: float
    archive: float
    archive_after: float

    @classmethod
    def from_config(cls, config: BrokerConfig) -> "BrokerIntervals":
        return cls(
            reconcile=config.reconcile_interval,
            quota_poll=config.quota_poll_interval,
            archive=config.archive_interval,
            archive_after=config.archive_after,
        )


class Broker:
    """Wires the broker core together and owns its background work."""

    def __init__(
        self,
        store: SessionStore,
        gateway: EnforcementGateway,
        tiers: TierCatalog,
        event_dispatcher: BrokerEventDispatcher,
        intervals: BrokerIntervals,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.gateway = gateway
        self.tiers = tiers
        self.event_dispatcher = event_dispatcher
        self.intervals = intervals
        self.clock = clock
        self.locks = AddressLockPool()

        self.scheduler = ExpiryScheduler(
            store, gateway, self.locks,
            event_dispatcher=event_dispatcher, clock=clock, sleep=sleep,
        )
        self.quota_meter = QuotaMeter(
            store, gateway, tiers, self.scheduler, self.locks,
            event_dispatcher=event_dispatcher,
        )
        self.reconciler = Reconciler(
            store, gateway, self.scheduler, self.locks,
            event_dispatcher=event_dispatcher, quota_meter=self.quota_meter, clock=clock,
        )
        self.authorization = AuthorizationService(
            store, gateway, self.scheduler, tiers, self.locks,
            event_dispatcher=event_dispatcher,
        )

        self.ready = False
        self._command_queue: asyncio.Queue[tuple[str, dict[str, Any]]] = asyncio.Queue(maxsize=256)
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """
        Bring kernel state in line with the store before serving: ensure the sets,
        re-derive expiry timers, then run a full reconcile pass.
        """
        await self.gateway.ensure_sets()
        await self.scheduler.restore()
        await self.reconciler.reconcile(startup=True)
        self.ready = True
        log.info("broker_ready", active_timers=len(self.scheduler))

    def run_background(self) -> None:
        async def periodic_enqueue(command: str, interval: float) -> None:
            while True:
                await asyncio.sleep(interval)
                await self._command_queue.put((command, {}))

        self._tasks = [
            asyncio.create_task(self._command_loop(), name="broker-commands"),
            asyncio.create_task(periodic_enqueue("reconcile", self.intervals.reconcile)),
            asyncio.create_task(periodic_enqueue("quota_poll", self.intervals.quota_poll)),
            asyncio.create_task(periodic_enqueue("archive", self.intervals.archive)),
        ]

    async def handle_command(self, command: str, payload: dict[str, Any]) -> None:
        if command == "reconcile":
            try:
                await self.reconciler.reconcile()
            except Exception as e:
                log.error("broker_reconcile_error", error=str(e))
            return

        if command == "quota_poll":
            try:
                await self.quota_meter.poll()
            except Exception as e:
                log.error("broker_quota_poll_error", error=str(e))
            return

        if command == "archive":
            try:
                await self.store.archive_terminal(self.clock() - self.intervals.archive_after)
            except Exception as e:
                log.error("broker_archive_error", error=str(e))
            return

        log.warning("broker_unknown_command", command=command, payload=payload)

    async def _command_loop(self) -> None:
        while True:
            command, payload = await self._command_queue.get()
            await self.handle_command(command, payload)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        await self.scheduler.close()
        self.ready = False
        log.info("broker_stopped")
