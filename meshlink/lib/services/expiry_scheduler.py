import asyncio
import contextlib
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

import structlog

from meshlink.lib.services.address_locks import AddressLockPool
from meshlink.lib.services.broker_session import terminate_session
from meshlink.lib.services.enforcement_gateway import EnforcementGateway
from meshlink.lib.services.event_dispatcher import BrokerEventDispatcher
from meshlink.lib.services.session_store import SessionStore
from meshlink.lib.session.models import Session, SessionStatus

log = structlog.get_logger(__name__)


@dataclass
class _Timer:
    session_id: str
    client_address: str
    expires_at: float
    task: asyncio.Task


@dataclass
class RestoreResult:
    armed: list[str]
    expired: list[str]


class ExpiryScheduler:
    """
    One asyncio task per ACTIVE session, sleeping until its expires_at.

    Timers are never persisted: after a restart `restore()` re-derives them from
    the store. A timer that wakes up for a session that is no longer ACTIVE does
    nothing.
    """

    def __init__(
        self,
        store: SessionStore,
        gateway: EnforcementGateway,
        locks: AddressLockPool,
        *,
        event_dispatcher: BrokerEventDispatcher | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.gateway = gateway
        self.locks = locks
        self.event_dispatcher = event_dispatcher
        self.clock = clock
        self.sleep = sleep
        self._timers: dict[str, _Timer] = {}

    def __len__(self) -> int:
        return len(self._timers)

    def has_timer(self, session_id: str) -> bool:
        return session_id in self._timers

    def missing(self, sessions: list[Session]) -> list[Session]:
        return [s for s in sessions if s.session_id not in self._timers]

    def arm(self, s: Session) -> None:
        if s.status != SessionStatus.ACTIVE:
            raise ValueError(f"cannot arm a timer for {s.status.value} session {s.session_id}")

        self.cancel(s.session_id)
        task = asyncio.create_task(self._run_timer(s), name=f"expiry:{s.session_id}")
        self._timers[s.session_id] = _Timer(
            session_id=s.session_id,
            client_address=s.client_address,
            expires_at=s.expires_at,
            task=task,
        )
        log.debug("expiry_armed", session_id=s.session_id, expires_at=s.expires_at)

    def cancel(self, session_id: str) -> bool:
        timer = self._timers.pop(session_id, None)
        if timer is None:
            return False
        if timer.task is not asyncio.current_task():
            timer.task.cancel()
        log.debug("expiry_cancelled", session_id=session_id)
        return True

    async def _run_timer(self, s: Session) -> None:
        try:
            delay = s.expires_at - self.clock()
            if delay > 0:
                await self.sleep(delay)
            await self.fire(s.session_id, s.client_address)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Timer is dropped below; the reconciler expires the session on its next pass
            log.error("expiry_fire_failed", session_id=s.session_id, error=str(e))
        finally:
            timer = self._timers.get(s.session_id)
            if timer is not None and timer.task is asyncio.current_task():
                del self._timers[s.session_id]

    async def fire(self, session_id: str, client_address: str) -> bool:
        """Expire one session. Returns False if the session was no longer ACTIVE."""
        async with self.locks.hold(client_address):
            current = await self.store.get_by_id(session_id)
            if current is None or current.status != SessionStatus.ACTIVE:
                log.debug("expiry_noop", session_id=session_id)
                return False

            log.info(
                "session_expired",
                session_id=session_id,
                client_address=current.client_address,
                tier=current.tier,
            )
            await terminate_session(
                current,
                SessionStatus.EXPIRED,
                store=self.store,
                gateway=self.gateway,
                event_dispatcher=self.event_dispatcher,
            )
            return True

    async def restore(self) -> RestoreResult:
        """Re-derive the timer set from the store; expire what is already overdue."""
        result = RestoreResult(armed=[], expired=[])
        now = self.clock()

        for s in await self.store.list_active():
            if s.expires_at <= now:
                if await self.fire(s.session_id, s.client_address):
                    result.expired.append(s.session_id)
            elif not self.has_timer(s.session_id):
                self.arm(s)
                result.armed.append(s.session_id)

        log.info("expiry_restored", armed=len(result.armed), expired=len(result.expired))
        return result

    async def close(self) -> None:
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.task.cancel()
        for timer in timers:
            with contextlib.suppress(asyncio.CancelledError):
                await timer.task
