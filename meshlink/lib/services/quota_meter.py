from dataclasses import dataclass, field

import structlog

from meshlink.lib.errors import InvalidState, NotFound, UnknownTier
from meshlink.lib.services.address_locks import AddressLockPool
from meshlink.lib.services.broker_session import terminate_session
from meshlink.lib.services.enforcement_gateway import EnforcementGateway
from meshlink.lib.services.event_dispatcher import BrokerEventDispatcher
from meshlink.lib.services.expiry_scheduler import ExpiryScheduler
from meshlink.lib.services.session_store import SessionStore
from meshlink.lib.session.models import Session, SessionStatus
from meshlink.lib.session.tiers import TierCatalog

log = structlog.get_logger(__name__)


@dataclass
class QuotaPollReport:
    metered: dict[str, int] = field(default_factory=dict)  # session_id -> delta bytes
    exceeded: list[str] = field(default_factory=list)


class QuotaMeter:
    """
    Attributes allow-set byte counters to ACTIVE sessions and revokes sessions that
    reach their tier's data quota.

    Counters are per address and restart from zero whenever the address is revoked,
    so a session's counter reading is the usage since its grant.
    """

    def __init__(
        self,
        store: SessionStore,
        gateway: EnforcementGateway,
        tiers: TierCatalog,
        scheduler: ExpiryScheduler,
        locks: AddressLockPool,
        *,
        event_dispatcher: BrokerEventDispatcher | None = None,
    ):
        self.store = store
        self.gateway = gateway
        self.tiers = tiers
        self.scheduler = scheduler
        self.locks = locks
        self.event_dispatcher = event_dispatcher
        # session_id -> last counter value attributed
        self._last_seen: dict[str, int] = {}

    def reset_baseline(self, session_id: str) -> None:
        """The address was re-added to the allow-set, so its counter restarted at zero."""
        self._last_seen[session_id] = 0

    def _delta(self, s: Session, counter: int) -> int:
        base = self._last_seen.get(s.session_id)
        if base is None:
            # First sighting since start: the stored usage already covers the counter
            # up to the last poll of the previous process
            base = s.data_used_bytes if counter >= s.data_used_bytes else 0
        if counter < base:
            # Entry was re-created out of band and its counter restarted
            return counter
        return counter - base

    async def poll(self) -> QuotaPollReport:
        report = QuotaPollReport()
        sessions = await self.store.list_active()
        snapshot = await self.gateway.usage_snapshot()

        active_ids = {s.session_id for s in sessions}
        for session_id in list(self._last_seen):
            if session_id not in active_ids:
                del self._last_seen[session_id]

        for s in sessions:
            counter = snapshot.get(s.client_address)
            if counter is None:
                continue  # not granted right now; the reconciler handles that

            try:
                await self._meter_session(s, counter, report)
            except Exception as e:
                log.error("quota_meter_session_failed", session_id=s.session_id, error=str(e))

        return report

    async def _meter_session(self, s: Session, counter: int, report: QuotaPollReport) -> None:
        delta = self._delta(s, counter)

        async with self.locks.hold(s.client_address):
            try:
                tier = self.tiers.get(s.tier)
            except UnknownTier:
                tier = None
                log.warning("quota_meter_unknown_tier", session_id=s.session_id, tier=s.tier)

            if delta > 0:
                try:
                    updated = await self.store.add_usage(s.session_id, delta)
                except (InvalidState, NotFound):
                    # Session ended between the snapshot and now
                    self._last_seen.pop(s.session_id, None)
                    return
                report.metered[s.session_id] = delta
                if self.event_dispatcher is not None:
                    await self.event_dispatcher.dispatch_session_update(updated, delta_bytes=delta)
            else:
                updated = await self.store.get_by_id(s.session_id)
                if updated is None or updated.status != SessionStatus.ACTIVE:
                    self._last_seen.pop(s.session_id, None)
                    return

            self._last_seen[s.session_id] = counter

            if tier is None or not tier.has_quota():
                return
            if updated.data_used_bytes < tier.data_quota_bytes:
                return

            log.info(
                "session_quota_exceeded",
                session_id=s.session_id,
                client_address=s.client_address,
                tier=tier.name,
                data_used_bytes=updated.data_used_bytes,
                data_quota_bytes=tier.data_quota_bytes,
            )
            self.scheduler.cancel(s.session_id)
            await terminate_session(
                updated,
                SessionStatus.QUOTA_EXCEEDED,
                store=self.store,
                gateway=self.gateway,
                event_dispatcher=self.event_dispatcher,
            )
            self._last_seen.pop(s.session_id, None)
            report.exceeded.append(s.session_id)
