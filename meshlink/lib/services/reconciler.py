import time
from dataclasses import dataclass, field
from typing import Callable

import structlog

from meshlink.lib.constants import PENDING_GRACE_SECONDS
from meshlink.lib.services.address_locks import AddressLockPool
from meshlink.lib.services.broker_session import terminate_session
from meshlink.lib.services.enforcement_gateway import EnforcementGateway
from meshlink.lib.services.event_dispatcher import BrokerEventDispatcher
from meshlink.lib.services.expiry_scheduler import ExpiryScheduler
from meshlink.lib.services.quota_meter import QuotaMeter
from meshlink.lib.services.session_store import SessionStore
from meshlink.lib.session.models import SessionStatus

log = structlog.get_logger(__name__)


@dataclass
class ReconcileReport:
    granted: list[str] = field(default_factory=list)
    revoked: list[str] = field(default_factory=list)
    expired: list[str] = field(default_factory=list)
    failed_pending: list[str] = field(default_factory=list)
    rearmed: list[str] = field(default_factory=list)
    retiered: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def changed(self) -> bool:
        return bool(
            self.granted or self.revoked or self.expired or self.failed_pending or self.rearmed or self.retiered
        )


class Reconciler:
    """
    Heals drift between the session store (authoritative) and the gateway's allow-set.

    desired = addresses with an ACTIVE, unexpired session
    actual  = addresses in the allow-set
    actual - desired is revoked, desired - actual is granted, and an allowed address
    outside its session's tier set is re-granted in place. Each repair re-checks
    the row under the address lock because the snapshots may be stale by then.
    """

    def __init__(
        self,
        store: SessionStore,
        gateway: EnforcementGateway,
        scheduler: ExpiryScheduler,
        locks: AddressLockPool,
        *,
        event_dispatcher: BrokerEventDispatcher | None = None,
        quota_meter: QuotaMeter | None = None,
        clock: Callable[[], float] = time.time,
        pending_grace: float = PENDING_GRACE_SECONDS,
    ):
        self.store = store
        self.gateway = gateway
        self.scheduler = scheduler
        self.locks = locks
        self.event_dispatcher = event_dispatcher
        self.quota_meter = quota_meter
        self.clock = clock
        self.pending_grace = pending_grace

    async def reconcile(self, startup: bool = False) -> ReconcileReport:
        report = ReconcileReport()

        await self._resolve_pending(report, startup)
        await self._expire_overdue(report)
        await self._sync_allow_set(report)
        await self._rearm_timers(report)

        if report.changed() or report.errors:
            log.info(
                "reconcile_pass",
                startup=startup,
                granted=len(report.granted),
                revoked=len(report.revoked),
                expired=len(report.expired),
                failed_pending=len(report.failed_pending),
                rearmed=len(report.rearmed),
                retiered=len(report.retiered),
                errors=len(report.errors),
            )
            if self.event_dispatcher is not None:
                await self.event_dispatcher.dispatch_reconcile(
                    granted=len(report.granted),
                    revoked=len(report.revoked),
                    expired=len(report.expired),
                    failed_pending=len(report.failed_pending),
                    rearmed=len(report.rearmed),
                    retiered=len(report.retiered),
                )
        else:
            log.debug("reconcile_pass_clean", startup=startup)

        return report

    async def _resolve_pending(self, report: ReconcileReport, startup: bool) -> None:
        """A PENDING row outside an authorize call is a crash leftover; fail it."""
        now = self.clock()
        for s in await self.store.list_pending():
            if not startup and now - s.created_at < self.pending_grace:
                continue

            async with self.locks.hold(s.client_address):
                current = await self.store.get_by_id(s.session_id)
                if current is None or current.status != SessionStatus.PENDING:
                    continue

                updated = await terminate_session(
                    current,
                    SessionStatus.FAILED,
                    store=self.store,
                    gateway=self.gateway,
                    event_dispatcher=self.event_dispatcher,
                )
                if updated is None:
                    report.errors.append(f"pending:{s.session_id}")
                else:
                    report.failed_pending.append(s.session_id)

    async def _expire_overdue(self, report: ReconcileReport) -> None:
        now = self.clock()
        for s in await self.store.list_active():
            if s.expires_at > now:
                # list_active is ordered by expires_at
                break
            if await self.scheduler.fire(s.session_id, s.client_address):
                self.scheduler.cancel(s.session_id)
                report.expired.append(s.session_id)

    async def _sync_allow_set(self, report: ReconcileReport) -> None:
        now = self.clock()
        desired = {s.client_address: s for s in await self.store.list_active() if s.expires_at > now}
        actual = await self.gateway.list_granted()

        for address in sorted(actual - desired.keys()):
            async with self.locks.hold(address):
                live = await self.store.get_live(address)
                if live is not None and live.status == SessionStatus.ACTIVE:
                    continue  # authorized since the snapshot
                try:
                    await self.gateway.revoke(address)
                    report.revoked.append(address)
                    log.info("reconcile_stale_grant_revoked", client_address=address)
                except Exception as e:
                    report.errors.append(f"revoke:{address}")
                    log.error("reconcile_revoke_failed", client_address=address, error=str(e))

        for address in sorted(desired.keys() - actual):
            async with self.locks.hold(address):
                current = await self.store.get_by_id(desired[address].session_id)
                if current is None or current.status != SessionStatus.ACTIVE:
                    continue  # ended since the snapshot
                try:
                    await self.gateway.grant(address, current.tier)
                    report.granted.append(address)
                    log.info("reconcile_missing_grant_restored", client_address=address, tier=current.tier)
                except Exception as e:
                    report.errors.append(f"grant:{address}")
                    log.error("reconcile_grant_failed", client_address=address, error=str(e))
                    continue
                if self.quota_meter is not None:
                    self.quota_meter.reset_baseline(current.session_id)

        await self._sync_tier_sets(desired, actual, report)

    async def _sync_tier_sets(self, desired: dict, actual: set[str], report: ReconcileReport) -> None:
        """An allowed address must sit in exactly its session's tier set."""
        assignments = await self.gateway.tier_assignments()

        for address in sorted(desired.keys() & actual):
            if assignments.get(address, set()) == {desired[address].tier}:
                continue
            async with self.locks.hold(address):
                current = await self.store.get_by_id(desired[address].session_id)
                if current is None or current.status != SessionStatus.ACTIVE:
                    continue
                try:
                    # Allow-set entry is kept, so the byte counter carries on
                    await self.gateway.grant(address, current.tier)
                    report.retiered.append(address)
                    log.info(
                        "reconcile_tier_set_repaired",
                        client_address=address,
                        tier=current.tier,
                        found=sorted(assignments.get(address, set())),
                    )
                except Exception as e:
                    report.errors.append(f"tier:{address}")
                    log.error("reconcile_tier_repair_failed", client_address=address, error=str(e))

    async def _rearm_timers(self, report: ReconcileReport) -> None:
        for s in self.scheduler.missing(await self.store.list_active()):
            async with self.locks.hold(s.client_address):
                current = await self.store.get_by_id(s.session_id)
                if current is None or current.status != SessionStatus.ACTIVE:
                    continue
                if self.scheduler.has_timer(current.session_id):
                    continue
                self.scheduler.arm(current)
                report.rearmed.append(current.session_id)
