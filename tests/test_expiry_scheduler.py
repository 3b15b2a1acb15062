"""
Tests for ExpiryScheduler: firing at expires_at, cancellation, no-op fires and
restart restore on a simulated clock.
"""

import pytest
import pytest_asyncio

from conftest import settle
from meshlink.lib.services.address_locks import AddressLockPool
from meshlink.lib.services.expiry_scheduler import ExpiryScheduler
from meshlink.lib.session.models import SessionStatus


@pytest_asyncio.fixture
async def scheduler(store, gateway, clock, dispatcher):
    sched = ExpiryScheduler(
        store, gateway, AddressLockPool(),
        event_dispatcher=dispatcher, clock=clock, sleep=clock.sleep,
    )
    yield sched
    await sched.close()


async def _active_session(store, gateway, tiers, address="10.0.0.5", tier="free"):
    s = await store.create(address, tiers.get(tier))
    await gateway.grant(address, tier)
    return await store.activate(s.session_id)


class TestFire:
    @pytest.mark.asyncio
    async def test_expires_at_deadline(self, scheduler, store, gateway, tiers, clock):
        s = await _active_session(store, gateway, tiers)
        scheduler.arm(s)
        await settle()

        await clock.advance(59)
        assert (await store.get_by_id(s.session_id)).status == SessionStatus.ACTIVE
        assert "10.0.0.5" in await gateway.list_granted()

        await clock.advance(1)
        assert (await store.get_by_id(s.session_id)).status == SessionStatus.EXPIRED
        assert "10.0.0.5" not in await gateway.list_granted()
        assert not scheduler.has_timer(s.session_id)

    @pytest.mark.asyncio
    async def test_fire_on_inactive_session_is_noop(self, scheduler, store, gateway, tiers):
        s = await _active_session(store, gateway, tiers)
        await store.mark_terminal(s.session_id, SessionStatus.REVOKED)
        gateway.revoke_calls.clear()

        assert await scheduler.fire(s.session_id, s.client_address) is False
        assert gateway.revoke_calls == []
        assert (await store.get_by_id(s.session_id)).status == SessionStatus.REVOKED

    @pytest.mark.asyncio
    async def test_store_failure_still_revokes(self, scheduler, store, gateway, tiers, monkeypatch):
        s = await _active_session(store, gateway, tiers)

        async def broken_mark_terminal(session_id, reason):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(store, "mark_terminal", broken_mark_terminal)
        assert await scheduler.fire(s.session_id, s.client_address) is True
        # gateway side applied even though the store write failed
        assert "10.0.0.5" not in await gateway.list_granted()

    @pytest.mark.asyncio
    async def test_gateway_failure_still_marks_terminal(self, scheduler, store, gateway, tiers, monkeypatch):
        s = await _active_session(store, gateway, tiers)

        async def broken_revoke(address):
            raise RuntimeError("ipset: resource busy")

        monkeypatch.setattr(gateway, "revoke", broken_revoke)
        await scheduler.fire(s.session_id, s.client_address)
        assert (await store.get_by_id(s.session_id)).status == SessionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_stop_event_dispatched(self, scheduler, store, gateway, tiers, dispatcher):
        s = await _active_session(store, gateway, tiers)
        await scheduler.fire(s.session_id, s.client_address)

        stops = [e for e in dispatcher.dispatched if e["event_type"] == "SESSION_STOP"]
        assert len(stops) == 1
        assert stops[0]["terminate_cause"] == "EXPIRED"


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancelled_timer_never_fires(self, scheduler, store, gateway, tiers, clock):
        s = await _active_session(store, gateway, tiers)
        scheduler.arm(s)
        await settle()

        assert scheduler.cancel(s.session_id) is True
        await clock.advance(120)
        assert (await store.get_by_id(s.session_id)).status == SessionStatus.ACTIVE
        assert "10.0.0.5" in await gateway.list_granted()

    @pytest.mark.asyncio
    async def test_cancel_unknown_timer(self, scheduler):
        assert scheduler.cancel("nope") is False

    @pytest.mark.asyncio
    async def test_rearm_replaces_timer(self, scheduler, store, gateway, tiers):
        s = await _active_session(store, gateway, tiers)
        scheduler.arm(s)
        scheduler.arm(s)
        assert len(scheduler) == 1

    @pytest.mark.asyncio
    async def test_arm_rejects_non_active(self, scheduler, store, tiers):
        s = await store.create("10.0.0.5", tiers.get("free"))
        with pytest.raises(ValueError):
            scheduler.arm(s)


class TestRestore:
    @pytest.mark.asyncio
    async def test_expires_overdue_and_arms_the_rest(self, scheduler, store, gateway, tiers, clock):
        overdue = await _active_session(store, gateway, tiers, "10.0.0.1", "free")
        clock.now += 30
        live = await _active_session(store, gateway, tiers, "10.0.0.2", "lightweight")
        clock.now += 40  # free session is now 70s old

        result = await scheduler.restore()
        assert result.expired == [overdue.session_id]
        assert result.armed == [live.session_id]

        assert (await store.get_by_id(overdue.session_id)).status == SessionStatus.EXPIRED
        assert await gateway.list_granted() == {"10.0.0.2"}
        assert scheduler.has_timer(live.session_id)

    @pytest.mark.asyncio
    async def test_missing_reports_unarmed_sessions(self, scheduler, store, gateway, tiers):
        a = await _active_session(store, gateway, tiers, "10.0.0.1")
        b = await _active_session(store, gateway, tiers, "10.0.0.2")
        scheduler.arm(a)

        assert [s.session_id for s in scheduler.missing(await store.list_active())] == [b.session_id]
