"""
Session store contract tests. They run against the in-memory store, and against
PostgreSQL as well when MESHLINK_TEST_PG_DSN points at a scratch database.
"""

import os

import pytest
import pytest_asyncio

from meshlink.lib.errors import Conflict, InvalidState, NotFound
from meshlink.lib.services.session_store import MemorySessionStore, PgSessionStore
from meshlink.lib.session.models import SessionStatus

PG_DSN = os.getenv("MESHLINK_TEST_PG_DSN")


@pytest_asyncio.fixture(params=["memory", "postgres"])
async def any_store(request, clock):
    if request.param == "memory":
        yield MemorySessionStore(clock=clock)
        return

    if not PG_DSN:
        pytest.skip("MESHLINK_TEST_PG_DSN not set")

    import psycopg2.pool

    pool = psycopg2.pool.ThreadedConnectionPool(1, 4, dsn=PG_DSN)
    pg_store = PgSessionStore(pool, clock=clock)
    await pg_store.init_schema()
    conn = pool.getconn()
    try:
        with conn.cursor() as cur:
            cur.execute("TRUNCATE broker_sessions")
        conn.commit()
    finally:
        pool.putconn(conn)

    yield pg_store
    await pg_store.close()


class TestCreate:
    @pytest.mark.asyncio
    async def test_creates_pending_row_with_derived_expiry(self, any_store, tiers, clock):
        s = await any_store.create("10.0.0.5", tiers.get("free"))
        assert s.status == SessionStatus.PENDING
        assert s.created_at == clock.now
        assert s.expires_at == clock.now + 60
        assert s.data_used_bytes == 0

        again = await any_store.get_by_id(s.session_id)
        assert again.status == SessionStatus.PENDING

    @pytest.mark.asyncio
    async def test_second_live_session_for_address_conflicts(self, any_store, tiers):
        await any_store.create("10.0.0.5", tiers.get("free"))
        with pytest.raises(Conflict):
            await any_store.create("10.0.0.5", tiers.get("premium"))

    @pytest.mark.asyncio
    async def test_address_is_normalized(self, any_store, tiers):
        s = await any_store.create(" ::ffff:10.0.0.5 ", tiers.get("free"), client_mac="AA-BB-CC-DD-EE-FF")
        assert s.client_address == "10.0.0.5"
        assert s.client_mac == "aa:bb:cc:dd:ee:ff"

    @pytest.mark.asyncio
    async def test_ipv6_address_is_refused(self, any_store, tiers):
        with pytest.raises(ValueError):
            await any_store.create("2001:db8::1", tiers.get("free"))
        assert await any_store.list_pending() == []

    @pytest.mark.asyncio
    async def test_new_session_allowed_after_supersede(self, any_store, tiers):
        first = await any_store.create("10.0.0.5", tiers.get("free"))
        await any_store.activate(first.session_id)

        superseded = await any_store.supersede("10.0.0.5")
        assert [s.session_id for s in superseded] == [first.session_id]
        assert superseded[0].status == SessionStatus.REVOKED

        second = await any_store.create("10.0.0.5", tiers.get("premium"))
        assert second.session_id != first.session_id


class TestActivate:
    @pytest.mark.asyncio
    async def test_pending_to_active(self, any_store, tiers):
        s = await any_store.create("10.0.0.5", tiers.get("free"))
        active = await any_store.activate(s.session_id)
        assert active.status == SessionStatus.ACTIVE
        assert active.version > s.version

    @pytest.mark.asyncio
    async def test_activate_terminal_row_is_invalid(self, any_store, tiers):
        s = await any_store.create("10.0.0.5", tiers.get("free"))
        await any_store.mark_terminal(s.session_id, SessionStatus.FAILED)
        with pytest.raises(InvalidState):
            await any_store.activate(s.session_id)

    @pytest.mark.asyncio
    async def test_activate_unknown_id(self, any_store):
        with pytest.raises(NotFound):
            await any_store.activate("00000000-0000-0000-0000-000000000000")


class TestReads:
    @pytest.mark.asyncio
    async def test_list_active_ordered_by_expiry(self, any_store, tiers):
        premium = await any_store.create("10.0.0.1", tiers.get("premium"))
        free = await any_store.create("10.0.0.2", tiers.get("free"))
        light = await any_store.create("10.0.0.3", tiers.get("lightweight"))
        pending = await any_store.create("10.0.0.4", tiers.get("free"))
        for s in (premium, free, light):
            await any_store.activate(s.session_id)

        active = await any_store.list_active()
        assert [s.session_id for s in active] == [free.session_id, light.session_id, premium.session_id]
        assert [s.session_id for s in await any_store.list_pending()] == [pending.session_id]

    @pytest.mark.asyncio
    async def test_get_prefers_live_then_latest(self, any_store, tiers, clock):
        old = await any_store.create("10.0.0.5", tiers.get("free"))
        await any_store.mark_terminal(old.session_id, SessionStatus.FAILED)
        clock.now += 5
        live = await any_store.create("10.0.0.5", tiers.get("free"))

        assert (await any_store.get("10.0.0.5")).session_id == live.session_id
        assert (await any_store.get_live("10.0.0.5")).session_id == live.session_id

        await any_store.mark_terminal(live.session_id, SessionStatus.REVOKED)
        latest = await any_store.get("10.0.0.5")
        assert latest.session_id == live.session_id
        assert await any_store.get_live("10.0.0.5") is None

    @pytest.mark.asyncio
    async def test_get_unknown_address(self, any_store):
        assert await any_store.get("10.9.9.9") is None


class TestMarkTerminal:
    @pytest.mark.asyncio
    async def test_is_idempotent(self, any_store, tiers, clock):
        s = await any_store.create("10.0.0.5", tiers.get("free"))
        await any_store.activate(s.session_id)

        expired = await any_store.mark_terminal(s.session_id, SessionStatus.EXPIRED)
        assert expired.status == SessionStatus.EXPIRED
        assert expired.end_reason == SessionStatus.EXPIRED
        assert expired.ended_at == clock.now

        clock.now += 10
        again = await any_store.mark_terminal(s.session_id, SessionStatus.QUOTA_EXCEEDED)
        # first terminal status wins
        assert again.status == SessionStatus.EXPIRED
        assert again.ended_at == expired.ended_at

    @pytest.mark.asyncio
    async def test_rejects_non_terminal_reason(self, any_store, tiers):
        s = await any_store.create("10.0.0.5", tiers.get("free"))
        with pytest.raises(ValueError):
            await any_store.mark_terminal(s.session_id, SessionStatus.ACTIVE)

    @pytest.mark.asyncio
    async def test_unknown_id(self, any_store):
        with pytest.raises(NotFound):
            await any_store.mark_terminal("00000000-0000-0000-0000-000000000000", SessionStatus.EXPIRED)


class TestAddUsage:
    @pytest.mark.asyncio
    async def test_accumulates_on_active(self, any_store, tiers):
        s = await any_store.create("10.0.0.5", tiers.get("free"))
        await any_store.activate(s.session_id)
        await any_store.add_usage(s.session_id, 100)
        updated = await any_store.add_usage(s.session_id, 50)
        assert updated.data_used_bytes == 150

    @pytest.mark.asyncio
    async def test_pending_session_is_invalid_state(self, any_store, tiers):
        s = await any_store.create("10.0.0.5", tiers.get("free"))
        with pytest.raises(InvalidState):
            await any_store.add_usage(s.session_id, 10)

    @pytest.mark.asyncio
    async def test_unknown_id_is_not_found(self, any_store):
        with pytest.raises(NotFound):
            await any_store.add_usage("00000000-0000-0000-0000-000000000000", 10)

    @pytest.mark.asyncio
    async def test_negative_delta_rejected(self, any_store, tiers):
        s = await any_store.create("10.0.0.5", tiers.get("free"))
        await any_store.activate(s.session_id)
        with pytest.raises(ValueError):
            await any_store.add_usage(s.session_id, -1)


class TestArchive:
    @pytest.mark.asyncio
    async def test_archives_only_old_terminal_rows(self, any_store, tiers, clock):
        old = await any_store.create("10.0.0.1", tiers.get("free"))
        await any_store.mark_terminal(old.session_id, SessionStatus.FAILED)
        clock.now += 1000
        recent = await any_store.create("10.0.0.2", tiers.get("free"))
        await any_store.mark_terminal(recent.session_id, SessionStatus.FAILED)
        live = await any_store.create("10.0.0.3", tiers.get("free"))

        assert await any_store.archive_terminal(ended_before=clock.now - 500) == 1

        archived = await any_store.get_by_id(old.session_id)
        assert archived.status == SessionStatus.ARCHIVED
        assert archived.end_reason == SessionStatus.FAILED
        assert (await any_store.get_by_id(recent.session_id)).status == SessionStatus.FAILED
        assert (await any_store.get_by_id(live.session_id)).status == SessionStatus.PENDING
        # archived rows are hidden from address lookups
        assert await any_store.get("10.0.0.1") is None

    @pytest.mark.asyncio
    async def test_list_sessions_filters_by_status(self, any_store, tiers):
        a = await any_store.create("10.0.0.1", tiers.get("free"))
        await any_store.create("10.0.0.2", tiers.get("free"))
        await any_store.mark_terminal(a.session_id, SessionStatus.REVOKED)

        revoked = await any_store.list_sessions(status=SessionStatus.REVOKED)
        assert [s.session_id for s in revoked] == [a.session_id]
        assert len(await any_store.list_sessions()) == 2
