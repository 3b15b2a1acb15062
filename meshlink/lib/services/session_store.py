import asyncio
import dataclasses
import time
from functools import partial
from typing import Callable

import psycopg2.errors
import structlog

from meshlink.lib import db
from meshlink.lib.errors import Conflict, InvalidState, NotFound
from meshlink.lib.session.models import (
    LIVE_STATUSES,
    TERMINAL_STATUSES,
    Session,
    SessionStatus,
    Tier,
    normalize_address,
    normalize_mac,
)

log = structlog.get_logger(__name__)

Clock = Callable[[], float]


class SessionStore:
    """
    Authoritative record of who is authorized. Every write is committed before the
    coroutine returns.

    At most one PENDING or ACTIVE session exists per client address; terminal rows
    are kept (and later archived) for reporting, never deleted.
    """

    def __init__(self, clock: Clock = time.time):
        self.clock = clock

    def _new_session(self, client_address: str, tier: Tier, client_mac: str | None) -> Session:
        now = self.clock()
        return Session(
            client_address=normalize_address(client_address),
            client_mac=normalize_mac(client_mac),
            tier=tier.name,
            created_at=now,
            expires_at=now + tier.duration_seconds,
            status=SessionStatus.PENDING,
        )

    @staticmethod
    def _check_terminal_reason(reason: SessionStatus) -> SessionStatus:
        reason = SessionStatus(reason)
        if reason not in TERMINAL_STATUSES:
            raise ValueError(f"{reason.value} is not a terminal status")
        return reason

    async def create(self, client_address: str, tier: Tier, client_mac: str | None = None) -> Session:
        raise NotImplementedError

    async def supersede(self, client_address: str) -> list[Session]:
        raise NotImplementedError

    async def activate(self, session_id: str) -> Session:
        raise NotImplementedError

    async def get(self, client_address: str) -> Session | None:
        raise NotImplementedError

    async def get_live(self, client_address: str) -> Session | None:
        session = await self.get(client_address)
        if session is not None and session.is_live():
            return session
        return None

    async def get_by_id(self, session_id: str) -> Session | None:
        raise NotImplementedError

    async def list_active(self) -> list[Session]:
        raise NotImplementedError

    async def list_pending(self) -> list[Session]:
        raise NotImplementedError

    async def list_sessions(
        self, status: SessionStatus | None = None, limit: int = 100, offset: int = 0
    ) -> list[Session]:
        raise NotImplementedError

    async def mark_terminal(self, session_id: str, reason: SessionStatus) -> Session:
        raise NotImplementedError

    async def add_usage(self, session_id: str, delta_bytes: int) -> Session:
        raise NotImplementedError

    async def archive_terminal(self, ended_before: float) -> int:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemorySessionStore(SessionStore):
    """Non-durable store for the `memory` backend (development and tests)."""

    def __init__(self, clock: Clock = time.time):
        super().__init__(clock)
        self._rows: dict[str, Session] = {}

    def _copy(self, s: Session) -> Session:
        return dataclasses.replace(s)

    def _live_for(self, address: str) -> Session | None:
        for s in self._rows.values():
            if s.client_address == address and s.status in LIVE_STATUSES:
                return s
        return None

    def _require(self, session_id: str) -> Session:
        s = self._rows.get(session_id)
        if s is None:
            raise NotFound(f"session not found: {session_id}")
        return s

    async def create(self, client_address: str, tier: Tier, client_mac: str | None = None) -> Session:
        session = self._new_session(client_address, tier, client_mac)
        existing = self._live_for(session.client_address)
        if existing is not None:
            raise Conflict(
                f"address {session.client_address} already bound to session {existing.session_id}"
            )
        self._rows[session.session_id] = session
        return self._copy(session)

    async def supersede(self, client_address: str) -> list[Session]:
        address = normalize_address(client_address)
        now = self.clock()
        superseded = []
        for s in self._rows.values():
            if s.client_address == address and s.status in LIVE_STATUSES:
                s.status = SessionStatus.REVOKED
                s.end_reason = SessionStatus.REVOKED
                s.ended_at = now
                s.version += 1
                superseded.append(self._copy(s))
        return superseded

    async def activate(self, session_id: str) -> Session:
        s = self._require(session_id)
        if s.status != SessionStatus.PENDING:
            raise InvalidState(f"session {session_id} is {s.status.value}, not PENDING")
        s.status = SessionStatus.ACTIVE
        s.version += 1
        return self._copy(s)

    async def get(self, client_address: str) -> Session | None:
        address = normalize_address(client_address)
        live = self._live_for(address)
        if live is not None:
            return self._copy(live)

        candidates = [
            s for s in self._rows.values()
            if s.client_address == address and s.status != SessionStatus.ARCHIVED
        ]
        if not candidates:
            return None
        return self._copy(max(candidates, key=lambda s: s.created_at))

    async def get_by_id(self, session_id: str) -> Session | None:
        s = self._rows.get(session_id)
        return self._copy(s) if s is not None else None

    async def list_active(self) -> list[Session]:
        rows = [s for s in self._rows.values() if s.status == SessionStatus.ACTIVE]
        return [self._copy(s) for s in sorted(rows, key=lambda s: s.expires_at)]

    async def list_pending(self) -> list[Session]:
        rows = [s for s in self._rows.values() if s.status == SessionStatus.PENDING]
        return [self._copy(s) for s in sorted(rows, key=lambda s: s.created_at)]

    async def list_sessions(
        self, status: SessionStatus | None = None, limit: int = 100, offset: int = 0
    ) -> list[Session]:
        rows = [s for s in self._rows.values() if status is None or s.status == status]
        rows.sort(key=lambda s: s.created_at, reverse=True)
        return [self._copy(s) for s in rows[offset:offset + limit]]

    async def mark_terminal(self, session_id: str, reason: SessionStatus) -> Session:
        reason = self._check_terminal_reason(reason)
        s = self._require(session_id)
        if s.status not in LIVE_STATUSES:
            return self._copy(s)
        s.status = reason
        s.end_reason = reason
        s.ended_at = self.clock()
        s.version += 1
        return self._copy(s)

    async def add_usage(self, session_id: str, delta_bytes: int) -> Session:
        if delta_bytes < 0:
            raise ValueError("usage delta must not be negative")
        s = self._require(session_id)
        if s.status != SessionStatus.ACTIVE:
            raise InvalidState(f"session {session_id} is {s.status.value}, not ACTIVE")
        s.data_used_bytes += delta_bytes
        s.version += 1
        return self._copy(s)

    async def archive_terminal(self, ended_before: float) -> int:
        now = self.clock()
        count = 0
        for s in self._rows.values():
            if s.status in TERMINAL_STATUSES and s.ended_at is not None and s.ended_at < ended_before:
                s.status = SessionStatus.ARCHIVED
                s.archived_at = now
                s.version += 1
                count += 1
        return count


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS broker_sessions (
    session_id      UUID PRIMARY KEY,
    client_address  TEXT NOT NULL,
    client_mac      TEXT,
    tier            TEXT NOT NULL,
    status          TEXT NOT NULL,
    end_reason      TEXT,
    created_at      DOUBLE PRECISION NOT NULL,
    expires_at      DOUBLE PRECISION NOT NULL,
    ended_at        DOUBLE PRECISION,
    archived_at     DOUBLE PRECISION,
    data_used_bytes BIGINT NOT NULL DEFAULT 0 CHECK (data_used_bytes >= 0),
    version         INTEGER NOT NULL DEFAULT 1
);

CREATE UNIQUE INDEX IF NOT EXISTS broker_sessions_live_address_uq
    ON broker_sessions (client_address)
    WHERE status IN ('PENDING', 'ACTIVE');

CREATE INDEX IF NOT EXISTS broker_sessions_active_expiry_idx
    ON broker_sessions (expires_at)
    WHERE status = 'ACTIVE';

CREATE INDEX IF NOT EXISTS broker_sessions_address_created_idx
    ON broker_sessions (client_address, created_at DESC);
"""

_LIVE = [s.value for s in LIVE_STATUSES]
_TERMINAL = [s.value for s in TERMINAL_STATUSES]


def _row_to_session(row: dict) -> Session:
    return Session(
        session_id=str(row["session_id"]),
        client_address=row["client_address"],
        client_mac=row.get("client_mac"),
        tier=row["tier"],
        status=SessionStatus(row["status"]),
        end_reason=SessionStatus(row["end_reason"]) if row.get("end_reason") else None,
        created_at=float(row["created_at"]),
        expires_at=float(row["expires_at"]),
        ended_at=float(row["ended_at"]) if row.get("ended_at") is not None else None,
        archived_at=float(row["archived_at"]) if row.get("archived_at") is not None else None,
        data_used_bytes=int(row["data_used_bytes"]),
        version=int(row["version"]),
    )


class PgSessionStore(SessionStore):
    """
    PostgreSQL-backed store. psycopg2 is blocking, so each call runs on the event
    loop's default executor with its own pooled connection and commits before
    returning.
    """

    def __init__(self, pool, clock: Clock = time.time):
        super().__init__(clock)
        self.pool = pool

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args))

    async def init_schema(self) -> None:
        await self._run(db.execute, self.pool, _SCHEMA_SQL)

    async def close(self) -> None:
        self.pool.closeall()

    def _fetch_by_id(self, session_id: str) -> Session | None:
        rows = db.query(
            self.pool,
            "SELECT * FROM broker_sessions WHERE session_id = %(sid)s",
            {"sid": session_id},
        )
        return _row_to_session(rows[0]) if rows else None

    def _require_sync(self, session_id: str) -> Session:
        s = self._fetch_by_id(session_id)
        if s is None:
            raise NotFound(f"session not found: {session_id}")
        return s

    def _create_sync(self, session: Session) -> Session:
        try:
            rows = db.execute_returning(
                self.pool,
                """
                INSERT INTO broker_sessions
                    (session_id, client_address, client_mac, tier, status,
                     created_at, expires_at, data_used_bytes, version)
                VALUES
                    (%(session_id)s, %(client_address)s, %(client_mac)s, %(tier)s, %(status)s,
                     %(created_at)s, %(expires_at)s, 0, 1)
                RETURNING *
                """,
                {
                    "session_id": session.session_id,
                    "client_address": session.client_address,
                    "client_mac": session.client_mac,
                    "tier": session.tier,
                    "status": session.status.value,
                    "created_at": session.created_at,
                    "expires_at": session.expires_at,
                },
            )
        except psycopg2.errors.UniqueViolation as e:
            raise Conflict(f"address {session.client_address} already bound to a live session") from e
        return _row_to_session(rows[0])

    async def create(self, client_address: str, tier: Tier, client_mac: str | None = None) -> Session:
        session = self._new_session(client_address, tier, client_mac)
        return await self._run(self._create_sync, session)

    async def supersede(self, client_address: str) -> list[Session]:
        rows = await self._run(
            db.execute_returning,
            self.pool,
            """
            UPDATE broker_sessions
               SET status = 'REVOKED', end_reason = 'REVOKED',
                   ended_at = %(now)s, version = version + 1
             WHERE client_address = %(addr)s AND status = ANY(%(live)s)
            RETURNING *
            """,
            {"addr": normalize_address(client_address), "now": self.clock(), "live": _LIVE},
        )
        return [_row_to_session(r) for r in rows]

    def _activate_sync(self, session_id: str) -> Session:
        rows = db.execute_returning(
            self.pool,
            """
            UPDATE broker_sessions
               SET status = 'ACTIVE', version = version + 1
             WHERE session_id = %(sid)s AND status = 'PENDING'
            RETURNING *
            """,
            {"sid": session_id},
        )
        if rows:
            return _row_to_session(rows[0])
        current = self._require_sync(session_id)
        raise InvalidState(f"session {session_id} is {current.status.value}, not PENDING")

    async def activate(self, session_id: str) -> Session:
        return await self._run(self._activate_sync, session_id)

    async def get(self, client_address: str) -> Session | None:
        rows = await self._run(
            db.query,
            self.pool,
            """
            SELECT * FROM broker_sessions
             WHERE client_address = %(addr)s AND status <> 'ARCHIVED'
             ORDER BY (status = ANY(%(live)s)) DESC, created_at DESC
             LIMIT 1
            """,
            {"addr": normalize_address(client_address), "live": _LIVE},
        )
        return _row_to_session(rows[0]) if rows else None

    async def get_by_id(self, session_id: str) -> Session | None:
        return await self._run(self._fetch_by_id, session_id)

    async def list_active(self) -> list[Session]:
        rows = await self._run(
            db.query,
            self.pool,
            "SELECT * FROM broker_sessions WHERE status = 'ACTIVE' ORDER BY expires_at ASC",
        )
        return [_row_to_session(r) for r in rows]

    async def list_pending(self) -> list[Session]:
        rows = await self._run(
            db.query,
            self.pool,
            "SELECT * FROM broker_sessions WHERE status = 'PENDING' ORDER BY created_at ASC",
        )
        return [_row_to_session(r) for r in rows]

    async def list_sessions(
        self, status: SessionStatus | None = None, limit: int = 100, offset: int = 0
    ) -> list[Session]:
        params: dict = {"limit": limit, "offset": offset}
        where = ""
        if status is not None:
            where = "WHERE status = %(status)s"
            params["status"] = SessionStatus(status).value

        rows = await self._run(
            db.query,
            self.pool,
            f"""
            SELECT * FROM broker_sessions
            {where}
            ORDER BY created_at DESC
            LIMIT %(limit)s OFFSET %(offset)s
            """,
            params,
        )
        return [_row_to_session(r) for r in rows]

    def _mark_terminal_sync(self, session_id: str, reason: SessionStatus) -> Session:
        rows = db.execute_returning(
            self.pool,
            """
            UPDATE broker_sessions
               SET status = %(reason)s, end_reason = %(reason)s,
                   ended_at = %(now)s, version = version + 1
             WHERE session_id = %(sid)s AND status = ANY(%(live)s)
            RETURNING *
            """,
            {"sid": session_id, "reason": reason.value, "now": self.clock(), "live": _LIVE},
        )
        if rows:
            return _row_to_session(rows[0])
        # Already terminal: re-marking is a no-op
        return self._require_sync(session_id)

    async def mark_terminal(self, session_id: str, reason: SessionStatus) -> Session:
        reason = self._check_terminal_reason(reason)
        return await self._run(self._mark_terminal_sync, session_id, reason)

    def _add_usage_sync(self, session_id: str, delta_bytes: int) -> Session:
        rows = db.execute_returning(
            self.pool,
            """
            UPDATE broker_sessions
               SET data_used_bytes = data_used_bytes + %(delta)s, version = version + 1
             WHERE session_id = %(sid)s AND status = 'ACTIVE'
            RETURNING *
            """,
            {"sid": session_id, "delta": delta_bytes},
        )
        if rows:
            return _row_to_session(rows[0])
        current = self._require_sync(session_id)
        raise InvalidState(f"session {session_id} is {current.status.value}, not ACTIVE")

    async def add_usage(self, session_id: str, delta_bytes: int) -> Session:
        if delta_bytes < 0:
            raise ValueError("usage delta must not be negative")
        return await self._run(self._add_usage_sync, session_id, delta_bytes)

    async def archive_terminal(self, ended_before: float) -> int:
        count = await self._run(
            db.execute,
            self.pool,
            """
            UPDATE broker_sessions
               SET status = 'ARCHIVED', archived_at = %(now)s, version = version + 1
             WHERE status = ANY(%(terminal)s) AND ended_at < %(cutoff)s
            """,
            {"now": self.clock(), "terminal": _TERMINAL, "cutoff": ended_before},
        )
        if count:
            log.info("sessions_archived", count=count)
        return count
