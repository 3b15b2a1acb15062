import time
from dataclasses import dataclass
from enum import Enum

import redis.asyncio as aioredis
import structlog

from meshlink.lib.constants import EVENT_DISPATCHER_STREAM_ID, EVENT_DISPATCHER_STREAM_MAXLEN
from meshlink.lib.session.models import Session

log = structlog.get_logger(__name__)


@dataclass
class BrokerEventDispatcherConfig:
    """
    Configuration for BrokerEventDispatcher.
        - broker_id: Unique identifier for this gateway (persistent across restarts)
        - broker_instance_id: UUID for this specific run of the broker (changes on restart)
        - redis_conn: Redis connection to use for dispatching events. Required if test_mode is False.
        - test_mode: If True, events are logged instead of being dispatched to Redis.
    """

    broker_id: str
    broker_instance_id: str
    redis_conn: aioredis.Redis | None = None
    stream_id: str = EVENT_DISPATCHER_STREAM_ID
    test_mode: bool = False


class BrokerEventType(Enum):
    SESSION_START = "SESSION_START"
    SESSION_UPDATE = "SESSION_UPDATE"
    SESSION_STOP = "SESSION_STOP"
    RECONCILE = "RECONCILE"


class BrokerEventDispatcher:
    """
    Appends session lifecycle events to a Redis stream for reporting consumers.
    Dispatch problems are logged and dropped; they never affect broker state.
    """

    redis_conn: aioredis.Redis | None
    config: BrokerEventDispatcherConfig
    seq: int  # ordering and idempotency key for stream consumers

    def __init__(self, config: BrokerEventDispatcherConfig) -> None:
        self.config = config
        self.seq = 0
        self.redis_conn = None
        self.dispatched: list[dict] = []

        if config.test_mode:
            log.info("event_dispatcher_test_mode")
            return

        if self.config.redis_conn is None:
            raise ValueError("redis_conn must be provided")

        self.redis_conn = self.config.redis_conn

    def _next_seq(self) -> int:
        self.seq += 1
        return self.seq

    async def _dispatch(self, event_type: BrokerEventType, event_data: dict) -> None:
        event_data["broker_id"] = self.config.broker_id
        event_data["broker_instance_id"] = self.config.broker_instance_id
        event_data["seq"] = str(self._next_seq())
        event_data["event_type"] = event_type.value
        event_data["ts"] = str(time.time())

        if self.config.test_mode:
            self.dispatched.append(event_data)
            log.debug("event_dispatched", **event_data)
            return

        assert self.redis_conn is not None
        try:
            await self.redis_conn.xadd(
                self.config.stream_id,
                event_data,
                maxlen=EVENT_DISPATCHER_STREAM_MAXLEN,
                approximate=True,
            )
        except Exception as e:
            log.warning("event_dispatch_failed", event_type=event_type.value, error=str(e))

    def _session_fields(self, s: Session) -> dict:
        return {
            "session_id": s.session_id,
            "client_address": s.client_address,
            "client_mac": s.client_mac or "",
            "tier": s.tier,
            "status": s.status.value,
            "created_at": str(s.created_at),
            "expires_at": str(s.expires_at),
            "data_used_bytes": str(s.data_used_bytes),
        }

    async def dispatch_session_start(self, s: Session) -> None:
        await self._dispatch(BrokerEventType.SESSION_START, self._session_fields(s))

    async def dispatch_session_update(self, s: Session, delta_bytes: int) -> None:
        event_data = self._session_fields(s)
        event_data["delta_bytes"] = str(delta_bytes)
        await self._dispatch(BrokerEventType.SESSION_UPDATE, event_data)

    async def dispatch_session_stop(self, s: Session, terminate_cause: str) -> None:
        event_data = self._session_fields(s)
        event_data["terminate_cause"] = terminate_cause
        event_data["session_end"] = str(s.ended_at if s.ended_at is not None else time.time())
        await self._dispatch(BrokerEventType.SESSION_STOP, event_data)

    async def dispatch_reconcile(
        self, granted: int, revoked: int, expired: int, failed_pending: int, rearmed: int, retiered: int = 0
    ) -> None:
        await self._dispatch(BrokerEventType.RECONCILE, {
            "granted": str(granted),
            "revoked": str(revoked),
            "expired": str(expired),
            "failed_pending": str(failed_pending),
            "rearmed": str(rearmed),
            "retiered": str(retiered),
        })
