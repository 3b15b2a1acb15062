"""
Tests for BrokerEventDispatcher against a mocked Redis connection.
"""

from unittest.mock import AsyncMock

import pytest

from meshlink.lib.constants import EVENT_DISPATCHER_STREAM_ID, EVENT_DISPATCHER_STREAM_MAXLEN
from meshlink.lib.services.event_dispatcher import BrokerEventDispatcher, BrokerEventDispatcherConfig
from meshlink.lib.session.models import Session, SessionStatus


def _session() -> Session:
    return Session(
        client_address="10.0.0.5",
        tier="free",
        created_at=1000.0,
        expires_at=1060.0,
        status=SessionStatus.ACTIVE,
    )


def _dispatcher(redis_conn) -> BrokerEventDispatcher:
    return BrokerEventDispatcher(
        BrokerEventDispatcherConfig(broker_id="gw-1", broker_instance_id="run-1", redis_conn=redis_conn)
    )


def test_requires_redis_outside_test_mode():
    with pytest.raises(ValueError):
        BrokerEventDispatcher(BrokerEventDispatcherConfig(broker_id="gw-1", broker_instance_id="run-1"))


@pytest.mark.asyncio
async def test_start_event_written_to_stream():
    redis_conn = AsyncMock()
    dispatcher = _dispatcher(redis_conn)
    s = _session()

    await dispatcher.dispatch_session_start(s)

    redis_conn.xadd.assert_awaited_once()
    args, kwargs = redis_conn.xadd.call_args
    stream, fields = args
    assert stream == EVENT_DISPATCHER_STREAM_ID
    assert kwargs == {"maxlen": EVENT_DISPATCHER_STREAM_MAXLEN, "approximate": True}
    assert fields["event_type"] == "SESSION_START"
    assert fields["session_id"] == s.session_id
    assert fields["broker_id"] == "gw-1"
    assert fields["broker_instance_id"] == "run-1"
    assert fields["client_mac"] == ""
    # stream field values must all be flat strings
    assert all(isinstance(v, str) for v in fields.values())


@pytest.mark.asyncio
async def test_seq_increments_per_event():
    redis_conn = AsyncMock()
    dispatcher = _dispatcher(redis_conn)
    s = _session()

    await dispatcher.dispatch_session_start(s)
    await dispatcher.dispatch_session_update(s, delta_bytes=10)
    await dispatcher.dispatch_session_stop(s, terminate_cause="EXPIRED")

    seqs = [call.args[1]["seq"] for call in redis_conn.xadd.call_args_list]
    assert seqs == ["1", "2", "3"]
    assert redis_conn.xadd.call_args_list[2].args[1]["terminate_cause"] == "EXPIRED"


@pytest.mark.asyncio
async def test_redis_failure_is_not_raised():
    redis_conn = AsyncMock()
    redis_conn.xadd.side_effect = ConnectionError("redis down")
    dispatcher = _dispatcher(redis_conn)

    await dispatcher.dispatch_reconcile(granted=1, revoked=0, expired=0, failed_pending=0, rearmed=0)
    assert dispatcher.seq == 1


@pytest.mark.asyncio
async def test_test_mode_keeps_events_in_memory():
    dispatcher = BrokerEventDispatcher(
        BrokerEventDispatcherConfig(broker_id="gw-1", broker_instance_id="run-1", test_mode=True)
    )
    s = _session()
    s.ended_at = 1030.0

    await dispatcher.dispatch_session_stop(s, terminate_cause="REVOKED")

    assert dispatcher.redis_conn is None
    [event] = dispatcher.dispatched
    assert event["session_end"] == "1030.0"
    assert event["terminate_cause"] == "REVOKED"
