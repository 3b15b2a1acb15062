import structlog

from meshlink.lib.services.enforcement_gateway import EnforcementGateway
from meshlink.lib.services.event_dispatcher import BrokerEventDispatcher
from meshlink.lib.services.session_store import SessionStore
from meshlink.lib.session.models import Session, SessionStatus

log = structlog.get_logger(__name__)


async def terminate_session(
    s: Session,
    reason: SessionStatus,
    *,
    store: SessionStore,
    gateway: EnforcementGateway,
    event_dispatcher: BrokerEventDispatcher | None = None,
) -> Session | None:
    """
    Revoke the address at the gateway, then record the terminal status.

    Both writes are attempted even if the first one fails. A half-applied
    termination is drift that the reconciler repairs on its next pass, so neither
    failure is raised. Caller must hold the address lock.
    Returns the updated row, or None if the store write failed.
    """
    try:
        await gateway.revoke(s.client_address)
    except Exception as e:
        log.error(
            "terminate_revoke_failed",
            session_id=s.session_id,
            client_address=s.client_address,
            reason=reason.value,
            error=str(e),
        )

    updated: Session | None = None
    try:
        updated = await store.mark_terminal(s.session_id, reason)
    except Exception as e:
        log.error(
            "terminate_mark_failed",
            session_id=s.session_id,
            client_address=s.client_address,
            reason=reason.value,
            error=str(e),
        )

    if updated is not None:
        log.info(
            "session_terminated",
            session_id=s.session_id,
            client_address=s.client_address,
            tier=s.tier,
            reason=reason.value,
            data_used_bytes=updated.data_used_bytes,
        )
        if event_dispatcher is not None:
            await event_dispatcher.dispatch_session_stop(updated, terminate_cause=reason.value)

    return updated
