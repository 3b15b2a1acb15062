import structlog

from meshlink.lib.errors import Conflict, EnforcementFailure, NotFound
from meshlink.lib.services.address_locks import AddressLockPool
from meshlink.lib.services.broker_session import terminate_session
from meshlink.lib.services.enforcement_gateway import EnforcementGateway
from meshlink.lib.services.event_dispatcher import BrokerEventDispatcher
from meshlink.lib.services.expiry_scheduler import ExpiryScheduler
from meshlink.lib.services.session_store import SessionStore
from meshlink.lib.session.models import Session, SessionStatus, normalize_address
from meshlink.lib.session.tiers import TierCatalog

log = structlog.get_logger(__name__)


class AuthorizationService:
    """The only mutating entry point the captive portal talks to."""

    def __init__(
        self,
        store: SessionStore,
        gateway: EnforcementGateway,
        scheduler: ExpiryScheduler,
        tiers: TierCatalog,
        locks: AddressLockPool,
        *,
        event_dispatcher: BrokerEventDispatcher | None = None,
    ):
        self.store = store
        self.gateway = gateway
        self.scheduler = scheduler
        self.tiers = tiers
        self.locks = locks
        self.event_dispatcher = event_dispatcher

    async def authorize(
        self,
        client_address: str,
        tier_name: str,
        client_mac: str | None = None,
        allow_supersede: bool = True,
    ) -> Session:
        """
        Grant `client_address` internet access under `tier_name`.

        Any live session for the address is superseded first. The caller gets either
        an ACTIVE session or an error; a session left behind by a failed grant is
        FAILED, never PENDING.
        Raises UnknownTier, Conflict (supersession disallowed), EnforcementFailure,
        ValueError (bad address).
        """
        tier = self.tiers.get(tier_name)
        address = normalize_address(client_address)

        async with self.locks.hold(address):
            existing = await self.store.get_live(address)
            if existing is not None:
                if not allow_supersede:
                    raise Conflict(f"address {address} already has session {existing.session_id}")
                await self._supersede(existing)

            session = await self.store.create(address, tier, client_mac=client_mac)

            try:
                await self.gateway.grant(address, tier.name)
                session = await self.store.activate(session.session_id)
            except Exception as e:
                log.error(
                    "authorize_grant_failed",
                    session_id=session.session_id,
                    client_address=address,
                    tier=tier.name,
                    error=str(e),
                )
                await terminate_session(
                    session,
                    SessionStatus.FAILED,
                    store=self.store,
                    gateway=self.gateway,
                )
                if isinstance(e, EnforcementFailure):
                    raise
                raise EnforcementFailure(f"authorization for {address} not confirmed: {e}") from e

            self.scheduler.arm(session)

        log.info(
            "session_authorized",
            session_id=session.session_id,
            client_address=address,
            tier=tier.name,
            expires_at=session.expires_at,
        )
        if self.event_dispatcher is not None:
            await self.event_dispatcher.dispatch_session_start(session)
        return session

    async def _supersede(self, existing: Session) -> None:
        # Stale timer must not outlive its session and revoke the replacement
        self.scheduler.cancel(existing.session_id)
        try:
            await self.gateway.revoke(existing.client_address)
        except EnforcementFailure as e:
            # The new grant below re-adds the address anyway
            log.warning("supersede_revoke_failed", session_id=existing.session_id, error=str(e))

        for old in await self.store.supersede(existing.client_address):
            log.info(
                "session_superseded",
                session_id=old.session_id,
                client_address=old.client_address,
                tier=old.tier,
            )
            if self.event_dispatcher is not None:
                await self.event_dispatcher.dispatch_session_stop(old, terminate_cause=SessionStatus.REVOKED.value)

    async def disconnect(self, session_id: str) -> Session:
        """Revoke a session on operator or client request."""
        s = await self.store.get_by_id(session_id)
        if s is None:
            raise NotFound(f"session not found: {session_id}")

        async with self.locks.hold(s.client_address):
            current = await self.store.get_by_id(session_id)
            if current is None:
                raise NotFound(f"session not found: {session_id}")
            if not current.is_live():
                return current

            self.scheduler.cancel(session_id)
            updated = await terminate_session(
                current,
                SessionStatus.REVOKED,
                store=self.store,
                gateway=self.gateway,
                event_dispatcher=self.event_dispatcher,
            )
            if updated is None:
                # Store write failed; the gateway side is already revoked
                raise EnforcementFailure(f"disconnect of session {session_id} not recorded")
            return updated
