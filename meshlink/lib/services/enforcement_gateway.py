import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable

import structlog

from meshlink.lib.constants import (
    ENFORCEMENT_BACKOFF_BASE_SECONDS,
    ENFORCEMENT_BACKOFF_MAX_SECONDS,
    ENFORCEMENT_MAX_ATTEMPTS,
    IPSET_ALLOW_SET,
    IPSET_CMD_TIMEOUT_SECONDS,
    IPSET_TIER_SET_PREFIX,
)
from meshlink.lib.errors import EnforcementFailure
from meshlink.lib.ipset.helpers import (
    IpsetCommandError,
    ipset_add,
    ipset_create,
    ipset_del,
    ipset_list_entries,
)
from meshlink.lib.session.models import normalize_address

log = structlog.get_logger(__name__)


def tier_set_name(tier_name: str) -> str:
    return f"{IPSET_TIER_SET_PREFIX}{tier_name}"


@dataclass
class EnforcementGatewayConfig:
    """
    Configuration for the ipset-backed gateway.
        - tier_names: every tier the catalog defines; one set is kept per tier
        - max_attempts / backoff_*: bounded retry for transient ipset failures
    """

    tier_names: list[str]
    ipset_bin: str = "ipset"
    allow_set: str = IPSET_ALLOW_SET
    command_timeout: float = IPSET_CMD_TIMEOUT_SECONDS
    max_attempts: int = ENFORCEMENT_MAX_ATTEMPTS
    backoff_base: float = ENFORCEMENT_BACKOFF_BASE_SECONDS
    backoff_max: float = ENFORCEMENT_BACKOFF_MAX_SECONDS


class EnforcementGateway:
    """
    Kernel-side projection of the active sessions: membership of a client address
    in the global allow-set and in exactly one tier set.

    Every operation is idempotent. Implementations carry no policy; the session
    store decides who should be granted.
    """

    async def ensure_sets(self) -> None:
        raise NotImplementedError

    async def grant(self, client_address: str, tier_name: str) -> None:
        raise NotImplementedError

    async def revoke(self, client_address: str) -> None:
        raise NotImplementedError

    async def list_granted(self) -> set[str]:
        raise NotImplementedError

    async def tier_assignments(self) -> dict[str, set[str]]:
        """Tier sets each address is a member of."""
        raise NotImplementedError

    async def read_usage_bytes(self, client_address: str) -> int:
        snapshot = await self.usage_snapshot()
        return snapshot.get(normalize_address(client_address), 0)

    async def usage_snapshot(self) -> dict[str, int]:
        raise NotImplementedError


class IpsetEnforcementGateway(EnforcementGateway):
    def __init__(self, config: EnforcementGatewayConfig):
        self.config = config

    async def _with_retry(self, op_name: str, client_address: str | None, fn: Callable[[], Awaitable]):
        delay = self.config.backoff_base
        last_error: Exception | None = None

        for attempt in range(1, self.config.max_attempts + 1):
            try:
                return await fn()
            except IpsetCommandError as e:
                last_error = e
                log.warning(
                    "enforcement_op_failed",
                    op=op_name,
                    client_address=client_address,
                    attempt=attempt,
                    max_attempts=self.config.max_attempts,
                    error=str(e),
                )
                if attempt < self.config.max_attempts:
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, self.config.backoff_max)

        raise EnforcementFailure(
            f"{op_name} for {client_address or 'allow-set'} not confirmed after "
            f"{self.config.max_attempts} attempts: {last_error}"
        )

    async def ensure_sets(self) -> None:
        async def _create():
            await ipset_create(self.config.ipset_bin, self.config.allow_set, counters=True)
            for name in self.config.tier_names:
                await ipset_create(self.config.ipset_bin, tier_set_name(name))

        await self._with_retry("ensure_sets", None, _create)

    async def grant(self, client_address: str, tier_name: str) -> None:
        if tier_name not in self.config.tier_names:
            raise EnforcementFailure(f"no tier set configured for tier {tier_name!r}")

        ip = normalize_address(client_address)
        ipset_bin = self.config.ipset_bin

        async def _grant():
            # Tier set first so the shaping layer sees the tag before traffic is forwarded
            for name in self.config.tier_names:
                if name != tier_name:
                    await ipset_del(ipset_bin, tier_set_name(name), ip)
            await ipset_add(ipset_bin, tier_set_name(tier_name), ip)
            await ipset_add(ipset_bin, self.config.allow_set, ip)

        await self._with_retry("grant", ip, _grant)
        log.info("enforcement_granted", client_address=ip, tier=tier_name)

    async def revoke(self, client_address: str) -> None:
        ip = normalize_address(client_address)
        ipset_bin = self.config.ipset_bin

        async def _revoke():
            # Deleting the allow-set entry also drops its byte counter
            await ipset_del(ipset_bin, self.config.allow_set, ip)
            for name in self.config.tier_names:
                await ipset_del(ipset_bin, tier_set_name(name), ip)

        await self._with_retry("revoke", ip, _revoke)
        log.info("enforcement_revoked", client_address=ip)

    async def list_granted(self) -> set[str]:
        entries = await self._with_retry(
            "list_granted",
            None,
            lambda: ipset_list_entries(self.config.ipset_bin, self.config.allow_set),
        )
        return set(entries)

    async def tier_assignments(self) -> dict[str, set[str]]:
        assignments: dict[str, set[str]] = {}
        for name in self.config.tier_names:
            set_name = tier_set_name(name)
            entries = await self._with_retry(
                "tier_assignments",
                None,
                lambda: ipset_list_entries(self.config.ipset_bin, set_name),
            )
            for address in entries:
                assignments.setdefault(address, set()).add(name)
        return assignments

    async def usage_snapshot(self) -> dict[str, int]:
        entries = await self._with_retry(
            "usage_snapshot",
            None,
            lambda: ipset_list_entries(self.config.ipset_bin, self.config.allow_set),
        )
        return {address: entry.bytes for address, entry in entries.items()}


class MemoryEnforcementGateway(EnforcementGateway):
    """
    In-process stand-in for the kernel sets, used by the `memory` enforcement backend
    (dry runs on a development machine) and by the test suite.
    """

    def __init__(self, tier_names: list[str]):
        self.tier_names = list(tier_names)
        self.allowed: set[str] = set()
        self.tier_members: dict[str, set[str]] = {name: set() for name in self.tier_names}
        self.counters: dict[str, int] = {}
        self.grant_calls: list[tuple[str, str]] = []
        self.revoke_calls: list[str] = []

    async def ensure_sets(self) -> None:
        for name in self.tier_names:
            self.tier_members.setdefault(name, set())

    async def grant(self, client_address: str, tier_name: str) -> None:
        if tier_name not in self.tier_members:
            raise EnforcementFailure(f"no tier set configured for tier {tier_name!r}")

        ip = normalize_address(client_address)
        self.grant_calls.append((ip, tier_name))
        for name, members in self.tier_members.items():
            if name != tier_name:
                members.discard(ip)
        self.tier_members[tier_name].add(ip)
        if ip not in self.allowed:
            self.allowed.add(ip)
            self.counters[ip] = 0

    async def revoke(self, client_address: str) -> None:
        ip = normalize_address(client_address)
        self.revoke_calls.append(ip)
        self.allowed.discard(ip)
        self.counters.pop(ip, None)
        for members in self.tier_members.values():
            members.discard(ip)

    async def list_granted(self) -> set[str]:
        return set(self.allowed)

    async def tier_assignments(self) -> dict[str, set[str]]:
        assignments: dict[str, set[str]] = {}
        for name, members in self.tier_members.items():
            for ip in members:
                assignments.setdefault(ip, set()).add(name)
        return assignments

    async def usage_snapshot(self) -> dict[str, int]:
        return {ip: self.counters.get(ip, 0) for ip in self.allowed}

    def record_traffic(self, client_address: str, nbytes: int) -> None:
        """Simulate forwarded bytes for a granted address."""
        ip = normalize_address(client_address)
        if ip in self.allowed:
            self.counters[ip] = self.counters.get(ip, 0) + nbytes

    def tier_of(self, client_address: str) -> str | None:
        ip = normalize_address(client_address)
        for name, members in self.tier_members.items():
            if ip in members:
                return name
        return None
