import asyncio
import contextlib
from typing import AsyncIterator

from meshlink.lib.session.models import normalize_address


class AddressLockPool:
    """
    Keyed mutex pool: one asyncio.Lock per client address, created on demand and
    dropped once nobody holds or waits on it. Unrelated addresses never contend.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def hold(self, client_address: str) -> AsyncIterator[str]:
        address = normalize_address(client_address)
        lock = self._locks.get(address)
        if lock is None:
            lock = self._locks[address] = asyncio.Lock()
        self._users[address] = self._users.get(address, 0) + 1

        try:
            async with lock:
                yield address
        finally:
            self._users[address] -= 1
            if self._users[address] == 0:
                del self._users[address]
                del self._locks[address]

    def __len__(self) -> int:
        return len(self._locks)
