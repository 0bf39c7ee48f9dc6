"""Per-deployment serialization of mutating operations."""
import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class DeploymentLocks:
    """One asyncio lock per deployment id.

    Operations on the same deployment run one at a time; different
    deployments never contend. A lock only lives while some operation holds
    or waits for it, so the registry does not grow with finished deployments.
    """

    def __init__(self):
        self._locks: Dict[int, asyncio.Lock] = {}
        # holders plus waiters per deployment id
        self._users: Dict[int, int] = defaultdict(int)

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, deployment_id: int) -> AsyncIterator[None]:
        lock = self._locks.setdefault(deployment_id, asyncio.Lock())
        self._users[deployment_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[deployment_id] -= 1
            if self._users[deployment_id] == 0:
                del self._users[deployment_id]
                del self._locks[deployment_id]
