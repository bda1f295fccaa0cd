"""
Per-user critical sections

Reconciliation, the access decision and the debit for one user run under
one asyncio.Lock so two requests from the same user are decided in turn.
This only serializes within a process; across processes the conditional
updates in stores.py are what keep balances non-negative.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class UserLockRegistry:
    """Hands out one lock per user id, dropping it when nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, user_id: str):
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._holders[user_id] = self._holders.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[user_id] -= 1
            if self._holders[user_id] == 0:
                del self._holders[user_id]
                del self._locks[user_id]

    def __len__(self) -> int:
        return len(self._locks)


# Shared by every AccessGuard in the process
user_locks = UserLockRegistry()
