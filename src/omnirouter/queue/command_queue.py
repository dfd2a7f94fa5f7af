"""Per-conversation turn locks — one reply in flight per chat id.

Different conversations proceed concurrently on the event loop; messages of
the same conversation wait for each other in FIFO order (asyncio.Lock is
fair), so their history writes never interleave.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class ChatLocks:
    """Example::

        locks = ChatLocks()
        async with locks.lock("telegram-42"):
            ...  # only one turn at a time for this conversation
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def lock(self, chat_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(chat_id, asyncio.Lock())
        self._waiters[chat_id] = self._waiters.get(chat_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[chat_id] -= 1
            if not self._waiters[chat_id]:
                # Nobody else queued on this conversation
                del self._waiters[chat_id]
                del self._locks[chat_id]

    @property
    def active(self) -> list[str]:
        """Chat ids with a turn in progress (for monitoring)."""
        return [key for key, lock in self._locks.items() if lock.locked()]
