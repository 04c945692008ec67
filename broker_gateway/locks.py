"""
Broker Gateway - Read/Write Lock.

============================================================
PURPOSE
============================================================
asyncio read/write lock guarding the broker registry.

- Any number of readers share the lock
- Writers are exclusive
- Waiting writers block new readers (no writer starvation)

Holders keep the lock only long enough to snapshot or mutate
the registry. Network calls happen after release.

============================================================
USAGE
============================================================
```python
lock = ReadWriteLock()

async with lock.read():
    snapshot = dict(brokers)

async with lock.write():
    brokers[name] = broker
```

============================================================
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class ReadWriteLock:
    """Writer-preferring asyncio read/write lock."""

    def __init__(self) -> None:
        self._condition = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def locked(self) -> bool:
        """True while a writer holds the lock."""
        return self._writer

    async def acquire_read(self) -> None:
        async with self._condition:
            await self._condition.wait_for(
                lambda: not self._writer and self._waiting_writers == 0
            )
            self._readers += 1

    async def _notify_waiters(self) -> None:
        async with self._condition:
            self._condition.notify_all()

    async def release_read(self) -> None:
        # State changes before the first await; a cancelled caller
        # still wakes waiters through the shielded notify.
        self._readers -= 1
        if self._readers == 0:
            await asyncio.shield(self._notify_waiters())

    async def acquire_write(self) -> None:
        async with self._condition:
            self._waiting_writers += 1
            try:
                await self._condition.wait_for(
                    lambda: not self._writer and self._readers == 0
                )
            except BaseException:
                # Cancelled writer: let blocked readers through
                self._waiting_writers -= 1
                self._condition.notify_all()
                raise
            self._waiting_writers -= 1
            self._writer = True

    async def release_write(self) -> None:
        self._writer = False
        await asyncio.shield(self._notify_waiters())

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        await self.acquire_read()
        try:
            yield
        finally:
            await self.release_read()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        await self.acquire_write()
        try:
            yield
        finally:
            await self.release_write()
