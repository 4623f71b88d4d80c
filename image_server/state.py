from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from common.types import CacheKey, CacheValue
from image_server.cache import CacheBackend, InMemoryCache, create_cache_backend
from image_server.config import Config

log = logging.getLogger(__name__)


class RWLock:
    """
    Asyncio reader-writer lock.

    Any number of readers may hold the lock together; a writer holds it
    alone. Writers are preferred: once a writer is waiting, new readers queue
    behind it, so a stream of readers cannot starve it.

    Usage:
        async with lock.read():
            ...
        async with lock.write():
            ...
    """

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def writing(self) -> bool:
        return self._writer

    async def acquire_read(self) -> None:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and not self._writers_waiting)
            self._readers += 1

    async def release_read(self) -> None:
        async with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    async def acquire_write(self) -> None:
        async with self._cond:
            self._writers_waiting += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            except BaseException:
                self._writers_waiting -= 1
                self._cond.notify_all()
                raise
            self._writers_waiting -= 1
            self._writer = True

    async def release_write(self) -> None:
        async with self._cond:
            self._writer = False
            self._cond.notify_all()

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


class ServerState:
    """
    The one piece of shared mutable state in a running server.

    Attributes:
        cache: the backend selected at startup.
        order: round-robin ledger of keys, in the order they were first stored.
        cursor: next position in `order` for sequential dispatch.
        lock: guards everything above. Read for random dispatch, write for
              sequential dispatch and ingestion.

    Mutate through `store` / `evict` / `clear` so `order` and `cache` move
    together.
    """

    def __init__(self, cache: Optional[CacheBackend] = None) -> None:
        self.cache: CacheBackend = cache if cache is not None else InMemoryCache()
        self.order: List[CacheKey] = []
        self.cursor = 0
        self.lock = RWLock()

    @classmethod
    def from_config(cls, config: Config) -> "ServerState":
        return cls(create_cache_backend(config.cache.backend))

    def store(self, key: CacheKey, value: CacheValue) -> None:
        """Insert or overwrite; raises CacheError if the backend cannot persist it."""
        self.cache.set(key, value)
        if key not in self.order:
            self.order.append(key)

    def evict(self, key: CacheKey) -> Optional[CacheValue]:
        if key in self.order:
            self.order.remove(key)
        return self.cache.remove(key)

    def clear(self) -> None:
        self.cache.clear()
        self.order.clear()
        self.cursor = 0

    def size(self) -> int:
        return self.cache.size()

    def close(self) -> None:
        self.order.clear()
        self.cache.close()
