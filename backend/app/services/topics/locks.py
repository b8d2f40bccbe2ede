from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import AsyncIterator, Hashable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol

from app.core.config import Settings, get_settings


class WriteSerializer(Protocol):
    def guard(self, *keys: Hashable) -> AbstractAsyncContextManager[None]: ...


class NullWriteSerializer:
    """Default: operations interleave freely and the last write per row wins."""

    @asynccontextmanager
    async def guard(self, *keys: Hashable) -> AsyncIterator[None]:
        yield


class SubtreeWriteSerializer:
    """Serializes guarded blocks that share a key within one event loop.

    Keys are acquired in a stable order so guards over overlapping key sets
    cannot deadlock each other. A key's lock is dropped as soon as no guard
    holds or waits for it.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: Counter[Hashable] = Counter()

    def _enter(self, key: Hashable) -> asyncio.Lock:
        self._users[key] += 1
        return self._locks.setdefault(key, asyncio.Lock())

    def _leave(self, key: Hashable) -> None:
        self._users[key] -= 1
        if self._users[key] <= 0:
            del self._users[key]
            self._locks.pop(key, None)

    @asynccontextmanager
    async def guard(self, *keys: Hashable) -> AsyncIterator[None]:
        ordered = sorted({key for key in keys if key is not None}, key=str)
        entered: list[Hashable] = []
        acquired: list[asyncio.Lock] = []
        try:
            for key in ordered:
                lock = self._enter(key)
                entered.append(key)
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in entered:
                self._leave(key)


def build_write_serializer(settings: Settings | None = None) -> WriteSerializer:
    settings = settings or get_settings()
    if settings.topic_serialize_subtree_writes:
        return SubtreeWriteSerializer()
    return NullWriteSerializer()
