"""Keyed storage contract for requests, intents and callback records.

The pipeline keeps its mutable shared state in associative stores with
per-key atomic operations rather than in one lockable monolith, so traffic on
unrelated generation ids never contends.

Two layers of atomicity are offered:

- :meth:`KeyedStore.get`, :meth:`KeyedStore.put` and :meth:`KeyedStore.upsert`
  are atomic single-key operations.
- :meth:`KeyedStore.locked` hands out a per-key lock for read-modify-write
  sequences that have to span awaits (e.g. a provider call made while a
  request is in ``dispatching``).  Holders use ``get``/``put`` inside it;
  ``upsert`` acquires the same lock and must not be called while holding it.

:class:`InMemoryKeyedStore` is the in-process backing.  Any external
key-value or relational store that offers per-key atomic upsert and point
lookup can implement the same interface.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime, timedelta
from typing import Generic, TypeVar

from genr8.core.models import Clock, utc_now

logger = logging.getLogger(__name__)

V = TypeVar("V")


class KeyedStore(ABC, Generic[V]):
    """Abstract associative store keyed by string."""

    @abstractmethod
    async def get(self, key: str) -> V | None:
        """Return the value for *key*, or ``None`` if absent or expired."""

    @abstractmethod
    async def put(self, key: str, value: V) -> V:
        """Insert or replace the value for *key*."""

    @abstractmethod
    async def upsert(self, key: str, update: Callable[[V | None], V]) -> V:
        """Atomically replace the value for *key* with ``update(current)``.

        Concurrent upserts of the same key are serialized; upserts of
        different keys run independently.
        """

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove *key*.  Returns ``True`` if something was removed."""

    @abstractmethod
    def locked(self, key: str) -> AbstractAsyncContextManager[None]:
        """Async context manager holding the per-key lock for *key*."""


class InMemoryKeyedStore(KeyedStore[V]):
    """In-process :class:`KeyedStore` with reference-counted per-key locks.

    Args:
        ttl_seconds: Optional time-to-live.  Entries older than this (since
            their last write) read as absent and are dropped.
        clock: Time source, injectable for tests.
    """

    def __init__(self, ttl_seconds: float | None = None, clock: Clock = utc_now) -> None:
        self._items: dict[str, tuple[V, datetime]] = {}
        # key -> (lock, holders + waiters); dropped when the count reaches zero
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}
        self._ttl = timedelta(seconds=ttl_seconds) if ttl_seconds is not None else None
        self._clock = clock

    def _acquire_ref(self, key: str) -> asyncio.Lock:
        # No await between lookup and insert, so this is atomic on the loop.
        lock, refs = self._locks.get(key) or (asyncio.Lock(), 0)
        self._locks[key] = (lock, refs + 1)
        return lock

    def _release_ref(self, key: str) -> None:
        lock, refs = self._locks[key]
        if refs == 1:
            del self._locks[key]
        else:
            self._locks[key] = (lock, refs - 1)

    def _is_expired(self, stored_at: datetime) -> bool:
        return self._ttl is not None and self._clock() - stored_at > self._ttl

    def _read(self, key: str) -> V | None:
        item = self._items.get(key)
        if item is None:
            return None
        value, stored_at = item
        if self._is_expired(stored_at):
            logger.debug(f"Entry {key!r} expired")
            del self._items[key]
            return None
        return value

    async def get(self, key: str) -> V | None:
        return self._read(key)

    async def put(self, key: str, value: V) -> V:
        self._items[key] = (value, self._clock())
        return value

    async def upsert(self, key: str, update: Callable[[V | None], V]) -> V:
        async with self.locked(key):
            value = update(self._read(key))
            self._items[key] = (value, self._clock())
            return value

    async def delete(self, key: str) -> bool:
        return self._items.pop(key, None) is not None

    @asynccontextmanager
    async def locked(self, key: str) -> AsyncIterator[None]:
        lock = self._acquire_ref(key)
        try:
            async with lock:
                yield
        finally:
            self._release_ref(key)

    async def values(self) -> list[V]:
        """All live values, expired entries excluded."""
        return [value for key in list(self._items) if (value := self._read(key)) is not None]

    async def purge_expired(self) -> int:
        """Drop every expired entry.  Returns the number removed."""
        expired = [key for key, (_, stored_at) in self._items.items() if self._is_expired(stored_at)]
        for key in expired:
            del self._items[key]
        return len(expired)

    def lock_count(self) -> int:
        """Number of keys currently holding or awaiting a lock."""
        return len(self._locks)

    def __len__(self) -> int:
        return len(self._items)
