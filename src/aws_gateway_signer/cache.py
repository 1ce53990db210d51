"""
Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
SPDX-License-Identifier: Apache-2.0
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _log_failure(task: asyncio.Future) -> None:
    # Every waiter may have been cancelled, leaving nobody to retrieve this.
    if not task.cancelled() and (error := task.exception()) is not None:
        logger.debug("Producer failed: %r", error)


@dataclass
class _Entry(Generic[T]):
    value: T
    deadline: float | None
    expires_at: datetime | None


class SingleFlightCache(Generic[T]):
    """Async cache that runs at most one producer per key at a time.

    Callers that miss while a producer is already running for the same key
    wait on that producer's result instead of starting their own. The producer
    runs in its own task, so cancelling a waiter never cancels the fetch other
    waiters depend on. Failures reach every waiter and are not cached.

    An entry is evicted when its ``ttl`` runs out or, when ``expiry`` is given,
    ``refresh_margin`` before the absolute expiry it reports for the value,
    whichever comes first.
    """

    def __init__(
        self,
        *,
        ttl: float | None = None,
        expiry: Callable[[T], datetime | None] | None = None,
        refresh_margin: timedelta = timedelta(0),
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self._ttl = ttl
        self._expiry = expiry
        self._refresh_margin = refresh_margin
        self._clock = clock
        self._now = now
        self._entries: dict[Hashable, _Entry[T]] = {}
        self._in_flight: dict[Hashable, asyncio.Task[T]] = {}

    async def get(
        self,
        key: Hashable,
        producer: Callable[[], Awaitable[T]],
        *,
        ttl: float | None = None,
    ) -> T:
        """Return the cached value for ``key``, producing it on a miss.

        :param key: Cache key.
        :param producer: Called without arguments on a miss.
        :param ttl: Lifetime in seconds for a value produced by this call,
            overriding the cache default.
        """
        entry = self._entries.get(key)
        if entry is not None:
            if self._is_fresh(entry):
                return entry.value
            logger.debug("Cache entry %r is stale, refreshing", key)
            del self._entries[key]

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._produce(key, producer, ttl))
            task.add_done_callback(_log_failure)
            self._in_flight[key] = task
        return await asyncio.shield(task)

    def peek(self, key: Hashable) -> T | None:
        """Return a fresh cached value without producing one."""
        entry = self._entries.get(key)
        if entry is None or not self._is_fresh(entry):
            return None
        return entry.value

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    async def _produce(
        self, key: Hashable, producer: Callable[[], Awaitable[T]], ttl: float | None
    ) -> T:
        try:
            value = await producer()
        finally:
            self._in_flight.pop(key, None)
        self._entries[key] = self._new_entry(value, ttl)
        return value

    def _new_entry(self, value: T, ttl: float | None) -> _Entry[T]:
        ttl = self._ttl if ttl is None else ttl
        deadline = None if ttl is None else self._clock() + ttl
        expires_at = self._expiry(value) if self._expiry is not None else None
        return _Entry(value=value, deadline=deadline, expires_at=expires_at)

    def _is_fresh(self, entry: _Entry[T]) -> bool:
        if entry.deadline is not None and self._clock() >= entry.deadline:
            return False
        if entry.expires_at is not None:
            return self._now() + self._refresh_margin < entry.expires_at
        return True
