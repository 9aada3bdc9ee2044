"""Distributed mutual exclusion keyed by arbitrary strings.

Locks are rows in the shared ``DraftStore``: acquiring one is a conditional
upsert that succeeds only when no unexpired row exists for the key, so the
same lock holds across event-loop tasks, worker processes and restarts.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

from draft_store import DraftStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_LOCK_DURATION_SECONDS = 30.0
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_MAX_RETRIES = 10


class LockError(Exception):
    pass


class LockContention(LockError):
    """Another holder owns an unexpired lock on the key."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Lock is held: {key}")
        self.key = key


class LockAcquisitionTimeout(LockError):
    def __init__(self, key: str, attempts: int) -> None:
        super().__init__(f"Failed to acquire lock {key} after {attempts} attempts")
        self.key = key
        self.attempts = attempts


def sequence_lock_key(item_id: str) -> str:
    return f"sequential-number-{item_id}"


class LockManager:
    def __init__(
        self,
        store: DraftStore,
        duration: float = DEFAULT_LOCK_DURATION_SECONDS,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_jitter: float = 0.0,
        retry_backoff: float = 1.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.duration = float(duration)
        self.retry_delay = max(0.0, float(retry_delay))
        self.max_retries = max(1, int(max_retries))
        self.retry_jitter = max(0.0, float(retry_jitter))
        self.retry_backoff = max(1.0, float(retry_backoff))
        self.clock = clock

    async def acquire(self, key: str) -> str:
        """Take the lock once and return the owner token.

        Raises ``LockContention`` if an unexpired lock exists; an expired
        lock counts as absent.
        """
        token = uuid.uuid4().hex
        acquired = await asyncio.to_thread(self.store.try_lock, key, token, self.clock(), self.duration)
        if not acquired:
            raise LockContention(key)
        logger.debug("Acquired lock %s (%s)", key, token)
        return token

    async def release(self, key: str, token: Optional[str] = None) -> None:
        """Clear the lock; safe to call when nothing is held."""
        released = await asyncio.to_thread(self.store.unlock, key, token)
        if released:
            logger.debug("Released lock %s", key)
        elif token is not None:
            logger.warning("Lock %s was no longer held by %s at release (expired?)", key, token)

    def _retry_delay(self, attempt: int) -> float:
        delay = self.retry_delay * (self.retry_backoff ** (attempt - 1))
        if self.retry_jitter:
            delay += random.uniform(0, self.retry_jitter)
        return delay

    async def acquire_with_retry(self, key: str) -> str:
        """Acquire ``key``, sleeping between attempts while it is contended."""
        for attempt in range(1, self.max_retries + 1):
            try:
                return await self.acquire(key)
            except LockContention:
                if attempt == self.max_retries:
                    break
                delay = self._retry_delay(attempt)
                logger.debug("Lock %s busy (attempt %d/%d); retrying in %.2fs", key, attempt, self.max_retries, delay)
                await asyncio.sleep(delay)
        logger.error("Giving up on lock %s after %d attempts", key, self.max_retries)
        raise LockAcquisitionTimeout(key, self.max_retries)

    @asynccontextmanager
    async def locked(self, key: str, wait: bool = True) -> AsyncIterator[str]:
        """Hold ``key`` for the body of an ``async with`` block.

        ``wait=False`` makes a single attempt and lets ``LockContention``
        propagate. The lock is released on every exit path.
        """
        token = await (self.acquire_with_retry(key) if wait else self.acquire(key))
        try:
            yield token
        finally:
            await self.release(key, token)

    async def with_lock(self, key: str, fn: Callable[[], Awaitable[T]], wait: bool = False) -> T:
        async with self.locked(key, wait=wait):
            return await fn()

    async def is_locked(self, key: str) -> bool:
        row: Optional[Any] = await asyncio.to_thread(self.store.get_lock, key)
        return bool(row) and float(row.get("expiresAt") or 0) > self.clock()
