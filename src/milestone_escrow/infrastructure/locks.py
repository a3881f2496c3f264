"""Per-escrow exclusive locks.

Each settlement holds its escrow's lock across validate -> ledger -> commit,
so two operations on the same escrow never interleave. Different escrows
take different locks and proceed in parallel.

Two backends:
    - LocalEscrowLocks: asyncio.Lock per escrow id, for a single process.
    - RedisEscrowLocks: redis-py distributed lock, for several workers.

Both raise OperationTimeoutError when the lock cannot be acquired within the
caller's remaining deadline.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Protocol

from redis.exceptions import LockError

from milestone_escrow.domain.exceptions import OperationTimeoutError
from milestone_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import uuid
    from collections.abc import AsyncIterator
    from contextlib import AbstractAsyncContextManager

    import redis.asyncio as aioredis

logger = get_logger(__name__)


class EscrowLocks(Protocol):
    def hold(self, escrow_id: uuid.UUID, timeout: float | None) -> AbstractAsyncContextManager[None]: ...


class LocalEscrowLocks:
    """In-process lock table keyed by escrow id."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, escrow_id: uuid.UUID, timeout: float | None) -> AsyncIterator[None]:
        key = str(escrow_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            except TimeoutError as err:
                logger.warning("lock.acquire_timeout", escrow_id=key, timeout=timeout)
                raise OperationTimeoutError(f"escrow lock {key}") from err
            try:
                yield
            finally:
                lock.release()
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)

    def is_locked(self, escrow_id: uuid.UUID) -> bool:
        lock = self._locks.get(str(escrow_id))
        return lock is not None and lock.locked()


class RedisEscrowLocks:
    """Distributed lock table backed by Redis.

    The lock TTL must exceed the longest settlement (ledger timeout plus
    store time), or a slow holder could lose the lock mid-settlement.
    """

    def __init__(self, redis: aioredis.Redis, ttl_seconds: int = 120) -> None:
        self._redis = redis
        self._ttl = ttl_seconds

    @asynccontextmanager
    async def hold(self, escrow_id: uuid.UUID, timeout: float | None) -> AsyncIterator[None]:
        key = f"escrow-lock:{escrow_id}"
        lock = self._redis.lock(key, timeout=self._ttl, blocking_timeout=timeout)
        acquired = await lock.acquire()
        if not acquired:
            logger.warning("lock.acquire_timeout", escrow_id=str(escrow_id), timeout=timeout)
            raise OperationTimeoutError(f"escrow lock {escrow_id}")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                logger.error("lock.lost_before_release", escrow_id=str(escrow_id), ttl=self._ttl)
