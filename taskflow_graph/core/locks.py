"""
Owner-scoped mutation locks.

Every structural write to an owner's graph runs under that owner's lock, so two
writers for the same owner never validate against each other's intermediate
state. Owners never share nodes, so writers for different owners run in
parallel.

- `OwnerLockManager`: in-process `asyncio.Lock` per owner (single worker).
- `RedisOwnerLockManager`: Redis lock per owner (multiple workers/hosts).
"""

from __future__ import annotations

import asyncio
import uuid
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import AsyncIterator, Optional, Protocol

import redis.asyncio as redis
import structlog
from redis.exceptions import LockError

from taskflow_graph.core.config import Settings
from taskflow_graph.core.errors import ConflictError

log = structlog.get_logger()

REDIS_LOCK_KEY_PREFIX = "taskflow:graph-lock:"


class OwnerLocks(Protocol):
    def acquire(self, owner_id: uuid.UUID) -> AbstractAsyncContextManager[None]: ...


class OwnerLockManager:
    """In-process per-owner locks; idle locks are dropped once nobody waits on them."""

    def __init__(self, timeout: Optional[float] = None):
        self._timeout = timeout
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}
        self._users: dict[uuid.UUID, int] = {}

    def is_locked(self, owner_id: uuid.UUID) -> bool:
        lock = self._locks.get(owner_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def acquire(self, owner_id: uuid.UUID) -> AsyncIterator[None]:
        lock = self._locks.setdefault(owner_id, asyncio.Lock())
        self._users[owner_id] = self._users.get(owner_id, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self._timeout)
            except asyncio.TimeoutError:
                log.warning("graph.lock_timeout", owner_id=str(owner_id), timeout=self._timeout)
                raise ConflictError("Timed out waiting for the owner's graph lock")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[owner_id] -= 1
            if not self._users[owner_id]:
                del self._users[owner_id]
                del self._locks[owner_id]


class RedisOwnerLockManager:
    """Per-owner locks shared by every worker that talks to the same Redis."""

    def __init__(
        self,
        client: redis.Redis,
        lease_seconds: float = 30.0,
        timeout: Optional[float] = None,
    ):
        self._redis = client
        self._lease = lease_seconds
        self._timeout = timeout

    @asynccontextmanager
    async def acquire(self, owner_id: uuid.UUID) -> AsyncIterator[None]:
        lock = self._redis.lock(
            f"{REDIS_LOCK_KEY_PREFIX}{owner_id}",
            timeout=self._lease,
            blocking_timeout=self._timeout,
        )
        if not await lock.acquire():
            log.warning("graph.lock_timeout", owner_id=str(owner_id), timeout=self._timeout)
            raise ConflictError("Timed out waiting for the owner's graph lock")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # Lease expired mid-write; the revision check still guards the commit.
                log.warning("graph.lock_lease_expired", owner_id=str(owner_id), lease=self._lease)


def build_lock_manager(
    settings: Settings, client: Optional[redis.Redis] = None
) -> OwnerLockManager | RedisOwnerLockManager:
    if settings.lock_backend == "redis":
        if client is None:
            raise ValueError("Redis lock backend requires a Redis client")
        return RedisOwnerLockManager(
            client,
            lease_seconds=max(settings.lock_timeout_seconds * 3, 30.0),
            timeout=settings.lock_timeout_seconds,
        )
    return OwnerLockManager(timeout=settings.lock_timeout_seconds)
