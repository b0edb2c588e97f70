"""
Derived-state cache for `is_blocked` and hierarchy depth.

Entries are keyed by (owner, task, field). Writers invalidate the affected task
ids before releasing the owner lock. Each invalidation also bumps an owner
epoch; a reader that computed its value under an older epoch does not store
it, so a read racing a write cannot re-populate a stale entry.

Backends raise `CacheError` when the store itself fails.
"""

from __future__ import annotations

import time
import uuid
from contextlib import contextmanager
from enum import Enum
from typing import Iterable, Iterator, Optional, Protocol

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from taskflow_graph.core.config import Settings
from taskflow_graph.core.errors import CacheError

REDIS_CACHE_KEY_PREFIX = "taskflow:derived:"

# KEYS: epoch key, entry hash. ARGV: expected epoch, field, value, ttl.
SET_IF_EPOCH_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current ~= tonumber(ARGV[1]) then
    return 0
end
redis.call('HSET', KEYS[2], ARGV[2], ARGV[3])
redis.call('EXPIRE', KEYS[2], ARGV[4])
return 1
"""

log = structlog.get_logger()


@contextmanager
def _redis_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except (RedisError, OSError) as exc:
        log.warning("cache.backend_error", operation=operation, error=str(exc))
        raise CacheError(f"Cache failure during {operation}") from exc


class CacheField(str, Enum):
    BLOCKED = "blocked"
    DEPTH = "depth"


class DerivedStateCache(Protocol):
    async def epoch(self, owner_id: uuid.UUID) -> int: ...

    async def get(self, owner_id: uuid.UUID, task_id: uuid.UUID, field: CacheField) -> Optional[int]: ...

    async def set(
        self, owner_id: uuid.UUID, task_id: uuid.UUID, field: CacheField, value: int, epoch: int
    ) -> None: ...

    async def invalidate(self, owner_id: uuid.UUID, task_ids: Iterable[uuid.UUID]) -> None: ...


class MemoryDerivedStateCache:
    """Process-local cache with TTL expiry and a bounded entry count.

    Expired entries are swept at most once per TTL interval from `set` and
    `invalidate`. Epochs come from one process-wide counter, so an owner whose
    entries are all gone can be forgotten: its epoch falls back to `_epoch_floor`,
    which is never lower than any epoch handed out for it before.
    """

    def __init__(self, ttl_seconds: float = 300.0, max_entries: int = 10_000):
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._entries: dict[tuple[uuid.UUID, uuid.UUID, CacheField], tuple[int, float]] = {}
        self._epochs: dict[uuid.UUID, int] = {}
        self._epoch_counter = 0
        self._epoch_floor = 0
        self._next_sweep = time.monotonic() + ttl_seconds

    def __len__(self) -> int:
        return len(self._entries)

    async def epoch(self, owner_id: uuid.UUID) -> int:
        return self._epochs.get(owner_id, self._epoch_floor)

    async def get(self, owner_id: uuid.UUID, task_id: uuid.UUID, field: CacheField) -> Optional[int]:
        key = (owner_id, task_id, field)
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= time.monotonic():
            del self._entries[key]
            return None
        return value

    async def set(
        self, owner_id: uuid.UUID, task_id: uuid.UUID, field: CacheField, value: int, epoch: int
    ) -> None:
        self._maybe_sweep()
        if await self.epoch(owner_id) != epoch:
            return
        key = (owner_id, task_id, field)
        self._entries.pop(key, None)
        while len(self._entries) >= self._max_entries:
            # Oldest insertion goes first.
            del self._entries[next(iter(self._entries))]
        self._entries[key] = (value, time.monotonic() + self._ttl)

    async def invalidate(self, owner_id: uuid.UUID, task_ids: Iterable[uuid.UUID]) -> None:
        for task_id in task_ids:
            for field in CacheField:
                self._entries.pop((owner_id, task_id, field), None)
        self._epoch_counter += 1
        self._epochs[owner_id] = self._epoch_counter
        self._maybe_sweep()

    def _maybe_sweep(self) -> None:
        now = time.monotonic()
        if now < self._next_sweep and len(self._entries) < self._max_entries:
            return
        self._next_sweep = now + self._ttl
        self.sweep(now)

    def sweep(self, now: Optional[float] = None) -> None:
        """Drop expired entries and the epochs of owners left with none."""
        now = time.monotonic() if now is None else now
        for key in [k for k, (_, expires_at) in self._entries.items() if expires_at <= now]:
            del self._entries[key]
        live_owners = {owner_id for owner_id, _, _ in self._entries}
        for owner_id in [o for o in self._epochs if o not in live_owners]:
            self._epoch_floor = max(self._epoch_floor, self._epochs.pop(owner_id))


class RedisDerivedStateCache:
    """Shared cache: one hash per task, one epoch counter per owner."""

    def __init__(self, client: redis.Redis, ttl_seconds: int = 300):
        self._redis = client
        self._ttl = ttl_seconds
        self._set_if_epoch = client.register_script(SET_IF_EPOCH_SCRIPT)

    @staticmethod
    def _key(owner_id: uuid.UUID, task_id: uuid.UUID) -> str:
        return f"{REDIS_CACHE_KEY_PREFIX}{owner_id}:{task_id}"

    @staticmethod
    def _epoch_key(owner_id: uuid.UUID) -> str:
        return f"{REDIS_CACHE_KEY_PREFIX}{owner_id}:epoch"

    async def epoch(self, owner_id: uuid.UUID) -> int:
        with _redis_errors("epoch"):
            raw = await self._redis.get(self._epoch_key(owner_id))
        return int(raw) if raw is not None else 0

    async def get(self, owner_id: uuid.UUID, task_id: uuid.UUID, field: CacheField) -> Optional[int]:
        with _redis_errors("get"):
            raw = await self._redis.hget(self._key(owner_id, task_id), field.value)
        return int(raw) if raw is not None else None

    async def set(
        self, owner_id: uuid.UUID, task_id: uuid.UUID, field: CacheField, value: int, epoch: int
    ) -> None:
        # Epoch check and write run as one script so an invalidation cannot
        # land between them.
        with _redis_errors("set"):
            await self._set_if_epoch(
                keys=[self._epoch_key(owner_id), self._key(owner_id, task_id)],
                args=[epoch, field.value, value, self._ttl],
            )

    async def invalidate(self, owner_id: uuid.UUID, task_ids: Iterable[uuid.UUID]) -> None:
        keys = [self._key(owner_id, t) for t in task_ids]
        with _redis_errors("invalidate"):
            async with self._redis.pipeline() as pipe:
                if keys:
                    pipe.delete(*keys)
                pipe.incr(self._epoch_key(owner_id))
                await pipe.execute()


def build_cache(
    settings: Settings, client: Optional[redis.Redis] = None
) -> Optional[DerivedStateCache]:
    if settings.cache_backend == "none":
        return None
    if settings.cache_backend == "redis":
        if client is None:
            raise ValueError("Redis cache backend requires a Redis client")
        return RedisDerivedStateCache(client, ttl_seconds=settings.cache_ttl_seconds)
    return MemoryDerivedStateCache(ttl_seconds=settings.cache_ttl_seconds)
