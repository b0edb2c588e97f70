"""
Completion state resolver: derived, read-time task state.

Nothing here takes the owner lock. Whole-graph answers come from one
`load_snapshot`, so a read racing a write sees the graph either before or after
that write. `is_blocked` and depth may be served from the derived-state cache,
which writers invalidate through the coordinator; a failing cache is bypassed.
"""

from __future__ import annotations

import uuid
from typing import Optional

import structlog

from taskflow_graph.core.cache import CacheField, DerivedStateCache
from taskflow_graph.core.errors import CacheError, NotFoundError
from taskflow_graph.models.dependency import TaskDependency
from taskflow_graph.models.task import Task
from taskflow_graph.services.graph import TaskGraph
from taskflow_graph.services.repository import NodeRepository
from taskflow_shared.schemas.tasks import TaskStatusRead

log = structlog.get_logger()


def require_active_task(task: Optional[Task], owner_id: uuid.UUID, task_id: uuid.UUID) -> Task:
    if task is None or task.owner_id != owner_id or not task.is_active:
        raise NotFoundError(f"Task {task_id} not found")
    return task


def require_active_edge(
    edge: Optional[TaskDependency], owner_id: uuid.UUID, dependency_id: Optional[uuid.UUID]
) -> TaskDependency:
    if edge is None or edge.owner_id != owner_id or not edge.is_active:
        raise NotFoundError(f"Dependency {dependency_id} not found" if dependency_id else "Dependency not found")
    return edge


class CompletionStateResolver:
    def __init__(
        self,
        repository: NodeRepository,
        max_depth: int = 5,
        cache: Optional[DerivedStateCache] = None,
    ):
        self._repository = repository
        self._max_depth = max_depth
        self._cache = cache

    async def get_task(self, owner_id: uuid.UUID, task_id: uuid.UUID) -> Task:
        return require_active_task(await self._repository.get_node(task_id), owner_id, task_id)

    async def blocking_prerequisites(self, owner_id: uuid.UUID, task_id: uuid.UUID) -> list[uuid.UUID]:
        """Active, incomplete prerequisites linked to `task_id` by a gating edge, sorted by id."""
        graph = await self._snapshot(owner_id, task_id)
        return graph.blocking_prerequisites(task_id)

    async def is_blocked(self, owner_id: uuid.UUID, task_id: uuid.UUID) -> bool:
        cached, epoch = await self._cached(owner_id, task_id, CacheField.BLOCKED)
        if cached is not None:
            return bool(cached)
        blocked = bool(await self.blocking_prerequisites(owner_id, task_id))
        await self._store(owner_id, task_id, CacheField.BLOCKED, int(blocked), epoch)
        return blocked

    async def can_start(self, owner_id: uuid.UUID, task_id: uuid.UUID) -> bool:
        return not await self.is_blocked(owner_id, task_id)

    async def compute_depth(self, owner_id: uuid.UUID, task_id: uuid.UUID) -> int:
        """Edges from the task up to its root; the walk stops one past the depth limit."""
        cached, epoch = await self._cached(owner_id, task_id, CacheField.DEPTH)
        if cached is not None:
            return cached
        graph = await self._snapshot(owner_id, task_id)
        depth = graph.depth(task_id, self._max_depth)
        await self._store(owner_id, task_id, CacheField.DEPTH, depth, epoch)
        return depth

    async def compute_effective_completion_percentage(self, owner_id: uuid.UUID, task_id: uuid.UUID) -> int:
        graph = await self._snapshot(owner_id, task_id)
        return graph.effective_completion_percentage(task_id)

    async def get_status(self, owner_id: uuid.UUID, task_id: uuid.UUID) -> TaskStatusRead:
        """Every derived field for one task, answered from a single snapshot."""
        graph = await self._snapshot(owner_id, task_id)
        blockers = graph.blocking_prerequisites(task_id)
        return TaskStatusRead(
            task_id=task_id,
            is_blocked=bool(blockers),
            can_start=not blockers,
            depth=graph.depth(task_id, self._max_depth),
            effective_completion_percentage=graph.effective_completion_percentage(task_id),
            blocking_prerequisite_ids=blockers,
        )

    async def _snapshot(self, owner_id: uuid.UUID, task_id: uuid.UUID) -> TaskGraph:
        graph = await self._repository.load_snapshot(owner_id)
        if task_id not in graph:
            raise NotFoundError(f"Task {task_id} not found")
        return graph

    async def _cached(
        self, owner_id: uuid.UUID, task_id: uuid.UUID, field: CacheField
    ) -> tuple[Optional[int], Optional[int]]:
        """Cached value and the epoch it was read under; `None` epoch means don't store."""
        if self._cache is None:
            return None, None
        try:
            epoch = await self._cache.epoch(owner_id)
            return await self._cache.get(owner_id, task_id, field), epoch
        except (CacheError, OSError) as exc:
            log.warning("graph.cache_read_failed", owner_id=str(owner_id), task_id=str(task_id), error=str(exc))
            return None, None

    async def _store(
        self, owner_id: uuid.UUID, task_id: uuid.UUID, field: CacheField, value: int, epoch: Optional[int]
    ) -> None:
        if self._cache is None or epoch is None:
            return
        try:
            await self._cache.set(owner_id, task_id, field, value, epoch)
        except (CacheError, OSError) as exc:
            log.warning("graph.cache_write_failed", owner_id=str(owner_id), task_id=str(task_id), error=str(exc))
