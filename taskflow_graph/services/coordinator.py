"""
Graph mutation coordinator: the single entry point for structural writes.

Handles:
- Task creation, re-parenting and deactivation (with child policy)
- Dependency add / bulk add / update / remove / bulk remove with validation
- Completion and progress updates, which change derived blocking state

Every write follows the same path: take the owner lock, open a transaction,
load the owner's graph snapshot, validate, write, compare-and-set the owner's
graph revision, commit, invalidate cached derived state, release the lock. A
rejected validation raises before anything is written. A revision that moved
under us is retried once against a fresh snapshot, then surfaces as
`ConflictError`.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional

import structlog

from taskflow_graph.core.cache import DerivedStateCache
from taskflow_graph.core.errors import (
    BlockedError,
    CacheError,
    ConflictError,
    DependencyError,
    GraphError,
    HierarchyError,
    NotFoundError,
    InvalidValueError,
    StaleGraphError,
    TaskLimitError,
)
from taskflow_graph.core.locks import OwnerLocks
from taskflow_graph.models.base import utcnow
from taskflow_graph.models.dependency import TaskDependency
from taskflow_graph.models.task import Task
from taskflow_graph.services.completion import require_active_edge, require_active_task
from taskflow_graph.services.dependencies import DependencyValidator
from taskflow_graph.services.graph import TaskGraph
from taskflow_graph.services.hierarchy import HierarchyValidator
from taskflow_graph.services.repository import NodeRepository, SqlGraphTransaction
from taskflow_shared.schemas.common import (
    ChildDeletionPolicy,
    DependencyType,
    ValidationResult,
)
from taskflow_shared.schemas.dependencies import (
    BulkDependencyItem,
    DependencyFailure,
    DependencyRemovalFailure,
)
from taskflow_shared.schemas.tasks import DeletionCheck

log = structlog.get_logger()


@dataclass
class Mutation:
    """What a transactional write returns: its result and the task ids whose derived state changed."""

    result: object
    affected: set[uuid.UUID] = field(default_factory=set)


@dataclass
class BulkAddResult:
    created: list[TaskDependency] = field(default_factory=list)
    failed: list[DependencyFailure] = field(default_factory=list)


@dataclass
class BulkRemoveResult:
    removed: list[uuid.UUID] = field(default_factory=list)
    failed: list[DependencyRemovalFailure] = field(default_factory=list)


@dataclass
class DeactivationResult:
    task: Task
    deactivated_task_ids: list[uuid.UUID]
    reparented_task_ids: list[uuid.UUID]
    deactivated_edge_count: int


class GraphMutationCoordinator:
    def __init__(
        self,
        repository: NodeRepository,
        locks: OwnerLocks,
        hierarchy: HierarchyValidator,
        dependencies: DependencyValidator,
        cache: Optional[DerivedStateCache] = None,
        child_deletion_policy: ChildDeletionPolicy = ChildDeletionPolicy.CASCADE,
        enforce_blocking_on_completion: bool = False,
        max_tasks_per_owner: Optional[int] = None,
    ):
        self._repository = repository
        self._locks = locks
        self._hierarchy = hierarchy
        self._dependencies = dependencies
        self._cache = cache
        self.child_deletion_policy = child_deletion_policy
        self.enforce_blocking_on_completion = enforce_blocking_on_completion
        self.max_tasks_per_owner = max_tasks_per_owner

    # ------------------------------------------------------------------
    # Dry-run validation
    # ------------------------------------------------------------------

    async def validate_reparent(
        self, owner_id: uuid.UUID, node_id: uuid.UUID, new_parent_id: Optional[uuid.UUID]
    ) -> ValidationResult:
        async def check(tx: SqlGraphTransaction) -> ValidationResult:
            graph = await tx.load_snapshot(owner_id)
            return self._hierarchy.can_set_parent(graph, node_id, new_parent_id)

        return await self._repository.run_in_transaction(check)

    async def validate_add_dependency(
        self, owner_id: uuid.UUID, dependent_id: uuid.UUID, prerequisite_id: uuid.UUID
    ) -> ValidationResult:
        async def check(tx: SqlGraphTransaction) -> ValidationResult:
            graph = await tx.load_snapshot(owner_id)
            return self._dependencies.can_add_dependency(graph, dependent_id, prerequisite_id)

        return await self._repository.run_in_transaction(check)

    async def check_deletion(self, owner_id: uuid.UUID, task_id: uuid.UUID) -> DeletionCheck:
        """Describe what deactivating `task_id` would do under the configured policy."""

        async def check(tx: SqlGraphTransaction) -> DeletionCheck:
            graph = await tx.load_snapshot(owner_id)
            if task_id not in graph:
                raise NotFoundError(f"Task {task_id} not found")
            children = graph.children(task_id)
            edges = len(graph.prerequisites_of.get(task_id, ())) + len(graph.dependents_of.get(task_id, ()))
            warnings: list[str] = []
            if children:
                if self.child_deletion_policy == ChildDeletionPolicy.CASCADE:
                    total = len(graph.descendants(task_id))
                    warnings.append(
                        f"This task has {len(children)} sub-task(s); deleting it also deletes "
                        f"{total} descendant task(s)."
                    )
                elif self.child_deletion_policy == ChildDeletionPolicy.ORPHAN:
                    warnings.append(f"{len(children)} sub-task(s) will become top-level tasks.")
                else:
                    warnings.append(f"{len(children)} sub-task(s) will move up to this task's parent.")
            if edges:
                warnings.append(f"{edges} dependency link(s) will be removed.")
            return DeletionCheck(
                task_id=task_id,
                sub_task_count=len(children),
                dependency_count=edges,
                warnings=warnings,
            )

        return await self._repository.run_in_transaction(check)

    # ------------------------------------------------------------------
    # Tasks and hierarchy
    # ------------------------------------------------------------------

    async def create_task(
        self, owner_id: uuid.UUID, title: str, description: Optional[str] = None
    ) -> Task:
        """Create a root task with no edges, within the owner's active task cap."""
        limit = self.max_tasks_per_owner

        async def body(tx: SqlGraphTransaction, graph: TaskGraph) -> Mutation:
            if limit is not None and len(graph) >= limit:
                raise TaskLimitError(f"Task limit of {limit} reached")
            task = Task(owner_id=owner_id, title=title, description=description)
            await tx.add(task)
            return Mutation(task)

        task = await self._mutate(owner_id, "task_created", body)
        log.info("graph.task_created", owner_id=str(owner_id), task_id=str(task.id))
        return task

    async def reparent(
        self, owner_id: uuid.UUID, node_id: uuid.UUID, new_parent_id: Optional[uuid.UUID]
    ) -> Task:
        """Move `node_id` under `new_parent_id`, or make it a root when `None`."""

        async def body(tx: SqlGraphTransaction, graph: TaskGraph) -> Mutation:
            verdict = self._hierarchy.can_set_parent(graph, node_id, new_parent_id)
            if not verdict.allowed:
                raise HierarchyError.from_result(verdict)
            task = await tx.get_task(node_id)
            task.parent_id = new_parent_id
            await tx.save(task)
            return Mutation(task, {node_id, *graph.descendants(node_id)})

        task = await self._mutate(owner_id, "reparent", body)
        log.info(
            "graph.reparented",
            owner_id=str(owner_id),
            task_id=str(node_id),
            parent_id=str(new_parent_id) if new_parent_id else None,
        )
        return task

    async def deactivate_task(self, owner_id: uuid.UUID, task_id: uuid.UUID) -> DeactivationResult:
        """Soft-delete a task, its edges and, depending on policy, its subtree."""
        policy = self.child_deletion_policy

        async def body(tx: SqlGraphTransaction, graph: TaskGraph) -> Mutation:
            if task_id not in graph:
                raise NotFoundError(f"Task {task_id} not found")

            if policy == ChildDeletionPolicy.CASCADE:
                removed = [task_id, *graph.descendants(task_id)]
                moved: list[uuid.UUID] = []
                new_parent = None
            else:
                removed = [task_id]
                moved = sorted(graph.children(task_id), key=str)
                new_parent = (
                    graph.parent_of.get(task_id)
                    if policy == ChildDeletionPolicy.REPARENT_TO_GRANDPARENT
                    else None
                )

            edges = await tx.deactivate_edges_touching(removed)
            await tx.deactivate_tasks(removed)
            for child_id in moved:
                child = await tx.get_task(child_id)
                child.parent_id = new_parent
                await tx.save(child)

            task = await tx.get_task(task_id)
            affected = set(removed)
            for removed_id in removed:
                affected.update(graph.dependents_of.get(removed_id, ()))
            for child_id in moved:
                affected.add(child_id)
                affected.update(graph.descendants(child_id))
            return Mutation(DeactivationResult(task, removed, moved, len(edges)), affected)

        result = await self._mutate(owner_id, "deactivate_task", body)
        log.info(
            "graph.task_deactivated",
            owner_id=str(owner_id),
            task_id=str(task_id),
            policy=policy.value,
            deactivated=len(result.deactivated_task_ids),
            reparented=len(result.reparented_task_ids),
            edges=result.deactivated_edge_count,
        )
        return result

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def set_completion(self, owner_id: uuid.UUID, task_id: uuid.UUID, completed: bool) -> Task:
        async def body(tx: SqlGraphTransaction, graph: TaskGraph) -> Mutation:
            task = require_active_task(await tx.get_task(task_id), owner_id, task_id)
            if completed:
                self._check_not_blocked(graph, task_id)
                task.is_completed = True
                task.completed_at = utcnow()
                task.completion_percentage = 100
            else:
                task.is_completed = False
                task.completed_at = None
            await tx.save(task)
            return Mutation(task, {task_id, *graph.dependents_of.get(task_id, ())})

        task = await self._mutate(owner_id, "set_completion", body)
        log.info("graph.completion_set", owner_id=str(owner_id), task_id=str(task_id), completed=completed)
        return task

    async def update_progress(self, owner_id: uuid.UUID, task_id: uuid.UUID, percentage: int) -> Task:
        """Store manual progress; 100 completes the task and 0 reopens it."""
        if not 0 <= percentage <= 100:
            raise InvalidValueError("completion percentage must be between 0 and 100")

        async def body(tx: SqlGraphTransaction, graph: TaskGraph) -> Mutation:
            task = require_active_task(await tx.get_task(task_id), owner_id, task_id)
            task.completion_percentage = percentage
            if percentage == 100:
                if not task.is_completed:
                    self._check_not_blocked(graph, task_id)
                    task.completed_at = utcnow()
                task.is_completed = True
            elif percentage == 0:
                task.is_completed = False
                task.completed_at = None
            await tx.save(task)
            return Mutation(task, {task_id, *graph.dependents_of.get(task_id, ())})

        task = await self._mutate(owner_id, "update_progress", body)
        log.info("graph.progress_updated", owner_id=str(owner_id), task_id=str(task_id), percentage=percentage)
        return task

    def _check_not_blocked(self, graph: TaskGraph, task_id: uuid.UUID) -> None:
        if not self.enforce_blocking_on_completion:
            return
        blockers = graph.blocking_prerequisites(task_id)
        if blockers:
            raise BlockedError(
                "Cannot complete: blocking prerequisites not complete: "
                + ", ".join(str(b) for b in blockers)
            )

    # ------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------

    async def add_dependency(
        self,
        owner_id: uuid.UUID,
        dependent_id: uuid.UUID,
        prerequisite_id: uuid.UUID,
        dependency_type: DependencyType = DependencyType.FINISH_TO_START,
        description: Optional[str] = None,
    ) -> TaskDependency:
        async def body(tx: SqlGraphTransaction, graph: TaskGraph) -> Mutation:
            verdict = self._dependencies.can_add_dependency(graph, dependent_id, prerequisite_id)
            if not verdict.allowed:
                raise DependencyError.from_result(verdict)
            edge = TaskDependency(
                owner_id=owner_id,
                dependent_task_id=dependent_id,
                prerequisite_task_id=prerequisite_id,
                dependency_type=dependency_type.value,
                description=description,
            )
            await tx.add(edge)
            return Mutation(edge, {dependent_id})

        edge = await self._mutate(owner_id, "add_dependency", body)
        log.info(
            "graph.dependency_added",
            owner_id=str(owner_id),
            dependency_id=str(edge.id),
            dependent_id=str(dependent_id),
            prerequisite_id=str(prerequisite_id),
            type=edge.dependency_type,
        )
        return edge

    async def add_dependencies(self, owner_id: uuid.UUID, items: Iterable[BulkDependencyItem]) -> BulkAddResult:
        """Add each edge independently; a rejected item does not stop the rest."""
        outcome = BulkAddResult()
        for item in items:
            try:
                edge = await self.add_dependency(
                    owner_id,
                    item.dependent_id,
                    item.prerequisite_id,
                    item.dependency_type,
                    item.description,
                )
            except GraphError as exc:
                log.warning(
                    "graph.bulk_dependency_rejected",
                    owner_id=str(owner_id),
                    dependent_id=str(item.dependent_id),
                    prerequisite_id=str(item.prerequisite_id),
                    reason=exc.kind.value,
                )
                outcome.failed.append(
                    DependencyFailure(
                        dependent_id=item.dependent_id,
                        prerequisite_id=item.prerequisite_id,
                        reason=exc.kind,
                        detail=exc.message,
                    )
                )
            else:
                outcome.created.append(edge)
        return outcome

    async def update_dependency(
        self,
        owner_id: uuid.UUID,
        dependency_id: uuid.UUID,
        dependency_type: Optional[DependencyType] = None,
        description: Optional[str] = None,
    ) -> TaskDependency:
        """Change an edge's type or description; endpoints are immutable."""

        async def body(tx: SqlGraphTransaction, graph: TaskGraph) -> Mutation:
            edge = require_active_edge(await tx.get_edge(dependency_id), owner_id, dependency_id)
            if dependency_type is not None:
                edge.dependency_type = dependency_type.value
            if description is not None:
                edge.description = description
            await tx.save(edge)
            return Mutation(edge, {edge.dependent_task_id})

        edge = await self._mutate(owner_id, "update_dependency", body)
        log.info("graph.dependency_updated", owner_id=str(owner_id), dependency_id=str(dependency_id))
        return edge

    async def remove_dependency(
        self, owner_id: uuid.UUID, dependent_id: uuid.UUID, prerequisite_id: uuid.UUID
    ) -> TaskDependency:
        async def body(tx: SqlGraphTransaction, graph: TaskGraph) -> Mutation:
            edge = await tx.find_active_edge(dependent_id, prerequisite_id)
            edge = require_active_edge(edge, owner_id, None)
            return await self._deactivate_edge(tx, edge)

        edge = await self._mutate(owner_id, "remove_dependency", body)
        log.info("graph.dependency_removed", owner_id=str(owner_id), dependency_id=str(edge.id))
        return edge

    async def remove_dependency_by_id(self, owner_id: uuid.UUID, dependency_id: uuid.UUID) -> TaskDependency:
        async def body(tx: SqlGraphTransaction, graph: TaskGraph) -> Mutation:
            edge = require_active_edge(await tx.get_edge(dependency_id), owner_id, dependency_id)
            return await self._deactivate_edge(tx, edge)

        edge = await self._mutate(owner_id, "remove_dependency", body)
        log.info("graph.dependency_removed", owner_id=str(owner_id), dependency_id=str(edge.id))
        return edge

    async def remove_dependencies(
        self, owner_id: uuid.UUID, dependency_ids: Iterable[uuid.UUID]
    ) -> BulkRemoveResult:
        """Remove each edge independently; a missing id does not stop the rest."""
        outcome = BulkRemoveResult()
        for dependency_id in dependency_ids:
            try:
                await self.remove_dependency_by_id(owner_id, dependency_id)
            except GraphError as exc:
                log.warning(
                    "graph.bulk_dependency_removal_rejected",
                    owner_id=str(owner_id),
                    dependency_id=str(dependency_id),
                    reason=exc.kind.value,
                )
                outcome.failed.append(
                    DependencyRemovalFailure(dependency_id=dependency_id, reason=exc.kind, detail=exc.message)
                )
            else:
                outcome.removed.append(dependency_id)
        return outcome

    @staticmethod
    async def _deactivate_edge(tx: SqlGraphTransaction, edge: TaskDependency) -> Mutation:
        edge.deactivate()
        await tx.save(edge)
        return Mutation(edge, {edge.dependent_task_id})

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def _mutate(
        self,
        owner_id: uuid.UUID,
        operation: str,
        body: Callable[[SqlGraphTransaction, TaskGraph], Awaitable[Mutation]],
    ) -> Any:
        async def attempt(tx: SqlGraphTransaction) -> Mutation:
            graph = await tx.load_snapshot(owner_id)
            mutation = await body(tx, graph)
            await tx.bump_revision(owner_id, graph.revision)
            return mutation

        async with self._locks.acquire(owner_id):
            try:
                mutation = await self._repository.run_in_transaction(attempt)
            except StaleGraphError:
                log.info("graph.conflict_retry", owner_id=str(owner_id), operation=operation)
                try:
                    mutation = await self._repository.run_in_transaction(attempt)
                except StaleGraphError as exc:
                    log.warning("graph.conflict", owner_id=str(owner_id), operation=operation)
                    raise ConflictError(
                        "The task graph changed concurrently; retry the operation"
                    ) from exc
            await self._invalidate(owner_id, mutation.affected)
            return mutation.result

    async def _invalidate(self, owner_id: uuid.UUID, task_ids: set[uuid.UUID]) -> None:
        # The write has committed by now, so a cache outage must not fail it.
        # Entries it could not drop expire with the cache TTL.
        if self._cache is None or not task_ids:
            return
        try:
            await self._cache.invalidate(owner_id, task_ids)
        except (CacheError, OSError) as exc:
            log.error(
                "graph.cache_invalidation_failed",
                owner_id=str(owner_id),
                task_ids=sorted(str(t) for t in task_ids),
                error=str(exc),
            )
