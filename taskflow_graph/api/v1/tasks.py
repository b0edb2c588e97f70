"""
Task endpoints: creation, hierarchy, completion and deletion.

- Hierarchy: PUT /{taskId}/parent moves or detaches a task; depth and cycles
  are validated by the coordinator.
- Status: blocking state, depth and effective completion are computed on read.
- Deletion: soft delete, with sub-tasks handled by the configured policy.
"""

from __future__ import annotations

import uuid
from typing import List

from fastapi import APIRouter, Depends

from taskflow_graph.core.owner import get_owner_id
from taskflow_graph.core.services import GraphServices, get_coordinator, get_graph_services, get_resolver
from taskflow_graph.models.task import Task
from taskflow_graph.services.completion import CompletionStateResolver
from taskflow_graph.services.coordinator import GraphMutationCoordinator
from taskflow_shared.schemas.common import ValidationResult
from taskflow_shared.schemas.tasks import (
    CompletionUpdate,
    DeletionCheck,
    DeletionResult,
    ParentUpdate,
    ProgressUpdate,
    TaskCreate,
    TaskRead,
    TaskStatusRead,
)

router = APIRouter()


def to_task_read(task: Task) -> TaskRead:
    return TaskRead.model_validate(task, from_attributes=True)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@router.post("/", response_model=TaskRead, status_code=201)
async def create_task_endpoint(
    task_in: TaskCreate,
    owner_id: uuid.UUID = Depends(get_owner_id),
    coordinator: GraphMutationCoordinator = Depends(get_coordinator),
):
    """Create a top-level task. Use PUT /{taskId}/parent to nest it."""
    task = await coordinator.create_task(owner_id, task_in.title, task_in.description)
    return to_task_read(task)


@router.get("/{task_id}", response_model=TaskRead)
async def get_task_endpoint(
    task_id: uuid.UUID,
    owner_id: uuid.UUID = Depends(get_owner_id),
    resolver: CompletionStateResolver = Depends(get_resolver),
):
    return to_task_read(await resolver.get_task(owner_id, task_id))


@router.get("/{task_id}/status", response_model=TaskStatusRead)
async def get_task_status_endpoint(
    task_id: uuid.UUID,
    owner_id: uuid.UUID = Depends(get_owner_id),
    resolver: CompletionStateResolver = Depends(get_resolver),
):
    """Derived state: blocking prerequisites, depth and effective completion."""
    return await resolver.get_status(owner_id, task_id)


@router.get("/{task_id}/children", response_model=List[TaskRead])
async def list_children_endpoint(
    task_id: uuid.UUID,
    owner_id: uuid.UUID = Depends(get_owner_id),
    services: GraphServices = Depends(get_graph_services),
):
    await services.resolver.get_task(owner_id, task_id)
    children = await services.repository.get_children(task_id)
    return [to_task_read(c) for c in children if c.owner_id == owner_id]


# ---------------------------------------------------------------------------
# Hierarchy
# ---------------------------------------------------------------------------


@router.put("/{task_id}/parent", response_model=TaskRead)
async def set_parent_endpoint(
    task_id: uuid.UUID,
    body: ParentUpdate,
    owner_id: uuid.UUID = Depends(get_owner_id),
    coordinator: GraphMutationCoordinator = Depends(get_coordinator),
):
    """Move a task under a new parent, or detach it with `parent_id: null`."""
    task = await coordinator.reparent(owner_id, task_id, body.parent_id)
    return to_task_read(task)


@router.post("/{task_id}/parent/validate", response_model=ValidationResult)
async def validate_parent_endpoint(
    task_id: uuid.UUID,
    body: ParentUpdate,
    owner_id: uuid.UUID = Depends(get_owner_id),
    coordinator: GraphMutationCoordinator = Depends(get_coordinator),
):
    return await coordinator.validate_reparent(owner_id, task_id, body.parent_id)


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------


@router.put("/{task_id}/completion", response_model=TaskRead)
async def set_completion_endpoint(
    task_id: uuid.UUID,
    body: CompletionUpdate,
    owner_id: uuid.UUID = Depends(get_owner_id),
    coordinator: GraphMutationCoordinator = Depends(get_coordinator),
):
    task = await coordinator.set_completion(owner_id, task_id, body.is_completed)
    return to_task_read(task)


@router.put("/{task_id}/progress", response_model=TaskRead)
async def update_progress_endpoint(
    task_id: uuid.UUID,
    body: ProgressUpdate,
    owner_id: uuid.UUID = Depends(get_owner_id),
    coordinator: GraphMutationCoordinator = Depends(get_coordinator),
):
    task = await coordinator.update_progress(owner_id, task_id, body.completion_percentage)
    return to_task_read(task)


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------


@router.get("/{task_id}/deletion-check", response_model=DeletionCheck)
async def deletion_check_endpoint(
    task_id: uuid.UUID,
    owner_id: uuid.UUID = Depends(get_owner_id),
    coordinator: GraphMutationCoordinator = Depends(get_coordinator),
):
    """Preview what deleting the task would do to its sub-tasks and links."""
    return await coordinator.check_deletion(owner_id, task_id)


@router.delete("/{task_id}", response_model=DeletionResult)
async def delete_task_endpoint(
    task_id: uuid.UUID,
    owner_id: uuid.UUID = Depends(get_owner_id),
    coordinator: GraphMutationCoordinator = Depends(get_coordinator),
):
    result = await coordinator.deactivate_task(owner_id, task_id)
    return DeletionResult(
        task_id=task_id,
        deactivated_task_ids=result.deactivated_task_ids,
        reparented_task_ids=result.reparented_task_ids,
        removed_dependency_count=result.deactivated_edge_count,
    )
