"""
Dependency endpoints.

Task-scoped routes live under /tasks/{taskId}, where {taskId} is the dependent
task. Edge-scoped routes (listing, lookup, update and delete by id, bulk add and
bulk delete) live under /dependencies.
"""

from __future__ import annotations

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response

from taskflow_graph.core.owner import get_owner_id
from taskflow_graph.core.services import GraphServices, get_coordinator, get_graph_services
from taskflow_graph.models.dependency import TaskDependency
from taskflow_graph.services.completion import require_active_edge
from taskflow_graph.services.coordinator import GraphMutationCoordinator
from taskflow_shared.schemas.common import ValidationResult
from taskflow_shared.schemas.dependencies import (
    BulkDependencyAdd,
    BulkDependencyRemove,
    BulkDependencyRemoveResult,
    BulkDependencyResult,
    DependencyAdd,
    DependencyPage,
    DependencyRead,
    DependencyUpdate,
)

router_scoped = APIRouter()
router_global = APIRouter()


def to_dependency_read(edge: TaskDependency) -> DependencyRead:
    return DependencyRead.model_validate(edge, from_attributes=True)


# ---------------------------------------------------------------------------
# Task-scoped
# ---------------------------------------------------------------------------


@router_scoped.get("/{task_id}/dependencies", response_model=List[DependencyRead])
async def list_dependencies_endpoint(
    task_id: uuid.UUID,
    owner_id: uuid.UUID = Depends(get_owner_id),
    services: GraphServices = Depends(get_graph_services),
):
    """Active edges where this task is the dependent (its prerequisites)."""
    await services.resolver.get_task(owner_id, task_id)
    edges = await services.repository.get_active_edges_where_dependent(task_id)
    return [to_dependency_read(e) for e in edges if e.owner_id == owner_id]


@router_scoped.get("/{task_id}/dependents", response_model=List[DependencyRead])
async def list_dependents_endpoint(
    task_id: uuid.UUID,
    owner_id: uuid.UUID = Depends(get_owner_id),
    services: GraphServices = Depends(get_graph_services),
):
    """Active edges where this task is the prerequisite."""
    await services.resolver.get_task(owner_id, task_id)
    edges = await services.repository.get_active_edges_where_prerequisite(task_id)
    return [to_dependency_read(e) for e in edges if e.owner_id == owner_id]


@router_scoped.post("/{task_id}/dependencies", response_model=DependencyRead, status_code=201)
async def add_dependency_endpoint(
    task_id: uuid.UUID,
    body: DependencyAdd,
    owner_id: uuid.UUID = Depends(get_owner_id),
    coordinator: GraphMutationCoordinator = Depends(get_coordinator),
):
    """Make this task depend on `prerequisite_id`. Cycles and over-long chains are rejected."""
    edge = await coordinator.add_dependency(
        owner_id, task_id, body.prerequisite_id, body.dependency_type, body.description
    )
    return to_dependency_read(edge)


@router_scoped.post("/{task_id}/dependencies/validate", response_model=ValidationResult)
async def validate_dependency_endpoint(
    task_id: uuid.UUID,
    body: DependencyAdd,
    owner_id: uuid.UUID = Depends(get_owner_id),
    coordinator: GraphMutationCoordinator = Depends(get_coordinator),
):
    return await coordinator.validate_add_dependency(owner_id, task_id, body.prerequisite_id)


@router_scoped.delete("/{task_id}/dependencies/{prerequisite_id}", status_code=204)
async def remove_dependency_endpoint(
    task_id: uuid.UUID,
    prerequisite_id: uuid.UUID,
    owner_id: uuid.UUID = Depends(get_owner_id),
    coordinator: GraphMutationCoordinator = Depends(get_coordinator),
):
    await coordinator.remove_dependency(owner_id, task_id, prerequisite_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Edge-scoped
# ---------------------------------------------------------------------------


@router_global.get("/", response_model=DependencyPage)
async def list_owner_dependencies_endpoint(
    dependent_id: Optional[uuid.UUID] = Query(None),
    prerequisite_id: Optional[uuid.UUID] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(25, ge=1, le=100),
    owner_id: uuid.UUID = Depends(get_owner_id),
    services: GraphServices = Depends(get_graph_services),
):
    """All of the owner's active edges, optionally filtered by either endpoint."""
    edges, total = await services.repository.list_edges(
        owner_id, dependent_id, prerequisite_id, page=page, per_page=per_page
    )
    return DependencyPage(
        items=[to_dependency_read(e) for e in edges],
        page=page,
        per_page=per_page,
        total=total,
    )


@router_global.get("/{dependency_id}", response_model=DependencyRead)
async def get_dependency_endpoint(
    dependency_id: uuid.UUID,
    owner_id: uuid.UUID = Depends(get_owner_id),
    services: GraphServices = Depends(get_graph_services),
):
    edge = await services.repository.get_edge(dependency_id)
    return to_dependency_read(require_active_edge(edge, owner_id, dependency_id))


@router_global.post("/bulk", response_model=BulkDependencyResult)
async def bulk_add_dependencies_endpoint(
    body: BulkDependencyAdd,
    owner_id: uuid.UUID = Depends(get_owner_id),
    coordinator: GraphMutationCoordinator = Depends(get_coordinator),
):
    """Add many edges; each item is validated and committed on its own."""
    outcome = await coordinator.add_dependencies(owner_id, body.items)
    return BulkDependencyResult(
        created=[to_dependency_read(e) for e in outcome.created],
        failed=outcome.failed,
    )


@router_global.patch("/{dependency_id}", response_model=DependencyRead)
async def update_dependency_endpoint(
    dependency_id: uuid.UUID,
    body: DependencyUpdate,
    owner_id: uuid.UUID = Depends(get_owner_id),
    coordinator: GraphMutationCoordinator = Depends(get_coordinator),
):
    edge = await coordinator.update_dependency(
        owner_id, dependency_id, body.dependency_type, body.description
    )
    return to_dependency_read(edge)


@router_global.delete("/{dependency_id}", status_code=204)
async def delete_dependency_endpoint(
    dependency_id: uuid.UUID,
    owner_id: uuid.UUID = Depends(get_owner_id),
    coordinator: GraphMutationCoordinator = Depends(get_coordinator),
):
    await coordinator.remove_dependency_by_id(owner_id, dependency_id)
    return Response(status_code=204)


@router_global.post("/bulk-delete", response_model=BulkDependencyRemoveResult)
async def bulk_delete_dependencies_endpoint(
    body: BulkDependencyRemove,
    owner_id: uuid.UUID = Depends(get_owner_id),
    coordinator: GraphMutationCoordinator = Depends(get_coordinator),
):
    """Remove many edges by id; each removal commits on its own."""
    outcome = await coordinator.remove_dependencies(owner_id, body.dependency_ids)
    return BulkDependencyRemoveResult(removed=outcome.removed, failed=outcome.failed)
