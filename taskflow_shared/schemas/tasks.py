"""Task-related Pydantic schemas for shared use across server and frontend codegen."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Task CRUD
# ---------------------------------------------------------------------------

class TaskCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None


class TaskRead(BaseModel):
    id: UUID
    owner_id: UUID
    parent_id: Optional[UUID] = None
    title: str
    description: Optional[str] = None
    is_completed: bool
    completion_percentage: int
    is_active: bool
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


# ---------------------------------------------------------------------------
# Hierarchy
# ---------------------------------------------------------------------------

class ParentUpdate(BaseModel):
    """Request body for PUT /tasks/{taskId}/parent. `None` detaches the task."""
    parent_id: Optional[UUID] = None


class DeletionCheck(BaseModel):
    task_id: UUID
    can_delete: bool = True
    sub_task_count: int = 0
    dependency_count: int = 0
    warnings: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------

class CompletionUpdate(BaseModel):
    is_completed: bool


class ProgressUpdate(BaseModel):
    completion_percentage: int = Field(ge=0, le=100)


class TaskStatusRead(BaseModel):
    task_id: UUID
    is_blocked: bool
    can_start: bool
    depth: int
    effective_completion_percentage: int
    blocking_prerequisite_ids: List[UUID] = Field(default_factory=list)


class DeletionResult(BaseModel):
    task_id: UUID
    deactivated_task_ids: List[UUID] = Field(default_factory=list)
    reparented_task_ids: List[UUID] = Field(default_factory=list)
    removed_dependency_count: int = 0
