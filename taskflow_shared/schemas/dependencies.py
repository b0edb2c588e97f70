"""Dependency edge schemas."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .common import DependencyType, ErrorKind


class DependencyAdd(BaseModel):
    """Request body for POST /tasks/{taskId}/dependencies."""
    prerequisite_id: UUID
    dependency_type: DependencyType = DependencyType.FINISH_TO_START
    description: Optional[str] = Field(default=None, max_length=500)


class DependencyUpdate(BaseModel):
    dependency_type: Optional[DependencyType] = None
    description: Optional[str] = Field(default=None, max_length=500)


class DependencyRead(BaseModel):
    id: UUID
    owner_id: UUID
    dependent_task_id: UUID
    prerequisite_task_id: UUID
    dependency_type: DependencyType
    description: Optional[str] = None
    is_active: bool
    created_at: datetime
    updated_at: datetime


# ---------------------------------------------------------------------------
# Bulk
# ---------------------------------------------------------------------------

class BulkDependencyItem(DependencyAdd):
    dependent_id: UUID


class BulkDependencyAdd(BaseModel):
    items: List[BulkDependencyItem] = Field(min_length=1, max_length=100)


class DependencyFailure(BaseModel):
    dependent_id: UUID
    prerequisite_id: UUID
    reason: ErrorKind
    detail: str


class BulkDependencyResult(BaseModel):
    created: List[DependencyRead] = Field(default_factory=list)
    failed: List[DependencyFailure] = Field(default_factory=list)


class BulkDependencyRemove(BaseModel):
    dependency_ids: List[UUID] = Field(min_length=1, max_length=100)


class DependencyRemovalFailure(BaseModel):
    dependency_id: UUID
    reason: ErrorKind
    detail: str


class BulkDependencyRemoveResult(BaseModel):
    removed: List[UUID] = Field(default_factory=list)
    failed: List[DependencyRemovalFailure] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------

class DependencyPage(BaseModel):
    items: List[DependencyRead] = Field(default_factory=list)
    page: int
    per_page: int
    total: int
