"""Task dependency edge model (owner-scoped, soft-deleted)."""

from typing import Optional
import uuid

from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel

from taskflow_shared.schemas.common import DependencyType

from .base import OwnedRecordMixin, TimestampMixin, UUIDMixin


class TaskDependency(UUIDMixin, OwnedRecordMixin, TimestampMixin, SQLModel, table=True):
    """`dependent_task_id` cannot start until `prerequisite_task_id` finishes."""

    __tablename__ = "task_dependencies"
    __table_args__ = (
        CheckConstraint("dependent_task_id != prerequisite_task_id", name="no_self_dependency"),
    )

    dependent_task_id: uuid.UUID = Field(foreign_key="tasks.id", nullable=False, index=True)
    prerequisite_task_id: uuid.UUID = Field(foreign_key="tasks.id", nullable=False, index=True)
    dependency_type: str = Field(nullable=False, default=DependencyType.FINISH_TO_START.value)
    description: Optional[str] = Field(default=None, max_length=500)
