"""Task node model.

The hierarchy is stored as a plain `parent_id` column; traversal goes through
the adjacency index in `services.graph`, never through ORM relationships.
"""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import OwnedRecordMixin, TimestampMixin, UUIDMixin


class Task(UUIDMixin, OwnedRecordMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "tasks"
    __table_args__ = (
        sa.CheckConstraint("parent_id IS NULL OR parent_id != id", name="no_self_parent"),
        sa.CheckConstraint(
            "completion_percentage >= 0 AND completion_percentage <= 100",
            name="completion_percentage_range",
        ),
    )

    parent_id: Optional[uuid.UUID] = Field(default=None, foreign_key="tasks.id", index=True)
    title: str = Field(nullable=False)
    description: Optional[str] = None
    is_completed: bool = Field(default=False, nullable=False)
    completed_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    completion_percentage: int = Field(default=0, nullable=False)
