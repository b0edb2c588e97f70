"""Column mixins shared by the task and dependency tables."""

from datetime import datetime, timezone
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UUIDMixin(SQLModel):
    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
        index=True,
        nullable=False,
    )


class TimestampMixin(SQLModel):
    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=sa.DateTime(timezone=True),
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_column_kwargs={"onupdate": utcnow},
        sa_type=sa.DateTime(timezone=True),
    )

    def touch(self) -> None:
        self.updated_at = utcnow()


class OwnedRecordMixin(SQLModel):
    """Owner scope plus the soft-delete flag; inactive rows are absent from every graph."""

    owner_id: uuid.UUID = Field(nullable=False, index=True)
    is_active: bool = Field(default=True, nullable=False, index=True)

    def deactivate(self) -> None:
        self.is_active = False
