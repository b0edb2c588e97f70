"""Per-owner graph revision used to detect writes that raced a validation."""

import uuid

from sqlmodel import Field, SQLModel


class GraphRevision(SQLModel, table=True):
    __tablename__ = "graph_revisions"

    owner_id: uuid.UUID = Field(primary_key=True, nullable=False)
    revision: int = Field(default=0, nullable=False)
