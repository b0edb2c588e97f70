# Table models; importing them registers their metadata for create_all.
from .base import OwnedRecordMixin, TimestampMixin, UUIDMixin  # noqa: F401
from .task import Task  # noqa: F401
from .dependency import TaskDependency  # noqa: F401
from .revision import GraphRevision  # noqa: F401
