"""
Error taxonomy for graph operations.

Validators return `ValidationResult`; the coordinator and resolver raise the
exceptions below. The HTTP layer maps `GraphError.kind` to a status code.
"""

from __future__ import annotations

from typing import Optional

from taskflow_shared.schemas.common import ErrorKind, ValidationResult


class GraphError(Exception):
    kind: ErrorKind = ErrorKind.STORAGE

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    @classmethod
    def from_result(cls, result: ValidationResult) -> "GraphError":
        """Build the matching error for a rejected validation."""
        if result.allowed or result.reason is None:
            raise ValueError("from_result needs a rejected ValidationResult with a reason")
        if result.reason == ErrorKind.NOT_FOUND:
            return NotFoundError(result.detail or "Task not found")
        return cls(result.detail or result.reason.value, result.reason)


class NotFoundError(GraphError):
    kind = ErrorKind.NOT_FOUND


class HierarchyError(GraphError):
    kind = ErrorKind.CIRCULAR_REFERENCE


class DependencyError(GraphError):
    kind = ErrorKind.CIRCULAR_DEPENDENCY


class BlockedError(GraphError):
    kind = ErrorKind.BLOCKED


class ConflictError(GraphError):
    kind = ErrorKind.CONFLICT


class StaleGraphError(ConflictError):
    """The owner's graph revision moved between snapshot and commit."""


class InvalidValueError(GraphError, ValueError):
    kind = ErrorKind.INVALID_VALUE


class TaskLimitError(GraphError):
    kind = ErrorKind.TASK_LIMIT_EXCEEDED


class StorageError(GraphError):
    kind = ErrorKind.STORAGE


class CacheError(StorageError):
    """The derived-state cache backend failed; the database is unaffected."""
