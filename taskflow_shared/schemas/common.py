from enum import Enum
from typing import Optional

from pydantic import BaseModel


class DependencyType(str, Enum):
    FINISH_TO_START = "finish_to_start"
    START_TO_START = "start_to_start"
    FINISH_TO_FINISH = "finish_to_finish"
    START_TO_FINISH = "start_to_finish"


# Only these types gate `is_blocked`; the rest are recorded metadata.
GATING_DEPENDENCY_TYPES: frozenset["DependencyType"] = frozenset(
    {DependencyType.FINISH_TO_START}
)


class ChildDeletionPolicy(str, Enum):
    CASCADE = "cascade"  # deactivate the whole subtree
    ORPHAN = "orphan"  # children become roots
    REPARENT_TO_GRANDPARENT = "reparent_to_grandparent"


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    SELF_REFERENCE = "self_reference"
    SELF_DEPENDENCY = "self_dependency"
    CIRCULAR_REFERENCE = "circular_reference"
    CIRCULAR_DEPENDENCY = "circular_dependency"
    DEPTH_LIMIT_EXCEEDED = "depth_limit_exceeded"
    DEPENDENCY_DEPTH_LIMIT_EXCEEDED = "dependency_depth_limit_exceeded"
    DUPLICATE_DEPENDENCY = "duplicate_dependency"
    BLOCKED = "blocked"
    CONFLICT = "conflict"
    INVALID_VALUE = "invalid_value"
    TASK_LIMIT_EXCEEDED = "task_limit_exceeded"
    STORAGE = "storage"


class ValidationResult(BaseModel):
    """Outcome of a hierarchy or dependency check."""

    allowed: bool
    reason: Optional[ErrorKind] = None
    detail: Optional[str] = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(allowed=True)

    @classmethod
    def reject(cls, reason: ErrorKind, detail: str) -> "ValidationResult":
        return cls(allowed=False, reason=reason, detail=detail)


class ErrorBody(BaseModel):
    code: str
    message: str
    status: int


class APIError(BaseModel):
    error: ErrorBody
