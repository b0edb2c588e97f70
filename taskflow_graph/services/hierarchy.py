"""
Hierarchy validator: decides whether a task may be moved under a new parent.

Depth is counted in edges with roots at depth 0, so with a limit of 5 the
deepest allowed task sits five edges below its root.
"""

from __future__ import annotations

import uuid
from typing import Optional

from taskflow_graph.services.graph import TaskGraph
from taskflow_shared.schemas.common import ErrorKind, ValidationResult


class HierarchyValidator:
    def __init__(self, max_depth: int = 5):
        self.max_depth = max_depth

    def can_set_parent(
        self,
        graph: TaskGraph,
        node_id: uuid.UUID,
        candidate_parent_id: Optional[uuid.UUID],
    ) -> ValidationResult:
        """Check moving `node_id` under `candidate_parent_id` (`None` = make it a root)."""
        if candidate_parent_id == node_id:
            return ValidationResult.reject(
                ErrorKind.SELF_REFERENCE, "A task cannot be its own parent"
            )
        if node_id not in graph:
            return ValidationResult.reject(ErrorKind.NOT_FOUND, f"Task {node_id} not found")
        if candidate_parent_id is None:
            return ValidationResult.ok()
        if candidate_parent_id not in graph:
            return ValidationResult.reject(
                ErrorKind.NOT_FOUND, f"Parent task {candidate_parent_id} not found"
            )

        ancestors = graph.ancestors(candidate_parent_id, self.max_depth)
        if node_id in ancestors:
            return ValidationResult.reject(
                ErrorKind.CIRCULAR_REFERENCE,
                "Moving a task under its own descendant would create a circular reference",
            )

        parent_depth = len(ancestors)
        height = graph.subtree_height(node_id, self.max_depth)
        resulting = parent_depth + 1 + height
        if resulting > self.max_depth:
            return ValidationResult.reject(
                ErrorKind.DEPTH_LIMIT_EXCEEDED,
                f"Task hierarchy cannot be deeper than {self.max_depth} levels "
                f"(would reach {resulting})",
            )
        return ValidationResult.ok()
