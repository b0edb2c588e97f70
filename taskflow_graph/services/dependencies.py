"""
Dependency validator: decides whether a prerequisite -> dependent edge may be added.

Edges are added one at a time, so an incremental reachability check replaces a
full topological sort: the new edge closes a cycle exactly when the
prerequisite already (transitively) depends on the dependent.
"""

from __future__ import annotations

import uuid

from taskflow_graph.services.graph import TaskGraph
from taskflow_shared.schemas.common import ErrorKind, ValidationResult


class DependencyValidator:
    def __init__(self, max_depth: int = 5):
        self.max_depth = max_depth

    def can_add_dependency(
        self,
        graph: TaskGraph,
        dependent_id: uuid.UUID,
        prerequisite_id: uuid.UUID,
    ) -> ValidationResult:
        if dependent_id == prerequisite_id:
            return ValidationResult.reject(
                ErrorKind.SELF_DEPENDENCY, "A task cannot depend on itself"
            )
        for task_id in (dependent_id, prerequisite_id):
            if task_id not in graph:
                return ValidationResult.reject(ErrorKind.NOT_FOUND, f"Task {task_id} not found")

        if graph.has_edge(dependent_id, prerequisite_id):
            return ValidationResult.reject(
                ErrorKind.DUPLICATE_DEPENDENCY, "Dependency already exists"
            )

        if graph.depends_on(prerequisite_id, dependent_id):
            return ValidationResult.reject(
                ErrorKind.CIRCULAR_DEPENDENCY,
                "Adding this dependency would create a circular dependency",
            )

        upstream = graph.longest_upstream_chain(prerequisite_id, self.max_depth)
        downstream = graph.longest_downstream_chain(dependent_id, self.max_depth)
        chain = upstream + 1 + downstream
        if chain > self.max_depth:
            return ValidationResult.reject(
                ErrorKind.DEPENDENCY_DEPTH_LIMIT_EXCEEDED,
                f"Dependency chains cannot be longer than {self.max_depth} "
                f"(would reach {chain})",
            )
        return ValidationResult.ok()
