"""
Owner-scoped snapshot of the task hierarchy and the dependency graph.

Both structures are held as explicit adjacency indices keyed by task id:

- hierarchy: `parent_of` (child -> parent) and `children_of` (parent -> children)
- dependencies: `prerequisites_of` (dependent -> prerequisites) and
  `dependents_of` (prerequisite -> dependents)

Only active tasks and active edges between active tasks are indexed, so a
deactivated task is absent from both graphs. Every traversal is bounded, either
by an explicit limit or by a visited set, so an inconsistent store cannot make
a walk run forever.
"""

from __future__ import annotations

import uuid
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Iterable, Optional

from taskflow_graph.models.dependency import TaskDependency
from taskflow_graph.models.task import Task
from taskflow_shared.schemas.common import GATING_DEPENDENCY_TYPES, DependencyType


@dataclass
class TaskGraph:
    owner_id: uuid.UUID
    revision: int = 0
    parent_of: dict[uuid.UUID, Optional[uuid.UUID]] = field(default_factory=dict)
    children_of: dict[uuid.UUID, set[uuid.UUID]] = field(default_factory=lambda: defaultdict(set))
    completed: dict[uuid.UUID, bool] = field(default_factory=dict)
    progress: dict[uuid.UUID, int] = field(default_factory=dict)
    prerequisites_of: dict[uuid.UUID, set[uuid.UUID]] = field(default_factory=lambda: defaultdict(set))
    dependents_of: dict[uuid.UUID, set[uuid.UUID]] = field(default_factory=lambda: defaultdict(set))
    edge_types: dict[tuple[uuid.UUID, uuid.UUID], DependencyType] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        owner_id: uuid.UUID,
        tasks: Iterable[Task],
        edges: Iterable[TaskDependency] = (),
        revision: int = 0,
    ) -> "TaskGraph":
        graph = cls(owner_id=owner_id, revision=revision)
        active = [t for t in tasks if t.is_active and t.owner_id == owner_id]
        ids = {t.id for t in active}

        for task in active:
            graph.completed[task.id] = task.is_completed
            graph.progress[task.id] = task.completion_percentage
            # A parent outside the active node-set makes the task a root here.
            parent_id = task.parent_id if task.parent_id in ids else None
            graph.parent_of[task.id] = parent_id
            if parent_id is not None:
                graph.children_of[parent_id].add(task.id)

        for edge in edges:
            if not edge.is_active or edge.owner_id != owner_id:
                continue
            dependent, prerequisite = edge.dependent_task_id, edge.prerequisite_task_id
            if dependent not in ids or prerequisite not in ids or dependent == prerequisite:
                continue
            graph.prerequisites_of[dependent].add(prerequisite)
            graph.dependents_of[prerequisite].add(dependent)
            graph.edge_types[(dependent, prerequisite)] = DependencyType(edge.dependency_type)

        return graph

    def __contains__(self, task_id: object) -> bool:
        return task_id in self.parent_of

    def __len__(self) -> int:
        return len(self.parent_of)

    # ------------------------------------------------------------------
    # Hierarchy
    # ------------------------------------------------------------------

    def ancestors(self, task_id: uuid.UUID, limit: int) -> list[uuid.UUID]:
        """Parent chain of `task_id`, nearest first, at most `limit + 1` long.

        A chain longer than `limit` is returned truncated at `limit + 1` so the
        caller can tell it is over the bound without walking all of it.
        """
        chain: list[uuid.UUID] = []
        seen = {task_id}
        current = self.parent_of.get(task_id)
        while current is not None and len(chain) <= limit:
            if current in seen:
                break
            chain.append(current)
            seen.add(current)
            current = self.parent_of.get(current)
        return chain

    def depth(self, task_id: uuid.UUID, limit: int) -> int:
        """Edges from `task_id` up to its root (root = 0), capped at `limit + 1`."""
        return len(self.ancestors(task_id, limit))

    def children(self, task_id: uuid.UUID) -> set[uuid.UUID]:
        return set(self.children_of.get(task_id, ()))

    def descendants(self, task_id: uuid.UUID) -> list[uuid.UUID]:
        """All hierarchy descendants, breadth-first."""
        result: list[uuid.UUID] = []
        seen = {task_id}
        queue = deque(self.children_of.get(task_id, ()))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            result.append(current)
            queue.extend(self.children_of.get(current, ()))
        return result

    def subtree_height(self, task_id: uuid.UUID, limit: int) -> int:
        """Longest descendant chain below `task_id` in edges, capped at `limit + 1`."""
        height = 0
        seen = {task_id}
        level = [task_id]
        while level and height <= limit:
            next_level = []
            for node in level:
                for child in self.children_of.get(node, ()):
                    if child not in seen:
                        seen.add(child)
                        next_level.append(child)
            if not next_level:
                break
            height += 1
            level = next_level
        return height

    # ------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------

    def has_edge(self, dependent_id: uuid.UUID, prerequisite_id: uuid.UUID) -> bool:
        return prerequisite_id in self.prerequisites_of.get(dependent_id, ())

    def depends_on(self, start: uuid.UUID, target: uuid.UUID) -> bool:
        """Whether `start` transitively depends on `target` (BFS over prerequisites)."""
        visited: set[uuid.UUID] = set()
        queue = deque([start])
        while queue:
            current = queue.popleft()
            if current == target:
                return True
            if current in visited:
                continue
            visited.add(current)
            queue.extend(self.prerequisites_of.get(current, ()))
        return False

    def longest_upstream_chain(self, task_id: uuid.UUID, limit: int) -> int:
        """Longest chain of prerequisites ending at `task_id`, in edges."""
        return self._longest_chain(task_id, self.prerequisites_of, limit)

    def longest_downstream_chain(self, task_id: uuid.UUID, limit: int) -> int:
        """Longest chain of dependents starting at `task_id`, in edges."""
        return self._longest_chain(task_id, self.dependents_of, limit)

    @staticmethod
    def _longest_chain(
        start: uuid.UUID,
        adjacency: dict[uuid.UUID, set[uuid.UUID]],
        limit: int,
    ) -> int:
        # Memoised DFS. Anything past `limit + 1` is reported as `limit + 1`;
        # a cycle (only possible in a corrupted store) counts as over the limit.
        cap = limit + 1
        memo: dict[uuid.UUID, int] = {}
        on_stack: set[uuid.UUID] = set()

        def visit(node: uuid.UUID) -> int:
            if node in memo:
                return memo[node]
            if node in on_stack:
                return cap
            on_stack.add(node)
            best = 0
            for nxt in adjacency.get(node, ()):
                best = max(best, 1 + visit(nxt))
                if best >= cap:
                    best = cap
                    break
            on_stack.discard(node)
            memo[node] = best
            return best

        return visit(start)

    def blocking_prerequisites(self, task_id: uuid.UUID) -> list[uuid.UUID]:
        """Incomplete prerequisites reached through a gating edge type."""
        return sorted(
            (
                p
                for p in self.prerequisites_of.get(task_id, ())
                if self.edge_types.get((task_id, p)) in GATING_DEPENDENCY_TYPES
                and not self.completed.get(p, False)
            ),
            key=str,
        )

    def effective_completion_percentage(self, task_id: uuid.UUID) -> int:
        """Children's completion ratio when there are children, else the stored value."""
        children = self.children_of.get(task_id, ())
        if not children:
            return self.progress.get(task_id, 0)
        completed = sum(1 for child in children if self.completed.get(child, False))
        return (completed * 100) // len(children)
