"""
Graph mutation coordinator tests.

Tests cover:
- Validation errors surface as typed exceptions with nothing written
- Child deletion policies (cascade, orphan, reparent to grandparent)
- Revision compare-and-set with a single retry
- Serialized writes for one owner
- Cache invalidation on structural writes, and writes surviving a cache outage
- Bulk dependency add and remove with per-item failures
- Per-owner task cap checked inside the write
- Seeded random reparent and add-dependency sequences keep the graph valid
"""

from __future__ import annotations

import asyncio
import random
import uuid
from unittest.mock import AsyncMock, patch

import pytest

from taskflow_graph.core.cache import CacheField, MemoryDerivedStateCache
from taskflow_graph.core.errors import (
    BlockedError,
    CacheError,
    ConflictError,
    DependencyError,
    GraphError,
    HierarchyError,
    InvalidValueError,
    NotFoundError,
    StaleGraphError,
    TaskLimitError,
)
from taskflow_graph.services.coordinator import GraphMutationCoordinator
from taskflow_graph.services.dependencies import DependencyValidator
from taskflow_graph.services.graph import TaskGraph
from taskflow_graph.services.hierarchy import HierarchyValidator
from taskflow_graph.services.repository import SqlGraphTransaction
from taskflow_shared.schemas.common import ChildDeletionPolicy, DependencyType, ErrorKind
from taskflow_shared.schemas.dependencies import BulkDependencyItem

MAX_DEPTH = 5


async def _snapshot(repository, owner_id):
    async def load(tx: SqlGraphTransaction):
        return await tx.load_snapshot(owner_id)

    return await repository.run_in_transaction(load)


class _UnreachableCache(MemoryDerivedStateCache):
    async def invalidate(self, owner_id, task_ids):
        raise ConnectionError("cache unreachable")


# ---------------------------------------------------------------------------
# Hierarchy writes
# ---------------------------------------------------------------------------


class TestReparent:
    async def test_reparent_and_detach(self, coordinator, repository, owner_id):
        parent = await coordinator.create_task(owner_id, "parent")
        child = await coordinator.create_task(owner_id, "child")

        moved = await coordinator.reparent(owner_id, child.id, parent.id)
        assert moved.parent_id == parent.id
        assert [c.id for c in await repository.get_children(parent.id)] == [child.id]

        detached = await coordinator.reparent(owner_id, child.id, None)
        assert detached.parent_id is None
        assert await repository.get_children(parent.id) == []

    async def test_self_reference_raises(self, coordinator, owner_id):
        task = await coordinator.create_task(owner_id, "t")
        with pytest.raises(HierarchyError) as exc_info:
            await coordinator.reparent(owner_id, task.id, task.id)
        assert exc_info.value.kind == ErrorKind.SELF_REFERENCE

    async def test_cycle_raises_and_writes_nothing(self, coordinator, repository, owner_id, make_chain):
        a, b, c = await make_chain("A", "B", "C")
        with pytest.raises(HierarchyError) as exc_info:
            await coordinator.reparent(owner_id, a.id, c.id)
        assert exc_info.value.kind == ErrorKind.CIRCULAR_REFERENCE
        assert (await repository.get_node(a.id)).parent_id is None

    async def test_depth_limit_scenario(self, coordinator, repository, owner_id, make_chain):
        a, b, c, d, e = await make_chain("A", "B", "C", "D", "E")
        f = await coordinator.create_task(owner_id, "F")
        g = await coordinator.create_task(owner_id, "G")

        await coordinator.reparent(owner_id, f.id, e.id)
        with pytest.raises(HierarchyError) as exc_info:
            await coordinator.reparent(owner_id, g.id, f.id)
        assert exc_info.value.kind == ErrorKind.DEPTH_LIMIT_EXCEEDED
        assert (await repository.get_node(g.id)).parent_id is None

    async def test_missing_parent_raises_not_found(self, coordinator, owner_id):
        task = await coordinator.create_task(owner_id, "t")
        with pytest.raises(NotFoundError):
            await coordinator.reparent(owner_id, task.id, uuid.uuid4())

    async def test_other_owners_task_is_not_found(self, coordinator, owner_id):
        mine = await coordinator.create_task(owner_id, "mine")
        theirs = await coordinator.create_task(uuid.uuid4(), "theirs")
        with pytest.raises(NotFoundError):
            await coordinator.reparent(owner_id, mine.id, theirs.id)

    async def test_validate_reparent_is_a_dry_run(self, coordinator, repository, owner_id, make_chain):
        a, b = await make_chain("A", "B")
        revision = (await _snapshot(repository, owner_id)).revision

        verdict = await coordinator.validate_reparent(owner_id, a.id, b.id)
        assert not verdict.allowed
        assert verdict.reason == ErrorKind.CIRCULAR_REFERENCE
        assert (await coordinator.validate_reparent(owner_id, b.id, None)).allowed
        assert (await _snapshot(repository, owner_id)).revision == revision


# ---------------------------------------------------------------------------
# Deactivation
# ---------------------------------------------------------------------------


class TestDeactivation:
    async def test_cascade_removes_subtree_and_edges(self, coordinator, repository, resolver, owner_id, make_chain):
        a, b, c = await make_chain("A", "B", "C")
        x = await coordinator.create_task(owner_id, "X")
        await coordinator.add_dependency(owner_id, x.id, b.id)
        assert await resolver.is_blocked(owner_id, x.id)

        result = await coordinator.deactivate_task(owner_id, a.id)

        assert result.deactivated_task_ids == [a.id, b.id, c.id]
        assert result.deactivated_edge_count == 1
        assert result.task.is_active is False
        for task_id in (a.id, b.id, c.id):
            assert (await repository.get_node(task_id)).is_active is False
        assert await repository.get_active_edges_where_dependent(x.id) == []
        assert await resolver.is_blocked(owner_id, x.id) is False

    async def test_orphan_policy_promotes_children(self, coordinator, repository, owner_id, make_chain):
        coordinator.child_deletion_policy = ChildDeletionPolicy.ORPHAN
        a, b, c = await make_chain("A", "B", "C")

        result = await coordinator.deactivate_task(owner_id, b.id)

        assert result.deactivated_task_ids == [b.id]
        assert result.reparented_task_ids == [c.id]
        node = await repository.get_node(c.id)
        assert node.is_active is True
        assert node.parent_id is None

    async def test_grandparent_policy_moves_children_up(self, coordinator, repository, resolver, owner_id, make_chain):
        coordinator.child_deletion_policy = ChildDeletionPolicy.REPARENT_TO_GRANDPARENT
        a, b, c, d = await make_chain("A", "B", "C", "D")
        assert await resolver.compute_depth(owner_id, d.id) == 3

        await coordinator.deactivate_task(owner_id, b.id)

        assert (await repository.get_node(c.id)).parent_id == a.id
        assert await resolver.compute_depth(owner_id, d.id) == 2

    async def test_deactivated_task_is_absent(self, coordinator, owner_id):
        gone = await coordinator.create_task(owner_id, "gone")
        other = await coordinator.create_task(owner_id, "other")
        await coordinator.deactivate_task(owner_id, gone.id)

        with pytest.raises(NotFoundError):
            await coordinator.deactivate_task(owner_id, gone.id)
        with pytest.raises(NotFoundError):
            await coordinator.reparent(owner_id, other.id, gone.id)
        with pytest.raises(NotFoundError):
            await coordinator.add_dependency(owner_id, other.id, gone.id)

    async def test_check_deletion_reports_counts(self, coordinator, owner_id, make_chain):
        a, b, c = await make_chain("A", "B", "C")
        x = await coordinator.create_task(owner_id, "X")
        await coordinator.add_dependency(owner_id, x.id, a.id)

        check = await coordinator.check_deletion(owner_id, a.id)

        assert check.can_delete is True
        assert check.sub_task_count == 1
        assert check.dependency_count == 1
        assert any("2 descendant" in w for w in check.warnings)
        assert any("dependency link" in w for w in check.warnings)

    async def test_check_deletion_follows_policy(self, coordinator, owner_id, make_chain):
        coordinator.child_deletion_policy = ChildDeletionPolicy.ORPHAN
        a, b = await make_chain("A", "B")
        check = await coordinator.check_deletion(owner_id, a.id)
        assert check.warnings == ["1 sub-task(s) will become top-level tasks."]


# ---------------------------------------------------------------------------
# Completion and progress
# ---------------------------------------------------------------------------


class TestCompletion:
    async def test_completion_sets_timestamp_and_percentage(self, coordinator, owner_id):
        task = await coordinator.create_task(owner_id, "t")
        done = await coordinator.set_completion(owner_id, task.id, True)
        assert done.is_completed is True
        assert done.completed_at is not None
        assert done.completion_percentage == 100

        reopened = await coordinator.set_completion(owner_id, task.id, False)
        assert reopened.is_completed is False
        assert reopened.completed_at is None

    async def test_progress_boundaries(self, coordinator, owner_id):
        task = await coordinator.create_task(owner_id, "t")
        task = await coordinator.update_progress(owner_id, task.id, 50)
        assert task.is_completed is False
        task = await coordinator.update_progress(owner_id, task.id, 100)
        assert task.is_completed is True
        task = await coordinator.update_progress(owner_id, task.id, 0)
        assert task.is_completed is False

    async def test_progress_out_of_range(self, coordinator, repository, owner_id):
        task = await coordinator.create_task(owner_id, "t")
        with pytest.raises(InvalidValueError) as exc_info:
            await coordinator.update_progress(owner_id, task.id, 101)
        assert exc_info.value.kind == ErrorKind.INVALID_VALUE
        assert (await repository.get_node(task.id)).completion_percentage == 0

    async def test_blocked_task_may_complete_by_default(self, coordinator, owner_id):
        x = await coordinator.create_task(owner_id, "X")
        y = await coordinator.create_task(owner_id, "Y")
        await coordinator.add_dependency(owner_id, x.id, y.id)
        assert (await coordinator.set_completion(owner_id, x.id, True)).is_completed

    async def test_enforced_blocking(self, coordinator, owner_id):
        coordinator.enforce_blocking_on_completion = True
        x = await coordinator.create_task(owner_id, "X")
        y = await coordinator.create_task(owner_id, "Y")
        await coordinator.add_dependency(owner_id, x.id, y.id)

        with pytest.raises(BlockedError):
            await coordinator.set_completion(owner_id, x.id, True)
        with pytest.raises(BlockedError):
            await coordinator.update_progress(owner_id, x.id, 100)

        await coordinator.set_completion(owner_id, y.id, True)
        assert (await coordinator.set_completion(owner_id, x.id, True)).is_completed


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


class TestDependencyWrites:
    async def test_cycle_rejected(self, coordinator, owner_id):
        p1, p2, p3 = [await coordinator.create_task(owner_id, f"P{i}") for i in (1, 2, 3)]
        await coordinator.add_dependency(owner_id, p2.id, p1.id)
        await coordinator.add_dependency(owner_id, p3.id, p2.id)

        with pytest.raises(DependencyError) as exc_info:
            await coordinator.add_dependency(owner_id, p1.id, p3.id)
        assert exc_info.value.kind == ErrorKind.CIRCULAR_DEPENDENCY

    async def test_duplicate_rejected(self, coordinator, owner_id):
        x = await coordinator.create_task(owner_id, "X")
        y = await coordinator.create_task(owner_id, "Y")
        await coordinator.add_dependency(owner_id, x.id, y.id)
        with pytest.raises(DependencyError) as exc_info:
            await coordinator.add_dependency(owner_id, x.id, y.id)
        assert exc_info.value.kind == ErrorKind.DUPLICATE_DEPENDENCY

    async def test_removed_edge_can_be_added_again(self, coordinator, owner_id):
        x = await coordinator.create_task(owner_id, "X")
        y = await coordinator.create_task(owner_id, "Y")
        first = await coordinator.add_dependency(owner_id, x.id, y.id)
        await coordinator.remove_dependency_by_id(owner_id, first.id)
        second = await coordinator.add_dependency(owner_id, x.id, y.id)
        assert second.id != first.id

    async def test_remove_missing_edge(self, coordinator, owner_id):
        x = await coordinator.create_task(owner_id, "X")
        y = await coordinator.create_task(owner_id, "Y")
        with pytest.raises(NotFoundError):
            await coordinator.remove_dependency(owner_id, x.id, y.id)

    async def test_remove_by_id_is_owner_scoped(self, coordinator, owner_id):
        x = await coordinator.create_task(owner_id, "X")
        y = await coordinator.create_task(owner_id, "Y")
        edge = await coordinator.add_dependency(owner_id, x.id, y.id)
        with pytest.raises(NotFoundError):
            await coordinator.remove_dependency_by_id(uuid.uuid4(), edge.id)

    async def test_update_type_changes_blocking(self, coordinator, resolver, owner_id):
        x = await coordinator.create_task(owner_id, "X")
        y = await coordinator.create_task(owner_id, "Y")
        edge = await coordinator.add_dependency(owner_id, x.id, y.id)
        assert await resolver.is_blocked(owner_id, x.id) is True

        updated = await coordinator.update_dependency(
            owner_id, edge.id, DependencyType.START_TO_START, "soft link"
        )
        assert updated.dependency_type == DependencyType.START_TO_START.value
        assert updated.description == "soft link"
        assert await resolver.is_blocked(owner_id, x.id) is False

    async def test_bulk_add_reports_each_failure(self, coordinator, owner_id):
        a, b, c = [await coordinator.create_task(owner_id, n) for n in "ABC"]
        items = [
            BulkDependencyItem(dependent_id=b.id, prerequisite_id=a.id),
            BulkDependencyItem(dependent_id=b.id, prerequisite_id=a.id),
            BulkDependencyItem(dependent_id=c.id, prerequisite_id=c.id),
            BulkDependencyItem(dependent_id=a.id, prerequisite_id=b.id),
            BulkDependencyItem(dependent_id=c.id, prerequisite_id=uuid.uuid4()),
            BulkDependencyItem(dependent_id=c.id, prerequisite_id=b.id),
        ]

        outcome = await coordinator.add_dependencies(owner_id, items)

        assert [(e.dependent_task_id, e.prerequisite_task_id) for e in outcome.created] == [
            (b.id, a.id),
            (c.id, b.id),
        ]
        assert [f.reason for f in outcome.failed] == [
            ErrorKind.DUPLICATE_DEPENDENCY,
            ErrorKind.SELF_DEPENDENCY,
            ErrorKind.CIRCULAR_DEPENDENCY,
            ErrorKind.NOT_FOUND,
        ]

    async def test_bulk_remove_reports_each_failure(self, coordinator, repository, owner_id):
        a, b, c = [await coordinator.create_task(owner_id, n) for n in "ABC"]
        first = await coordinator.add_dependency(owner_id, b.id, a.id)
        second = await coordinator.add_dependency(owner_id, c.id, b.id)
        foreign = await coordinator.create_task(uuid.uuid4(), "other")
        missing = uuid.uuid4()

        outcome = await coordinator.remove_dependencies(
            owner_id, [first.id, missing, first.id, second.id, foreign.id]
        )

        assert outcome.removed == [first.id, second.id]
        assert [(f.dependency_id, f.reason) for f in outcome.failed] == [
            (missing, ErrorKind.NOT_FOUND),
            (first.id, ErrorKind.NOT_FOUND),
            (foreign.id, ErrorKind.NOT_FOUND),
        ]
        graph = await repository.load_snapshot(owner_id)
        assert not graph.prerequisites_of.get(b.id) and not graph.prerequisites_of.get(c.id)


# ---------------------------------------------------------------------------
# Revisions, retries and serialization
# ---------------------------------------------------------------------------


class TestWritePath:
    async def test_every_write_bumps_revision(self, coordinator, repository, owner_id):
        x = await coordinator.create_task(owner_id, "X")
        y = await coordinator.create_task(owner_id, "Y")
        await coordinator.add_dependency(owner_id, x.id, y.id)
        assert (await _snapshot(repository, owner_id)).revision == 3

    async def test_compare_and_set(self, repository, owner_id):
        async def bump(expected: int) -> int:
            async def run(tx: SqlGraphTransaction) -> int:
                return await tx.bump_revision(owner_id, expected)

            return await repository.run_in_transaction(run)

        assert await bump(0) == 1
        assert await bump(1) == 2
        with pytest.raises(StaleGraphError):
            await bump(1)
        with pytest.raises(StaleGraphError):
            await bump(0)

    async def test_stale_revision_is_retried_once(self, coordinator, repository, owner_id):
        original = SqlGraphTransaction.bump_revision
        calls: list[int] = []

        async def flaky(self, owner, expected):
            calls.append(expected)
            if len(calls) == 1:
                raise StaleGraphError("moved")
            return await original(self, owner, expected)

        with patch.object(SqlGraphTransaction, "bump_revision", flaky):
            await coordinator.create_task(owner_id, "t")

        assert len(calls) == 2
        assert await repository.count_active_tasks(owner_id) == 1

    async def test_second_stale_revision_is_a_conflict(self, coordinator, repository, owner_id):
        async def always_stale(self, owner, expected):
            raise StaleGraphError("moved")

        with patch.object(SqlGraphTransaction, "bump_revision", always_stale):
            with pytest.raises(ConflictError) as exc_info:
                await coordinator.create_task(owner_id, "t")

        assert not isinstance(exc_info.value, StaleGraphError)
        assert exc_info.value.kind == ErrorKind.CONFLICT
        assert await repository.count_active_tasks(owner_id) == 0

    async def test_concurrent_writes_for_one_owner_serialize(self, coordinator, repository, locks, owner_id):
        tasks = await asyncio.gather(*(coordinator.create_task(owner_id, f"t{i}") for i in range(5)))
        graph = await _snapshot(repository, owner_id)
        assert len(graph) == 5
        assert graph.revision == 5
        assert {t.id for t in tasks} == set(graph.parent_of)
        assert len(locks) == 0

    async def test_concurrent_opposite_edges_admit_one(self, coordinator, repository, owner_id):
        a = await coordinator.create_task(owner_id, "A")
        b = await coordinator.create_task(owner_id, "B")

        results = await asyncio.gather(
            coordinator.add_dependency(owner_id, a.id, b.id),
            coordinator.add_dependency(owner_id, b.id, a.id),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], DependencyError)
        assert errors[0].kind == ErrorKind.CIRCULAR_DEPENDENCY
        graph = await _snapshot(repository, owner_id)
        assert sum(len(p) for p in graph.prerequisites_of.values()) == 1

    async def test_task_cap_holds_under_concurrent_creates(self, coordinator, repository, owner_id):
        results = await asyncio.gather(
            *(coordinator.create_task(owner_id, f"t{i}") for i in range(14)),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 4
        assert all(isinstance(e, TaskLimitError) for e in errors)
        assert all(e.kind == ErrorKind.TASK_LIMIT_EXCEEDED for e in errors)
        assert await repository.count_active_tasks(owner_id) == 10

    async def test_deactivated_tasks_free_cap(self, coordinator, owner_id):
        tasks = [await coordinator.create_task(owner_id, f"t{i}") for i in range(10)]
        with pytest.raises(TaskLimitError):
            await coordinator.create_task(owner_id, "over")

        await coordinator.deactivate_task(owner_id, tasks[0].id)
        assert (await coordinator.create_task(owner_id, "fits")).is_active is True


class TestCacheInvalidation:
    async def test_dependency_change_invalidates_dependent(self, coordinator, resolver, cache, owner_id):
        x = await coordinator.create_task(owner_id, "X")
        y = await coordinator.create_task(owner_id, "Y")
        assert await resolver.is_blocked(owner_id, x.id) is False
        assert await cache.get(owner_id, x.id, CacheField.BLOCKED) == 0

        await coordinator.add_dependency(owner_id, x.id, y.id)

        assert await cache.get(owner_id, x.id, CacheField.BLOCKED) is None
        assert await resolver.is_blocked(owner_id, x.id) is True

    async def test_reparent_invalidates_descendant_depths(self, coordinator, resolver, cache, owner_id, make_chain):
        a, b, c = await make_chain("A", "B", "C")
        root = await coordinator.create_task(owner_id, "root")
        await resolver.compute_depth(owner_id, c.id)
        assert await cache.get(owner_id, c.id, CacheField.DEPTH) == 2

        await coordinator.reparent(owner_id, a.id, root.id)

        assert await cache.get(owner_id, c.id, CacheField.DEPTH) is None
        assert await resolver.compute_depth(owner_id, c.id) == 3

    async def test_rejected_write_keeps_cache(self, coordinator, resolver, cache, owner_id):
        x = await coordinator.create_task(owner_id, "X")
        await resolver.is_blocked(owner_id, x.id)
        with pytest.raises(DependencyError):
            await coordinator.add_dependency(owner_id, x.id, x.id)
        assert await cache.get(owner_id, x.id, CacheField.BLOCKED) == 0

    async def test_cache_outage_does_not_fail_committed_write(self, repository, locks, owner_id):
        coordinator = GraphMutationCoordinator(
            repository,
            locks,
            HierarchyValidator(MAX_DEPTH),
            DependencyValidator(MAX_DEPTH),
            cache=_UnreachableCache(),
        )
        task = await coordinator.create_task(owner_id, "t")

        done = await coordinator.set_completion(owner_id, task.id, True)

        assert done.is_completed is True
        assert (await repository.get_node(task.id)).is_completed is True
        assert len(locks) == 0

    async def test_cache_error_on_invalidate_is_logged(self, repository, locks, owner_id):
        cache = MemoryDerivedStateCache()
        cache.invalidate = AsyncMock(side_effect=CacheError("Cache failure during invalidate"))
        coordinator = GraphMutationCoordinator(
            repository,
            locks,
            HierarchyValidator(MAX_DEPTH),
            DependencyValidator(MAX_DEPTH),
            cache=cache,
        )
        x = await coordinator.create_task(owner_id, "X")
        y = await coordinator.create_task(owner_id, "Y")

        with patch("taskflow_graph.services.coordinator.log") as log:
            edge = await coordinator.add_dependency(owner_id, x.id, y.id)

        assert edge.is_active is True
        cache.invalidate.assert_awaited_once()
        events = [c.args[0] for c in log.error.call_args_list]
        assert events == ["graph.cache_invalidation_failed"]


# ---------------------------------------------------------------------------
# Randomized sequences
# ---------------------------------------------------------------------------


REJECTION_KINDS = {
    ErrorKind.SELF_REFERENCE,
    ErrorKind.CIRCULAR_REFERENCE,
    ErrorKind.DEPTH_LIMIT_EXCEEDED,
    ErrorKind.SELF_DEPENDENCY,
    ErrorKind.CIRCULAR_DEPENDENCY,
    ErrorKind.DUPLICATE_DEPENDENCY,
    ErrorKind.DEPENDENCY_DEPTH_LIMIT_EXCEEDED,
}


def _assert_structure(graph: TaskGraph) -> None:
    for node in graph.parent_of:
        chain = graph.ancestors(node, MAX_DEPTH)
        assert len(chain) <= MAX_DEPTH
        assert node not in chain
        # The walk must stop at a root, not on a revisited node.
        assert graph.parent_of[chain[-1] if chain else node] is None

        assert graph.longest_upstream_chain(node, MAX_DEPTH) <= MAX_DEPTH
        for prerequisite in graph.prerequisites_of.get(node, ()):
            assert not graph.depends_on(prerequisite, node)


class TestRandomizedSequences:
    @pytest.mark.parametrize("seed", [7, 1234, 20240])
    async def test_hierarchy_and_dependencies_stay_valid(self, coordinator, repository, owner_id, seed):
        rng = random.Random(seed)
        ids = [(await coordinator.create_task(owner_id, f"n{i}")).id for i in range(8)]
        accepted = rejected = 0

        for _ in range(80):
            try:
                if rng.random() < 0.5:
                    await coordinator.reparent(owner_id, rng.choice(ids), rng.choice([None, *ids]))
                else:
                    await coordinator.add_dependency(owner_id, rng.choice(ids), rng.choice(ids))
            except GraphError as exc:
                assert exc.kind in REJECTION_KINDS
                rejected += 1
            else:
                accepted += 1
            _assert_structure(await repository.load_snapshot(owner_id))

        assert accepted + rejected == 80
        assert (await repository.load_snapshot(owner_id)).revision == 8 + accepted
