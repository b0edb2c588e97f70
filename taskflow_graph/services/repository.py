"""
Node repository: the storage collaborator behind the graph services.

`SqlNodeRepository` answers single-record reads with one short-lived session
per call and whole-graph reads with `load_snapshot`. Structural writes go
through `run_in_transaction`, which hands the callback a `SqlGraphTransaction`
bound to one database transaction. Any exception raised by the callback rolls
the whole transaction back.
"""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from typing import Awaitable, Callable, Iterable, Iterator, Optional, Protocol, Sequence, TypeVar

import structlog
from sqlalchemy import func, or_, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlmodel import select

from taskflow_graph.core.errors import ConflictError, StaleGraphError, StorageError
from taskflow_graph.models.dependency import TaskDependency
from taskflow_graph.models.revision import GraphRevision
from taskflow_graph.models.task import Task
from taskflow_graph.services.graph import TaskGraph

log = structlog.get_logger()

T = TypeVar("T")


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        log.error("repository.storage_error", operation=operation, error=str(exc))
        raise StorageError(f"Storage failure during {operation}") from exc


SNAPSHOT_READ_ATTEMPTS = 5


async def _read_revision(session: AsyncSession, owner_id: uuid.UUID) -> int:
    result = await session.execute(
        select(GraphRevision.revision).where(GraphRevision.owner_id == owner_id)
    )
    return result.scalar_one_or_none() or 0


async def _read_graph(session: AsyncSession, owner_id: uuid.UUID) -> TaskGraph:
    # Revision first: a lock-free reader compares it with a second read taken
    # after the rows, and every structural commit bumps it.
    revision = await _read_revision(session, owner_id)
    tasks = await session.execute(
        select(Task).where(Task.owner_id == owner_id, Task.is_active == True)  # noqa: E712
    )
    edges = await session.execute(
        select(TaskDependency).where(
            TaskDependency.owner_id == owner_id,
            TaskDependency.is_active == True,  # noqa: E712
        )
    )
    return TaskGraph.build(owner_id, tasks.scalars().all(), edges.scalars().all(), revision=revision)


class NodeRepository(Protocol):
    async def get_node(self, task_id: uuid.UUID) -> Optional[Task]: ...

    async def get_nodes(self, task_ids: Iterable[uuid.UUID]) -> list[Task]: ...

    async def get_children(self, parent_id: uuid.UUID) -> list[Task]: ...

    async def get_active_edges_where_dependent(self, task_id: uuid.UUID) -> list[TaskDependency]: ...

    async def get_active_edges_where_prerequisite(self, task_id: uuid.UUID) -> list[TaskDependency]: ...

    async def load_snapshot(self, owner_id: uuid.UUID) -> TaskGraph: ...

    async def run_in_transaction(self, fn: Callable[["SqlGraphTransaction"], Awaitable[T]]) -> T: ...


class SqlNodeRepository:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_node(self, task_id: uuid.UUID) -> Optional[Task]:
        with _storage_errors("get_node"):
            async with self._session_factory() as session:
                return await session.get(Task, task_id)

    async def get_nodes(self, task_ids: Iterable[uuid.UUID]) -> list[Task]:
        ids = list(task_ids)
        if not ids:
            return []
        with _storage_errors("get_nodes"):
            async with self._session_factory() as session:
                result = await session.execute(select(Task).where(Task.id.in_(ids)))
                return list(result.scalars().all())

    async def get_children(self, parent_id: uuid.UUID) -> list[Task]:
        with _storage_errors("get_children"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(Task)
                    .where(Task.parent_id == parent_id, Task.is_active == True)  # noqa: E712
                    .order_by(Task.created_at)
                )
                return list(result.scalars().all())

    async def count_active_tasks(self, owner_id: uuid.UUID) -> int:
        with _storage_errors("count_active_tasks"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(func.count())
                    .select_from(Task)
                    .where(Task.owner_id == owner_id, Task.is_active == True)  # noqa: E712
                )
                return int(result.scalar_one())

    async def get_edge(self, edge_id: uuid.UUID) -> Optional[TaskDependency]:
        with _storage_errors("get_edge"):
            async with self._session_factory() as session:
                return await session.get(TaskDependency, edge_id)

    async def get_active_edges_where_dependent(self, task_id: uuid.UUID) -> list[TaskDependency]:
        with _storage_errors("get_active_edges_where_dependent"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(TaskDependency).where(
                        TaskDependency.dependent_task_id == task_id,
                        TaskDependency.is_active == True,  # noqa: E712
                    )
                )
                return list(result.scalars().all())

    async def get_active_edges_where_prerequisite(self, task_id: uuid.UUID) -> list[TaskDependency]:
        with _storage_errors("get_active_edges_where_prerequisite"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(TaskDependency).where(
                        TaskDependency.prerequisite_task_id == task_id,
                        TaskDependency.is_active == True,  # noqa: E712
                    )
                )
                return list(result.scalars().all())

    async def list_edges(
        self,
        owner_id: uuid.UUID,
        dependent_id: Optional[uuid.UUID] = None,
        prerequisite_id: Optional[uuid.UUID] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> tuple[list[TaskDependency], int]:
        """One page of the owner's active edges, oldest first, plus the filtered total."""
        conditions = [TaskDependency.owner_id == owner_id, TaskDependency.is_active == True]  # noqa: E712
        if dependent_id is not None:
            conditions.append(TaskDependency.dependent_task_id == dependent_id)
        if prerequisite_id is not None:
            conditions.append(TaskDependency.prerequisite_task_id == prerequisite_id)

        with _storage_errors("list_edges"):
            async with self._session_factory() as session:
                total = await session.execute(
                    select(func.count()).select_from(TaskDependency).where(*conditions)
                )
                result = await session.execute(
                    select(TaskDependency)
                    .where(*conditions)
                    .order_by(TaskDependency.created_at, TaskDependency.id)
                    .offset((page - 1) * per_page)
                    .limit(per_page)
                )
                return list(result.scalars().all()), int(total.scalar_one())

    async def load_snapshot(self, owner_id: uuid.UUID) -> TaskGraph:
        """Lock-free snapshot of the owner's graph as of one committed revision.

        The revision is read before and after the rows. Writers bump it in the
        same transaction as the change, so equal reads mean no write committed
        in between; otherwise the read is retried on a fresh session.
        """
        with _storage_errors("load_snapshot"):
            for attempt in range(1, SNAPSHOT_READ_ATTEMPTS + 1):
                async with self._session_factory() as session:
                    graph = await _read_graph(session, owner_id)
                    if await _read_revision(session, owner_id) == graph.revision:
                        return graph
                log.info("repository.snapshot_retry", owner_id=str(owner_id), attempt=attempt)
        raise ConflictError("Graph kept changing while it was being read")

    async def ping(self) -> None:
        with _storage_errors("ping"):
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def run_in_transaction(self, fn: Callable[["SqlGraphTransaction"], Awaitable[T]]) -> T:
        """Run `fn` inside one transaction; commit on return, roll back on any error."""
        with _storage_errors("transaction"):
            async with self._session_factory() as session:
                async with session.begin():
                    return await fn(SqlGraphTransaction(session))


class SqlGraphTransaction:
    """Read-modify-write handle bound to a single open transaction."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def load_snapshot(self, owner_id: uuid.UUID) -> TaskGraph:
        """Load the owner's active node-set, active edges and current revision."""
        return await _read_graph(self._session, owner_id)

    async def get_task(self, task_id: uuid.UUID) -> Optional[Task]:
        return await self._session.get(Task, task_id)

    async def get_edge(self, edge_id: uuid.UUID) -> Optional[TaskDependency]:
        return await self._session.get(TaskDependency, edge_id)

    async def find_active_edge(
        self, dependent_id: uuid.UUID, prerequisite_id: uuid.UUID
    ) -> Optional[TaskDependency]:
        result = await self._session.execute(
            select(TaskDependency).where(
                TaskDependency.dependent_task_id == dependent_id,
                TaskDependency.prerequisite_task_id == prerequisite_id,
                TaskDependency.is_active == True,  # noqa: E712
            )
        )
        return result.scalars().first()

    async def add(self, record: Task | TaskDependency) -> None:
        self._session.add(record)
        await self._session.flush()

    async def save(self, record: Task | TaskDependency) -> None:
        record.touch()
        self._session.add(record)
        await self._session.flush()

    async def deactivate_tasks(self, task_ids: Sequence[uuid.UUID]) -> list[Task]:
        if not task_ids:
            return []
        result = await self._session.execute(
            select(Task).where(Task.id.in_(task_ids), Task.is_active == True)  # noqa: E712
        )
        tasks = list(result.scalars().all())
        for task in tasks:
            task.deactivate()
            task.touch()
        await self._session.flush()
        return tasks

    async def deactivate_edges_touching(self, task_ids: Sequence[uuid.UUID]) -> list[TaskDependency]:
        """Deactivate every active edge with a task from `task_ids` on either side."""
        if not task_ids:
            return []
        result = await self._session.execute(
            select(TaskDependency).where(
                TaskDependency.is_active == True,  # noqa: E712
                or_(
                    TaskDependency.dependent_task_id.in_(task_ids),
                    TaskDependency.prerequisite_task_id.in_(task_ids),
                ),
            )
        )
        edges = list(result.scalars().all())
        for edge in edges:
            edge.deactivate()
            edge.touch()
        await self._session.flush()
        return edges

    async def bump_revision(self, owner_id: uuid.UUID, expected: int) -> int:
        """Compare-and-set the owner's revision; raises `StaleGraphError` if it moved."""
        if expected == 0:
            existing = await self._session.execute(
                select(GraphRevision.revision).where(GraphRevision.owner_id == owner_id)
            )
            if existing.scalar_one_or_none() is None:
                self._session.add(GraphRevision(owner_id=owner_id, revision=1))
                try:
                    await self._session.flush()
                except IntegrityError as exc:
                    raise StaleGraphError("Graph changed concurrently") from exc
                return 1

        result = await self._session.execute(
            update(GraphRevision)
            .where(GraphRevision.owner_id == owner_id, GraphRevision.revision == expected)
            .values(revision=GraphRevision.revision + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleGraphError("Graph changed concurrently")
        return expected + 1
