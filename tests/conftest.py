"""
Shared fixtures: a temp-file SQLite database, the graph services wired against
it, and an HTTP client with the service container overridden.
"""

from __future__ import annotations

import uuid

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine

from taskflow_graph.core.cache import MemoryDerivedStateCache
from taskflow_graph.core.config import Settings
from taskflow_graph.core.database import create_session_factory, init_db
from taskflow_graph.core.locks import OwnerLockManager
from taskflow_graph.core.services import GraphServices, get_graph_services
from taskflow_graph.main import app
from taskflow_graph.services.completion import CompletionStateResolver
from taskflow_graph.services.coordinator import GraphMutationCoordinator
from taskflow_graph.services.dependencies import DependencyValidator
from taskflow_graph.services.hierarchy import HierarchyValidator
from taskflow_graph.services.repository import SqlNodeRepository

MAX_DEPTH = 5


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'graph.db'}",
        lock_backend="memory",
        cache_backend="memory",
        max_tasks_per_owner=10,
    )


@pytest.fixture
async def engine(settings: Settings):
    engine = create_async_engine(settings.database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def repository(session_factory) -> SqlNodeRepository:
    return SqlNodeRepository(session_factory)


@pytest.fixture
def cache() -> MemoryDerivedStateCache:
    return MemoryDerivedStateCache(ttl_seconds=60)


@pytest.fixture
def locks() -> OwnerLockManager:
    return OwnerLockManager(timeout=5)


@pytest.fixture
def coordinator(settings, repository, locks, cache) -> GraphMutationCoordinator:
    return GraphMutationCoordinator(
        repository,
        locks,
        HierarchyValidator(MAX_DEPTH),
        DependencyValidator(MAX_DEPTH),
        cache=cache,
        max_tasks_per_owner=settings.max_tasks_per_owner,
    )


@pytest.fixture
def resolver(repository, cache) -> CompletionStateResolver:
    return CompletionStateResolver(repository, MAX_DEPTH, cache)


@pytest.fixture
def owner_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def make_chain(coordinator: GraphMutationCoordinator, owner_id: uuid.UUID):
    """Create tasks named by `titles`, each nested under the previous one."""

    async def _make(*titles: str):
        tasks = []
        for title in titles:
            task = await coordinator.create_task(owner_id, title)
            if tasks:
                task = await coordinator.reparent(owner_id, task.id, tasks[-1].id)
            tasks.append(task)
        return tasks

    return _make


@pytest.fixture
async def client(settings, repository, coordinator, resolver):
    services = GraphServices(settings, repository, coordinator, resolver)
    app.dependency_overrides[get_graph_services] = lambda: services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
