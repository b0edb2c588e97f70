"""
Graph service wiring.

Builds the repository, validators, lock manager, cache, coordinator and
resolver from settings once per process and exposes them as FastAPI
dependencies. Tests override `get_graph_services` with their own container.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis
from fastapi import Depends
from sqlalchemy.orm import sessionmaker

from taskflow_graph.core.cache import build_cache
from taskflow_graph.core.config import Settings, get_settings
from taskflow_graph.core.database import get_session_factory
from taskflow_graph.core.locks import build_lock_manager
from taskflow_graph.services.completion import CompletionStateResolver
from taskflow_graph.services.coordinator import GraphMutationCoordinator
from taskflow_graph.services.dependencies import DependencyValidator
from taskflow_graph.services.hierarchy import HierarchyValidator
from taskflow_graph.services.repository import SqlNodeRepository


@dataclass
class GraphServices:
    settings: Settings
    repository: SqlNodeRepository
    coordinator: GraphMutationCoordinator
    resolver: CompletionStateResolver
    redis_client: Optional[redis.Redis] = None


def build_graph_services(
    settings: Settings,
    session_factory: sessionmaker,
    redis_client: Optional[redis.Redis] = None,
) -> GraphServices:
    repository = SqlNodeRepository(session_factory)
    cache = build_cache(settings, redis_client)
    coordinator = GraphMutationCoordinator(
        repository,
        build_lock_manager(settings, redis_client),
        HierarchyValidator(settings.max_hierarchy_depth),
        DependencyValidator(settings.dependency_depth_limit),
        cache=cache,
        child_deletion_policy=settings.child_deletion_policy,
        enforce_blocking_on_completion=settings.enforce_blocking_on_completion,
        max_tasks_per_owner=settings.max_tasks_per_owner,
    )
    resolver = CompletionStateResolver(repository, settings.max_hierarchy_depth, cache)
    return GraphServices(settings, repository, coordinator, resolver, redis_client)


_services: GraphServices | None = None


async def get_graph_services() -> GraphServices:
    """Get or create the process-wide service container."""
    global _services
    if _services is None:
        settings = get_settings()
        client = None
        if "redis" in (settings.lock_backend, settings.cache_backend):
            client = redis.from_url(settings.redis_url, decode_responses=True)
        _services = build_graph_services(settings, get_session_factory(), client)
    return _services


async def close_graph_services() -> None:
    """Drop the container and close its Redis connection pool, if any."""
    global _services
    if _services is not None and _services.redis_client is not None:
        await _services.redis_client.aclose()
    _services = None


async def get_coordinator(
    services: GraphServices = Depends(get_graph_services),
) -> GraphMutationCoordinator:
    return services.coordinator


async def get_resolver(
    services: GraphServices = Depends(get_graph_services),
) -> CompletionStateResolver:
    return services.resolver


async def get_repository(
    services: GraphServices = Depends(get_graph_services),
) -> SqlNodeRepository:
    return services.repository
