"""
TaskFlow Graph API Server

Entry point for the FastAPI application.
"""

import structlog
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from taskflow_graph.api.v1 import router as api_v1_router
from taskflow_graph.core.config import get_settings
from taskflow_graph.core.database import close_db, init_db
from taskflow_graph.core.handlers import register_exception_handlers
from taskflow_graph.core.logging import configure_logging
from taskflow_graph.core.services import GraphServices, close_graph_services, get_graph_services

settings = get_settings()
log = structlog.get_logger()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="TaskFlow Graph",
        description="Task hierarchy and dependency graph service.",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "PUT", "DELETE"],
        allow_headers=["Content-Type", "Authorization", "X-Owner-Id"],
    )

    register_exception_handlers(app)

    app.include_router(api_v1_router, prefix="/api/v1")

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for liveness checks."""
        return {"status": "ok"}

    @app.get("/ready", tags=["System"])
    async def readiness_check(services: GraphServices = Depends(get_graph_services)):
        """Readiness check endpoint: the database must answer."""
        await services.repository.ping()
        return {"status": "ready"}

    @app.on_event("startup")
    async def on_startup():
        configure_logging(settings.log_level, settings.log_format)
        if settings.create_tables_on_startup:
            await init_db()
        log.info(
            "server.starting",
            max_hierarchy_depth=settings.max_hierarchy_depth,
            max_dependency_depth=settings.dependency_depth_limit,
            child_deletion_policy=settings.child_deletion_policy.value,
            lock_backend=settings.lock_backend,
            cache_backend=settings.cache_backend,
        )

    @app.on_event("shutdown")
    async def on_shutdown():
        log.info("server.stopping")
        await close_graph_services()
        await close_db()

    return app


app = create_app()
