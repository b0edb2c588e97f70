"""
API v1 Router

Every endpoint is scoped to the owner named in the X-Owner-Id header.
"""

from fastapi import APIRouter

from . import dependencies, tasks

router = APIRouter()

router.include_router(tasks.router, prefix="/tasks", tags=["Tasks"])
router.include_router(dependencies.router_scoped, prefix="/tasks", tags=["Dependencies"])
router.include_router(dependencies.router_global, prefix="/dependencies", tags=["Dependencies"])


@router.get("/", tags=["API"])
async def api_root():
    """API root: returns version and available endpoints."""
    return {
        "api": "v1",
        "version": "0.1.0",
        "endpoints": [
            "/tasks",
            "/tasks/{taskId}/parent",
            "/tasks/{taskId}/dependencies",
            "/tasks/{taskId}/dependents",
            "/dependencies",
            "/dependencies/{dependencyId}",
            "/dependencies/bulk",
            "/dependencies/bulk-delete",
        ],
    }
