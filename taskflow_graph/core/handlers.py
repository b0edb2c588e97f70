"""
Exception handlers that turn graph errors into JSON error bodies.

Body shape: {"error": {"code": ..., "message": ..., "status": ...}}
"""

from __future__ import annotations

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from taskflow_graph.core.errors import GraphError
from taskflow_shared.schemas.common import APIError, ErrorBody, ErrorKind

log = structlog.get_logger()

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.SELF_REFERENCE: 409,
    ErrorKind.SELF_DEPENDENCY: 409,
    ErrorKind.CIRCULAR_REFERENCE: 409,
    ErrorKind.CIRCULAR_DEPENDENCY: 409,
    ErrorKind.DUPLICATE_DEPENDENCY: 409,
    ErrorKind.CONFLICT: 409,
    ErrorKind.DEPTH_LIMIT_EXCEEDED: 422,
    ErrorKind.DEPENDENCY_DEPTH_LIMIT_EXCEEDED: 422,
    ErrorKind.BLOCKED: 422,
    ErrorKind.INVALID_VALUE: 422,
    ErrorKind.TASK_LIMIT_EXCEEDED: 422,
    ErrorKind.STORAGE: 503,
}


def _error_response(code: str, message: str, status: int) -> JSONResponse:
    body = APIError(error=ErrorBody(code=code, message=message, status=status))
    return JSONResponse(status_code=status, content=body.model_dump())


async def graph_error_handler(request: Request, exc: GraphError) -> JSONResponse:
    status = STATUS_BY_KIND.get(exc.kind, 500)
    if status >= 500:
        log.error("api.graph_error", path=request.url.path, kind=exc.kind.value, error=exc.message)
    return _error_response(exc.kind.value, exc.message, status)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(GraphError, graph_error_handler)
