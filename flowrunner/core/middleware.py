"""HTTP middleware: request ids, error responses and slow request warnings."""

import time
import uuid
from datetime import datetime
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import (
    ApprovalError,
    DefinitionError,
    ExecutionEngineError,
    NodeValidationError,
    NotFoundError,
    StorageError,
    TransientError,
    WorkflowEngineError,
    WorkflowStateError,
    create_error_response,
)
from .logging import clear_logging_context, get_logger, set_logging_context

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# First match wins
ERROR_STATUS_CODES = (
    ((DefinitionError, NodeValidationError), 400),
    ((NotFoundError,), 404),
    ((WorkflowStateError, ApprovalError, ExecutionEngineError), 409),
)


def status_code_for_error(error: WorkflowEngineError) -> int:
    """HTTP status code for an engine error."""
    for error_types, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_types):
            return status_code
    if isinstance(error, (TransientError, StorageError)) and error.recoverable:
        return 503
    return 500


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Tag the request's log records with its id and actor; map escaped errors to JSON."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        set_logging_context(
            request_id=request_id,
            actor_id=request.headers.get("X-Actor-Id"),
            path=request.url.path,
        )
        started = time.perf_counter()
        route = f"{request.method} {request.url.path}"

        try:
            response = await call_next(request)
        except WorkflowEngineError as e:
            logger.warning(f"{route} failed with {e.error_code}: {e.message}",
                           extra={"extra_fields": {"error_details": e.to_dict()}})
            response = JSONResponse(status_code=status_code_for_error(e), content=create_error_response(e))
        except Exception as e:
            logger.error(f"{route} raised {type(e).__name__}: {e}", exc_info=True)
            response = JSONResponse(
                status_code=500,
                content={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred",
                    "details": {"error_type": type(e).__name__, "timestamp": datetime.utcnow().isoformat()},
                    "request_id": request_id,
                },
            )
        else:
            logger.info(f"{route} -> {response.status_code} in {time.perf_counter() - started:.3f}s")
        finally:
            clear_logging_context()

        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class PerformanceMonitoringMiddleware(BaseHTTPMiddleware):
    """Adds an ``X-Response-Time`` header and warns about slow requests."""

    def __init__(self, app, slow_request_threshold: float = 5.0):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - started

        if duration > self.slow_request_threshold:
            logger.warning(
                f"Slow request: {request.method} {request.url.path} took {duration:.3f}s "
                f"(threshold {self.slow_request_threshold}s)"
            )

        response.headers["X-Response-Time"] = f"{duration:.3f}s"
        return response
