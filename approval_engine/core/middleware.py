"""
Custom middleware for audit logging and error handling
"""

import logging
import time
import uuid
from typing import Callable

import anyio
from fastapi import HTTPException, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from approval_engine.core.exceptions import ApprovalEngineError

logger = logging.getLogger(__name__)


class AuditMiddleware(BaseHTTPMiddleware):
    """Logs every API request with a generated request id"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.time()

        logger.info(
            f"Request started - ID: {request_id}, Method: {request.method}, "
            f"URL: {request.url}, User: {request.headers.get('X-User-Id', 'anonymous')}, "
            f"Client: {request.client.host if request.client else 'unknown'}"
        )

        response = await call_next(request)

        process_time = time.time() - start_time
        logger.info(
            f"Request completed - ID: {request_id}, Status: {response.status_code}, "
            f"Time: {process_time:.3f}s"
        )

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(process_time)
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Turns unexpected exceptions into a structured 500 response"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            if isinstance(exc, HTTPException):
                logger.debug(
                    f"HTTPException encountered, letting FastAPI handle: {exc.status_code} - {exc.detail}"
                )
                raise exc

            # Client disconnects are not server errors
            if isinstance(exc, (anyio.EndOfStream, anyio.WouldBlock)):
                request_id_stream = getattr(request.state, "request_id", "N/A")
                logger.debug(
                    f"Client connection issue (ignored) - Request ID: {request_id_stream}, Error: {type(exc).__name__}"
                )
                raise exc

            request_id_unhandled = getattr(request.state, "request_id", str(uuid.uuid4()))
            logger.error(
                f"Unhandled server exception - Request ID: {request_id_unhandled}, Error: {str(exc)}",
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content={
                    "error_code": "INTERNAL_SERVER_ERROR",
                    "message": "An internal server error occurred.",
                    "request_id": request_id_unhandled,
                    "support_reference": f"ERR-{request_id_unhandled[:8]}",
                },
            )


async def approval_engine_error_handler(request: Request, exc: ApprovalEngineError) -> JSONResponse:
    """Map the engine error taxonomy onto HTTP status codes"""
    request_id = getattr(request.state, "request_id", None)
    if exc.status_code >= 500:
        logger.error(f"{exc.error_code} - Request ID: {request_id}, Error: {exc.message}")
    else:
        logger.info(f"{exc.error_code} - Request ID: {request_id}, Error: {exc.message}")

    content = exc.to_dict()
    if request_id:
        content["request_id"] = request_id
    return JSONResponse(status_code=exc.status_code, content=content)
