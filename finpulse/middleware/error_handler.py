"""
Request IDs and the JSON error envelope.
"""

import time
import uuid
from typing import Callable, List

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
import structlog

from ..utils.exceptions import AppException

logger = structlog.get_logger()

REQUEST_ID_HEADER = "x-request-id"


def error_body(
    request: Request,
    request_id: str,
    code: str,
    message: str,
    details: List[str],
    retryable: bool = False
) -> dict:
    """
    Standard error envelope.

    ``retryable`` tells clients a plain retry may succeed, e.g. after a
    compare-and-set conflict or a store outage.
    """
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details,
            "retryable": retryable
        },
        "meta": {
            "timestamp": time.time(),
            "request_id": request_id,
            "path": str(request.url.path)
        }
    }


def app_exception_response(request: Request, exc: AppException) -> JSONResponse:
    request_id = getattr(request.state, "request_id", "unknown")
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(request, request_id, exc.code, exc.message, exc.details, exc.retryable),
        headers={REQUEST_ID_HEADER: request_id}
    )


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Assign request IDs and render anything that escaped the routers."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id

        try:
            response = await call_next(request)
        except AppException as exc:
            logger.warning(
                "Application exception escaped handlers",
                request_id=request_id,
                error_code=exc.code,
                error_message=exc.message,
                status_code=exc.status_code,
                path=request.url.path
            )
            return app_exception_response(request, exc)
        except Exception as exc:
            logger.exception(
                "Unexpected exception occurred",
                request_id=request_id,
                error_type=type(exc).__name__,
                path=request.url.path,
                method=request.method
            )
            return JSONResponse(
                status_code=500,
                content=error_body(
                    request, request_id, "INTERNAL_SERVER_ERROR", "An unexpected error occurred", []
                ),
                headers={REQUEST_ID_HEADER: request_id}
            )

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
