"""
Request logging middleware.

Binds the request ID and caller to structlog's context so every log line
emitted while serving the request (service and store logs included) carries
them.
"""

import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
import structlog

logger = structlog.get_logger()


class LoggingMiddleware(BaseHTTPMiddleware):
    """Log one line when a request starts and one when it completes."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=getattr(request.state, "request_id", "unknown"),
            caller=request.headers.get("x-user-id"),
        )

        logger.info(
            "Request started",
            method=request.method,
            path=request.url.path,
            query_params=str(request.query_params)
        )

        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - started

            log = logger.warning if response.status_code >= 500 else logger.info
            log(
                "Request completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                process_time=f"{elapsed:.4f}s"
            )
            response.headers["x-process-time"] = f"{elapsed:.4f}"
            return response
        finally:
            structlog.contextvars.clear_contextvars()
