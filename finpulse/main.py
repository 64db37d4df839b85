"""
finpulse API application.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
import structlog

from .config import settings
from .routers import anomalies, cash_flow, health, preferences, recurring
from .middleware.error_handler import ErrorHandlerMiddleware, app_exception_response
from .middleware.logging import LoggingMiddleware
from .services.scheduler import LearningScheduler
from .utils.exceptions import AppException
from .infrastructure import cleanup_document_store

DEV_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:8080",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:8080",
]


def configure_logging():
    """JSON logs through structlog on top of stdlib logging."""
    logging.basicConfig(
        format="%(message)s",
        stream=None,
        level=getattr(logging, settings.log_level),
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the learning scheduler and release the document store on shutdown."""
    configure_logging()
    logger = structlog.get_logger()
    logger.info(
        "Application starting up",
        app_name=settings.app_name,
        version=settings.version,
        environment=settings.environment,
        storage_backend=settings.storage_backend
    )

    scheduler = None
    if settings.learning_scheduler_enabled and not settings.is_testing:
        scheduler = LearningScheduler()
        scheduler.start()
    app.state.learning_scheduler = scheduler

    yield

    if scheduler is not None:
        await scheduler.stop()
    await cleanup_document_store()
    logger.info("Application shut down")


def create_app() -> FastAPI:
    """Build the app: middleware, error envelope handler and routers."""
    app = FastAPI(
        title="Finpulse API",
        version=settings.version,
        description=(
            "Recurring bill and income detection, spending anomaly alerts and "
            "cash-flow forecasts that learn from their own accuracy. "
            "Callers identify the user with the `X-User-ID` header."
        ),
        debug=settings.debug,
        docs_url=settings.docs_url,
        openapi_url=settings.openapi_url,
        lifespan=lifespan,
    )

    cors_origins = settings.get_cors_origins_list()
    if settings.debug and not cors_origins:
        cors_origins = DEV_CORS_ORIGINS

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID", "X-User-ID", "Accept", "Origin"],
        expose_headers=["X-Request-ID", "X-Process-Time"]
    )

    # Last added runs first: request IDs are assigned before logging
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(ErrorHandlerMiddleware)

    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException):
        return app_exception_response(request, exc)

    for module in (health, recurring, anomalies, cash_flow, preferences):
        app.include_router(module.router, prefix=settings.api_prefix)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "service": settings.app_name,
            "version": settings.version,
            "docs_url": settings.docs_url,
            "health_check": f"{settings.api_prefix}/health"
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "finpulse.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
