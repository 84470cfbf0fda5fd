"""
Billing engine FastAPI application.

WHAT: Wires the subscription, webhook and admin routers, the error
envelope handlers, logging and the reconciliation sweep scheduler.

Run with ``uvicorn billing_engine.main:app``. Set SCHEDULER_ENABLED=false
on replicas that should serve HTTP only, so sweeps run in one process.
"""

import logging

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from billing_engine.api import subscriptions
from billing_engine.core.config import settings
from billing_engine.core.exception_handlers import (
    app_exception_handler,
    generic_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from billing_engine.core.exceptions import AppException
from billing_engine.core.logging_config import configure_logging
from billing_engine.services.scheduler import (
    get_scheduler_status,
    shutdown_scheduler,
    start_scheduler,
)

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    """
    Build the application.

    WHY: A factory keeps import side effects to logging setup, and lets
    tests build an app with dependency overrides.
    """
    configure_logging()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Subscription lifecycle and billing reconciliation API",
        version=settings.VERSION,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    # The webhook route is called server-to-server and ignores CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["Authorization", "Content-Type"],
    )

    app.include_router(subscriptions.router, prefix=settings.API_V1_PREFIX)
    app.include_router(subscriptions.admin_router, prefix=settings.API_V1_PREFIX)
    app.include_router(subscriptions.webhooks_router, prefix=settings.API_V1_PREFIX)

    @app.on_event("startup")
    async def startup_event():
        if settings.SCHEDULER_ENABLED:
            await start_scheduler()
        else:
            logger.info("Sweep scheduler disabled for this process")

    @app.on_event("shutdown")
    async def shutdown_event():
        await shutdown_scheduler()

    @app.get("/health", tags=["health"])
    async def health_check() -> dict:
        """
        Liveness plus sweep status.

        WHY: If the scheduler is not running anywhere, lost webhooks are
        never repaired; monitoring alerts on ``scheduler.running``.
        """
        return {
            "status": "healthy",
            "version": settings.VERSION,
            "scheduler": get_scheduler_status(),
        }

    return app


app = create_app()
