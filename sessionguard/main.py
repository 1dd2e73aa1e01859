"""SessionGuard - FastAPI Application Factory."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sessionguard.api.errors import register_exception_handlers
from sessionguard.api.health import router as health_router
from sessionguard.api.router import api_router
from sessionguard.core import async_session_maker, settings, setup_logging
from sessionguard.core.logging import get_logger
from sessionguard.middleware import (
    RateLimitMiddleware,
    SecurityHeadersMiddleware,
    rate_limit_cleanup_loop,
)

# Import all models to ensure they're registered with Base for Alembic
from sessionguard.models import (  # noqa: F401
    AuditEvent,
    FailedLoginAttempt,
    RefreshToken,
    SecurityRestriction,
    TokenBlacklist,
    User,
    UserSession,
)
from sessionguard.services.audit import get_audit_logger
from sessionguard.services.cleanup import CleanupService

logger = get_logger("main")


def task_done_callback(task: asyncio.Task[None]) -> None:
    """Log unhandled exceptions from background tasks."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Background task {task.get_name()} failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    setup_logging(
        level=settings.log_level,
        format_type="structured" if not settings.debug else "dev",
    )
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    for warning in settings.check_security_configuration():
        logger.warning(f"SECURITY: {warning}")

    audit_logger = get_audit_logger()
    audit_logger.set_db_session_factory(async_session_maker)
    logger.info("Audit logger initialized with database")

    cleanup_service = CleanupService.get_instance()
    await cleanup_service.start()

    rate_limit_task = asyncio.create_task(rate_limit_cleanup_loop())
    rate_limit_task.add_done_callback(task_done_callback)

    yield

    logger.info("Shutting down...")
    rate_limit_task.cancel()
    try:
        await rate_limit_task
    except asyncio.CancelledError:
        pass

    await cleanup_service.stop()
    await audit_logger.close()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        description="Authentication and session security service",
        version=settings.app_version,
        lifespan=lifespan,
        # API schema is only published in debug mode
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )

    register_exception_handlers(app)

    app.add_middleware(SecurityHeadersMiddleware)

    # Health endpoints excluded for load balancer checks
    app.add_middleware(
        RateLimitMiddleware,
        requests_per_minute=settings.rate_limit_requests_per_minute,
        exclude_paths=["/health", "/metrics"],
    )

    # CORS must be outermost (added last in Starlette LIFO order) so 401/429
    # responses carry CORS headers too
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept", "X-Request-ID"],
        expose_headers=["Retry-After"],
    )

    if settings.enable_metrics:
        from prometheus_fastapi_instrumentator import Instrumentator

        Instrumentator(
            excluded_handlers=["/health", "/health/services", "/metrics"],
        ).instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)

    app.include_router(health_router)
    app.include_router(api_router)

    @app.get("/")
    async def root() -> dict[str, str]:
        return {"name": settings.app_name, "version": settings.app_version}

    return app


# Application instance
app = create_app()
