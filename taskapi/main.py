import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from limits.aio.storage import Storage
from redis.asyncio import Redis
from starlette.exceptions import HTTPException as StarletteHTTPException

from taskapi.api.deps import format_validation_errors
from taskapi.auth.provider import GoTrueIdentityProvider, IdentityProvider
from taskapi.cache.layer import CacheLayer
from taskapi.core.config import Settings, get_settings
from taskapi.core.errors import APIError
from taskapi.core.logging import setup_logging
from taskapi.database import service_session
from taskapi.middleware.perimeter import PerimeterMiddleware
from taskapi.ratelimit.limiter import RateLimiter, build_storage
from taskapi.routers import admin, auth, tasks
from taskapi.services.archive_service import run_archive_schedule

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    redis: Optional[Redis] = None,
    identity_provider: Optional[IdentityProvider] = None,
    limiter_storage: Optional[Storage] = None,
) -> FastAPI:
    """Build the application; backends can be injected for tests."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.log_buffer = setup_logging(settings)

        client = redis if redis is not None else Redis.from_url(
            settings.redis_dsn,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.redis_pool_size,
            socket_connect_timeout=settings.redis_socket_timeout,
            socket_timeout=settings.redis_socket_timeout,
            socket_keepalive=True,
            health_check_interval=30,
        )
        app.state.cache = CacheLayer(client, settings)
        app.state.rate_limiter = RateLimiter.from_settings(
            limiter_storage if limiter_storage is not None else build_storage(settings),
            settings,
        )
        app.state.identity_provider = identity_provider or GoTrueIdentityProvider(settings)
        await app.state.cache.init_cache()

        scheduler = None
        if settings.archive_schedule_enabled:
            scheduler = asyncio.create_task(
                run_archive_schedule(service_session, app.state.cache, settings)
            )
            logger.info("Archive schedule started")

        logger.info("Application startup completed successfully")
        yield

        if scheduler is not None:
            scheduler.cancel()
            with suppress(asyncio.CancelledError):
                await scheduler
        await app.state.identity_provider.aclose()
        await app.state.cache.close()
        logger.info("Application shutdown completed successfully")

    app = FastAPI(
        title="Task Tracker API",
        description="Multi-tenant async task tracking API with Redis caching and rate limiting",
        swagger_ui_parameters={"displayRequestDuration": True},
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(PerimeterMiddleware)

    @app.exception_handler(APIError)
    async def api_error_handler(request: Request, exc: APIError):
        return JSONResponse(
            status_code=exc.status_code, content=exc.to_content(), headers=exc.headers
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "Validation failed",
                "details": format_validation_errors(exc.errors()),
            },
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    # Include routers
    app.include_router(tasks.router)
    app.include_router(admin.router)
    app.include_router(auth.router)

    @app.get("/")
    async def root():
        return {
            "message": "Welcome to Task Tracker API",
            "docs": "/docs",
            "version": "1.0.0",
        }

    @app.get("/health")
    async def health_check(request: Request):
        return {"status": "healthy", "cache": request.app.state.cache.get_stats()}

    return app


app = create_app()
