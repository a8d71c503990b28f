"""FastAPI application entry point."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError
from starlette.middleware.trustedhost import TrustedHostMiddleware

from mediasync.api.cloudinary import router as cloudinary_router
from mediasync.api.cloudinary import webhook_router
from mediasync.api.health import router as health_router
from mediasync.api.sync import router as sync_router
from mediasync.config import Settings
from mediasync.database import create_engine, init_schema
from mediasync.services.jobs import build_scheduler
from mediasync.services.lock_service import create_lock_provider
from mediasync.services.operation_service import SyncOperationTracker
from mediasync.store.base import PermanentStoreError, TransientStoreError
from mediasync.store.cloudinary import CloudinaryStore

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from mediasync.store.base import AssetStore

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool) -> None:
    """Configure application logging."""
    level = logging.DEBUG if debug else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stdout,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


async def init_runtime(app: FastAPI, settings: Settings) -> None:
    """Create the database, store client, tracker and scheduler on ``app.state``.

    A store already placed on ``app.state.store`` is kept, which is how tests
    plug in a fake.
    """
    try:
        engine, session_factory = create_engine(settings)
        app.state.engine = engine
        app.state.session_factory = session_factory
    except Exception as exc:
        logger.critical(
            "Failed to initialize database: %s. Check database URL and permissions.", exc
        )
        raise

    try:
        await init_schema(engine)
    except Exception as exc:
        logger.critical("Failed to create database schema: %s.", exc)
        raise

    store: AssetStore | None = getattr(app.state, "store", None)
    if store is None and settings.store_configured:
        store = CloudinaryStore.from_settings(settings)
    if store is None:
        logger.warning("Cloudinary credentials missing; store endpoints will return 503")
    app.state.store = store

    tracker = SyncOperationTracker(session_factory)
    app.state.tracker = tracker
    app.state.lock_provider = create_lock_provider(settings, session_factory)
    app.state.scheduler = build_scheduler(
        settings, session_factory, store, tracker, app.state.lock_provider
    )
    if settings.scheduler_auto_start and store is not None:
        app.state.scheduler.start()


async def shutdown_runtime(app: FastAPI) -> None:
    """Stop timers, close the store client and dispose of the engine."""
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        scheduler.stop()
        await scheduler.wait_idle()

    store = getattr(app.state, "store", None)
    if store is not None:
        try:
            await store.aclose()
        except Exception as exc:
            logger.error("Error closing asset store client: %s", exc, exc_info=True)

    try:
        await app.state.engine.dispose()
    except Exception as exc:
        logger.error("Error during engine disposal: %s", exc, exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings
    settings.validate_runtime_security()
    _configure_logging(settings.debug)
    logger.info("Starting media sync service (debug=%s)", settings.debug)

    await init_runtime(app, settings)

    yield

    await shutdown_runtime(app)
    logger.info("Media sync service stopped")


def create_app(settings: Settings | None = None, store: AssetStore | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = Settings()

    docs_enabled = settings.debug or settings.expose_docs

    app = FastAPI(
        title="MediaSync",
        description="Bidirectional sync between Cloudinary and a metadata mirror",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
        openapi_url="/openapi.json" if docs_enabled else None,
    )
    app.state.settings = settings
    app.state.store = store

    app.add_middleware(GZipMiddleware, minimum_size=500)

    cors_origins = (
        settings.cors_origins
        if settings.cors_origins
        else (["http://localhost:5173", "http://localhost:8000"] if settings.debug else [])
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    trusted_hosts = settings.trusted_hosts or (
        ["localhost", "127.0.0.1", "::1", "test", "testserver"] if settings.debug else []
    )
    if trusted_hosts:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

    app.include_router(health_router)
    app.include_router(sync_router)
    app.include_router(cloudinary_router)
    app.include_router(webhook_router)

    # Global exception handlers: safety net for unhandled exceptions

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = []
        for err in exc.errors():
            loc = err.get("loc", ())
            field = str(loc[-1]) if loc else "unknown"
            errors.append({"field": field, "message": err.get("msg", "Invalid value")})
        logger.warning(
            "RequestValidationError in %s %s: %s",
            request.method,
            request.url.path,
            errors,
        )
        return JSONResponse(status_code=422, content={"detail": errors})

    @app.exception_handler(TransientStoreError)
    async def transient_store_error_handler(
        request: Request, exc: TransientStoreError
    ) -> JSONResponse:
        logger.error(
            "TransientStoreError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        return JSONResponse(
            status_code=503,
            content={"detail": "Asset store unavailable"},
        )

    @app.exception_handler(PermanentStoreError)
    async def permanent_store_error_handler(
        request: Request, exc: PermanentStoreError
    ) -> JSONResponse:
        logger.error(
            "PermanentStoreError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        return JSONResponse(
            status_code=502,
            content={"detail": "Asset store rejected the request"},
        )

    @app.exception_handler(RuntimeError)
    async def runtime_error_handler(request: Request, exc: RuntimeError) -> JSONResponse:
        if isinstance(exc, (NotImplementedError, RecursionError)):
            raise exc
        logger.error(
            "RuntimeError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal processing error"},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.error("ValueError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        message = str(exc) or "Invalid value"
        return JSONResponse(
            status_code=422,
            content={"detail": message},
        )

    @app.exception_handler(TypeError)
    async def type_error_handler(request: Request, exc: TypeError) -> JSONResponse:
        logger.error(
            "[BUG] TypeError in %s %s: %s",
            request.method,
            request.url.path,
            exc,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    @app.exception_handler(OperationalError)
    async def operational_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
        logger.error(
            "OperationalError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        return JSONResponse(
            status_code=503,
            content={"detail": "Database temporarily unavailable"},
        )

    return app


app = create_app()


def cli_entry() -> None:
    """CLI entry point for running the server."""
    import uvicorn

    settings: Settings = app.state.settings
    uvicorn.run(
        "mediasync.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
