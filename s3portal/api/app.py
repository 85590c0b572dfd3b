"""
FastAPI application factory.

Maps the storage error taxonomy onto HTTP status codes and ties the portal
lifecycle (background cleanup, task cancellation) to the server lifespan.
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from s3portal.api.routes import router
from s3portal.core.app import PortalApp
from s3portal.storage.models import (
    ConfigPersistenceError,
    ConfigurationError,
    StorageError,
    StoreNotFoundError,
    UploadTooLargeError,
    UpstreamError,
)
from s3portal.utils.env_config import AppSettings
from s3portal.utils.validators import ValidationException

logger = structlog.get_logger(__name__)


def status_for(error: StorageError) -> int:
    """HTTP status for a storage error.

    Upstream failures are always reported as 500; the status the backing
    store answered with is only logged.
    """
    if isinstance(error, ConfigPersistenceError):
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    if isinstance(error, ConfigurationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(error, UploadTooLargeError):
        return status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _error_response(status_code: int, message: str, code: Optional[str]) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": message, "code": code})


async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    status_code = status_for(exc)
    message = exc.message
    if isinstance(exc, StoreNotFoundError):
        message = f"Region config error: {exc.message}"

    if isinstance(exc, UpstreamError) or status_code >= 500:
        logger.error(
            "Storage request failed",
            path=request.url.path,
            error=exc.message,
            code=exc.error_code,
            upstream_status=exc.status_code,
        )
    else:
        logger.info("Rejected storage request", path=request.url.path, error=exc.message, code=exc.error_code)
    return _error_response(status_code, message, exc.error_code)


async def validation_error_handler(request: Request, exc: ValidationException) -> JSONResponse:
    logger.info("Invalid request", path=request.url.path, error=exc.message, field=exc.field)
    return _error_response(status.HTTP_400_BAD_REQUEST, exc.message, exc.code)


def create_app(portal: Optional[PortalApp] = None, settings: Optional[AppSettings] = None) -> FastAPI:
    """Build the HTTP application around ``portal``.

    A portal is created from ``settings`` (or the environment) when none is
    given.
    """
    if portal is None:
        portal = PortalApp(settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await portal.initialize()
        try:
            yield
        finally:
            await portal.shutdown()

    app = FastAPI(
        title=portal.settings.app_name,
        version=portal.settings.app_version,
        debug=portal.settings.debug,
        lifespan=lifespan,
    )
    app.state.portal = portal

    app.add_middleware(
        CORSMiddleware,
        allow_origins=portal.settings.cors_origins,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["X-Requested-With", "Content-Type", "Authorization"],
        expose_headers=["Content-Disposition"],
    )
    app.add_exception_handler(StorageError, storage_error_handler)
    app.add_exception_handler(ValidationException, validation_error_handler)
    app.include_router(router)

    @app.get("/health")
    async def health() -> dict:
        return {
            "status": "ok",
            "version": portal.settings.app_version,
            "stores": len(portal.registry),
            "statsEntries": len(portal.stats_cache),
            "backgroundTasks": portal.task_manager.running,
        }

    return app
