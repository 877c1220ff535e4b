from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from shortlink_app.api.v1 import links, redirect
from shortlink_app.config import Settings, settings as default_settings
from shortlink_app.dependencies import build_components
from shortlink_app.exceptions import (
    CodeAlreadyTaken,
    CodeSpaceExhausted,
    Forbidden,
    InvalidCodeFormat,
    InvalidPassword,
    InvalidUrl,
    LinkError,
    LinkInactive,
    LinkNotFound,
    PasswordRequired,
    StoreUnavailable,
)
from shortlink_app.logging_config import configure_logging

logger = structlog.get_logger(__name__)

ERROR_STATUS = {
    InvalidUrl: 400,
    InvalidCodeFormat: 400,
    PasswordRequired: 401,
    Forbidden: 403,
    InvalidPassword: 403,
    LinkNotFound: 404,
    CodeAlreadyTaken: 409,
    LinkInactive: 410,
    CodeSpaceExhausted: 503,
    StoreUnavailable: 503,
}


def status_for(error: LinkError) -> int:
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return status_code
    return 500


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the application; components are created and torn down in the lifespan."""
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings)
        components = build_components(settings)
        app.state.components = components
        await components.start()
        logger.info("application started", environment=settings.environment)
        try:
            yield
        finally:
            await components.close()
            logger.info("application stopped")

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="A URL shortener service built with FastAPI",
        debug=settings.debug,
        lifespan=lifespan,
    )

    @app.exception_handler(LinkError)
    async def link_error_handler(request: Request, exc: LinkError):
        status_code = status_for(exc)
        headers = {"Retry-After": "1"} if exc.retryable else None
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.code, "detail": exc.message},
            headers=headers,
        )

    @app.get("/")
    def read_root():
        """Root endpoint with API information"""
        return {
            "message": f"Welcome to {settings.app_name}",
            "version": settings.app_version,
            "docs": "/docs",
            "redoc": "/redoc"
        }

    @app.get("/health")
    def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "environment": settings.environment}

    ######## Include routers
    app.include_router(links.router, prefix="/api/v1")
    app.include_router(redirect.router)

    return app


app = create_app()
