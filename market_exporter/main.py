"""
FastAPI application entry point.
"""

import logging
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from market_exporter import __version__
from market_exporter.api.router import router as v1_router
from market_exporter.config import get_settings
from market_exporter.core.security import sanitize_dict_for_logging
from market_exporter.deps import ExporterServices, build_services, close_redis, get_redis
from market_exporter.schemas.common import HealthResponse

logger = logging.getLogger(__name__)


def configure_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown."""
    # Startup
    owns_services = app.state.services is None
    if owns_services:
        settings = get_settings()
        configure_logging(settings.log_level)
        logger.info(f"Starting with settings: {sanitize_dict_for_logging(settings.model_dump())}")
        app.state.services = build_services(settings, await get_redis())

    services: ExporterServices = app.state.services
    await services.scheduler.start()
    yield
    # Shutdown
    await services.scheduler.stop()
    if owns_services:
        await services.catalog.close()
        await close_redis()
        app.state.services = None


def create_app(services: Optional[ExporterServices] = None) -> FastAPI:
    """
    Create the application.

    Args:
        services: Prebuilt service graph; built from settings at startup when None
    """
    app = FastAPI(
        title="Market Exporter API",
        description="Chunked, resumable Yandex Market feed export for WooCommerce",
        version=__version__,
        lifespan=lifespan
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(v1_router, prefix="/api/v1")

    @app.get("/api/v1/health", response_model=HealthResponse, tags=["health"])
    async def health_check():
        """Health check endpoint."""
        return HealthResponse(ok=True)

    @app.get("/api/v1/health/redis", tags=["health"])
    async def health_check_redis(request: Request):
        """Check Redis connection health."""
        try:
            await request.app.state.services.redis.ping()
            return {"ok": True, "redis": "connected"}
        except Exception as e:
            return {"ok": False, "redis": "disconnected", "error": str(e)}

    @app.get("/", tags=["root"])
    async def root():
        """Root endpoint."""
        return {
            "message": "Market Exporter API",
            "version": __version__,
            "docs": "/docs"
        }

    return app


app = create_app()
