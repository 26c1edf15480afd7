"""Application factory and logging setup for the Marionette server."""

import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from marionette import __version__
from marionette.api.errors import install_error_handlers
from marionette.api.routes import ALL_ROUTERS
from marionette.config import settings
from marionette.services import Services, build_services


def configure_logging(level: str | None = None) -> None:
    """Configure structured logging."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, (level or settings.log_level).upper(), logging.INFO),
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.dev.ConsoleRenderer()
            if sys.stderr.isatty()
            else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def create_app(services: Services | None = None) -> FastAPI:
    """Build the FastAPI app.

    Args:
        services: Pre-built service graph (tests inject one bound to a scratch DB)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        log = structlog.get_logger()
        log.info("marionette_api_started", version=__version__, environment=settings.environment)
        yield
        if services is None:
            from marionette.db import dispose_engine

            await dispose_engine()
        log.info("marionette_api_stopped")

    app = FastAPI(title="Marionette", version=__version__, lifespan=lifespan)
    app.state.services = services or build_services()
    install_error_handlers(app)
    for router in ALL_ROUTERS:
        app.include_router(router, prefix="/api")

    @app.get("/api/health", tags=["health"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    return app
