"""
FastAPI application factory.

Creates and configures the automation engine API application.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from automation_engine import __version__
from automation_engine.api.routes import router
from automation_engine.config import Settings, get_settings
from automation_engine.runtime import AutomationRuntime

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    A runtime already placed on ``app.state`` (tests) is used as-is.
    """
    owns_runtime = getattr(app.state, "runtime", None) is None

    if owns_runtime:
        logger.info("Starting Subscriber Automation Engine API...")
        runtime = AutomationRuntime(app.state.settings)
        await runtime.init()
        app.state.runtime = runtime
        logger.info(
            f"Automation API started - Environment: {app.state.settings.environment.value}"
        )

    yield

    if owns_runtime:
        logger.info("Shutting down Subscriber Automation Engine API...")
        await app.state.runtime.close()
        app.state.runtime = None
        logger.info("Automation API shutdown complete")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.
    """
    settings = settings or get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = FastAPI(
        title=settings.app_name,
        description="Event-driven subscriber automation engine",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )
    app.state.settings = settings
    app.state.runtime = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.is_development else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.get("/", tags=["root"])
    async def root():
        return {
            "name": settings.app_name,
            "version": __version__,
            "status": "running",
        }

    return app


def main() -> None:
    """Serve the API with uvicorn."""
    settings = get_settings()
    uvicorn.run(
        "automation_engine.api.app:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
