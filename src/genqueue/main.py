"""Main FastAPI application for genqueue"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .api.router import router
from .config import Settings, get_settings
from .logging_setup import setup_logging
from .services import build_services


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the application. Services are created by the lifespan."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Set up the task store, queue and notifier on startup"""
        resolved = settings or get_settings()
        setup_logging(resolved.log_level)

        app.state.services = await build_services(resolved)

        yield  # App is running

        # Cancel running jobs and close connections on shutdown
        await app.state.services.close()

    app = FastAPI(
        title="genqueue",
        description="Asynchronous generation task queue",
        lifespan=lifespan,
    )
    app.include_router(router)
    return app


app = create_app()
