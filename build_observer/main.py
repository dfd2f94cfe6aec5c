"""
Build Observer - FastAPI Application

Serves the dashboard's build observability routes and owns the single
DashboardCoordinator (session registry + build service client) for the
process. All sessions are stopped on shutdown.

Run with:
    uvicorn build_observer.main:app --port 8002
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request

from . import __version__
from .build_client import BuildServiceClient
from .config import ObserverSettings, load_settings
from .dashboard_api import router as dashboard_router
from .surfaces import DashboardCoordinator

logger = logging.getLogger("build_observer")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def create_app(
    settings: Optional[ObserverSettings] = None,
    coordinator: Optional[DashboardCoordinator] = None
) -> FastAPI:
    """Build the application around a coordinator (created from settings if absent)."""
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    if coordinator is None:
        client = BuildServiceClient.from_settings(settings)
        coordinator = DashboardCoordinator(client, interval=settings.poll_interval)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Build observer {__version__} started against {settings.api_url}")
        yield
        app.state.coordinator.shutdown()

    app = FastAPI(
        title="Build Observer",
        description="Build status classification and live log synchronization",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.coordinator = coordinator
    app.state.settings = settings
    app.include_router(dashboard_router)

    @app.get("/health")
    async def health(request: Request) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "version": __version__,
            "timestamp": datetime.utcnow().isoformat(),
            "poll_interval": request.app.state.settings.poll_interval,
            **request.app.state.coordinator.stats(),
        }

    return app


app = create_app()
