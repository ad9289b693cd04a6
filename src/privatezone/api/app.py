"""Portal API — FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that loads configuration, opens the database pool and
  wires the sync services into the router dependencies
- The standard error envelope (see :mod:`privatezone.api.middleware`)
- Routers for sync, calendar writes, tasks, attachments, integrations and
  health
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from privatezone.api.deps import PortalServices, build_services, wire_services
from privatezone.api.middleware import register_error_handlers
from privatezone.api.routers.attachments import router as attachments_router
from privatezone.api.routers.calendar import router as calendar_router
from privatezone.api.routers.health import router as health_router
from privatezone.api.routers.integrations import router as integrations_router
from privatezone.api.routers.sync import router as sync_router
from privatezone.api.routers.tasks import router as tasks_router
from privatezone.config import PortalConfig, load_config
from privatezone.core.logging import configure_logging
from privatezone.db import Database

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle for the database pool and HTTP client.

    Services passed to :func:`create_app` are used as-is; otherwise they are
    built from ``portal.toml`` and the ``DATABASE_URL`` environment.
    """
    services: PortalServices | None = app.state.services
    if services is None:
        config: PortalConfig = app.state.config or load_config()
        configure_logging(
            level=config.logging.level,
            fmt=config.logging.format,
            log_root=Path(config.logging.log_root) if config.logging.log_root else None,
            portal_name=config.name,
        )
        db = Database.from_env()
        await db.connect()
        services = build_services(config, db)
        app.state.services = services
        logger.info("Portal %s started on database %s", config.name, db.db_name)

    wire_services(app, services)

    yield

    await services.close()
    logger.info("Portal services closed")


def create_app(
    config: PortalConfig | None = None,
    services: PortalServices | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Parsed portal configuration.  Loaded from ``portal.toml`` at startup
        when omitted.
    services:
        Pre-built service container.  When given, the lifespan skips
        database and HTTP client construction (used by tests and embedders).
    cors_origins:
        Allowed CORS origins. Defaults to ``["http://localhost:5173"]`` for
        the local frontend dev server.
    """
    if cors_origins is None:
        cors_origins = ["http://localhost:5173"]

    app = FastAPI(
        title="Private Zone API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    app.state.config = config
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(health_router)
    app.include_router(integrations_router)
    app.include_router(sync_router)
    app.include_router(calendar_router)
    app.include_router(tasks_router)
    app.include_router(attachments_router)

    return app
