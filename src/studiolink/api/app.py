"""Studio API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that opens the DB pool and shared HTTP client
- Health endpoint at GET /api/health
- The OAuth, calendar, quote and busy-time routers
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from studiolink import catalog as catalog_module
from studiolink import credential_store
from studiolink.api.deps import Studio, build_studio
from studiolink.api.middleware import register_error_handlers
from studiolink.api.routers.busy import router as busy_router
from studiolink.api.routers.calendars import router as calendars_router
from studiolink.api.routers.oauth import router as oauth_router
from studiolink.api.routers.quotes import router as quotes_router
from studiolink.catalog import Catalog
from studiolink.config import StudioConfig, load_config
from studiolink.core.logging import configure_logging
from studiolink.core.metrics import init_metrics
from studiolink.core.telemetry import init_telemetry
from studiolink.credential_store import OAuthCredentialStore
from studiolink.db import Database

logger = logging.getLogger(__name__)


def _make_lifespan(config: StudioConfig | None, studio: Studio | None):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup/shutdown lifecycle for the DB pool and HTTP client.

        When a prebuilt :class:`Studio` was handed to ``create_app`` it is used
        as-is and no external resources are opened.
        """
        if studio is not None:
            app.state.studio = studio
            yield
            return

        resolved = config or load_config()
        log_root = Path(resolved.logging.log_root) if resolved.logging.log_root else None
        configure_logging(
            level=resolved.logging.level,
            fmt=resolved.logging.format,
            log_root=log_root,
            studio_name=resolved.name,
        )
        init_telemetry(f"studiolink.{resolved.name}")
        init_metrics(f"studiolink.{resolved.name}")

        db = Database.from_env(resolved.db_name)
        pool = await db.connect()
        http_client = httpx.AsyncClient(timeout=resolved.calendar.request_timeout_seconds)
        try:
            await catalog_module.ensure_schema(pool)
            await credential_store.ensure_schema(pool)
            app.state.studio = build_studio(
                resolved,
                store=OAuthCredentialStore(pool),
                catalog=Catalog(pool),
                http_client=http_client,
            )
            logger.info("Studio %r ready on db=%s", resolved.name, resolved.db_name)
            yield
        finally:
            app.state.studio = None
            await http_client.aclose()
            await db.close()

    return lifespan


def create_app(
    config: StudioConfig | None = None,
    *,
    studio: Studio | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Studio configuration.  Loaded from ``studio.toml`` (or
        ``STUDIOLINK_CONFIG``) at startup when omitted.
    studio:
        Prebuilt component container.  Tests pass one built from fakes.
    cors_origins:
        Allowed CORS origins. Defaults to ["http://localhost:5173"] for
        local Vite dev server.
    """
    if cors_origins is None:
        cors_origins = ["http://localhost:5173"]

    app = FastAPI(
        title="Studiolink API",
        version="0.1.0",
        lifespan=_make_lifespan(config, studio),
    )
    app.router.redirect_slashes = False
    if studio is not None:
        app.state.studio = studio

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(oauth_router)
    app.include_router(calendars_router)
    app.include_router(quotes_router)
    app.include_router(busy_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
