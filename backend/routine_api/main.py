# ---------------------------------------------------------------------------
# main.py
#
# FastAPI application entrypoint.
#
# This module wires together:
# - logging configuration
# - the `Database` gateway owned by the app (disposed on shutdown)
# - middleware (CORS, gzip, access log, body size limit, error envelope)
# - the health check and the versioned API routers
#
# The API is designed for a shared codebase:
# - Route handlers are kept thin: CrudController validates, Database executes
# - Cross-cutting concerns (logging, request limits, errors) are middleware
# - Configuration is centralized in config.py
# ---------------------------------------------------------------------------

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Iterable, Optional

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from .auth import IdentityProvider, StaticIdentityProvider
from .config import Settings, load_settings
from .db import Database
from .middleware import AccessLogMiddleware, BodySizeLimitMiddleware, ErrorMiddleware, install_error_handlers
from .routes import build_api_router
from .schemas import HealthOut
from .utils import utc_now_iso

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    database: Optional[Database] = None,
    identity_provider: Optional[IdentityProvider] = None,
    external_routers: Iterable[APIRouter] = (),
    internal_routers: Iterable[APIRouter] = (),
) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)
    database = database or Database(settings.database)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("API %s starting in %s mode", settings.api_version, settings.app_env)
        try:
            yield
        finally:
            await database.dispose()
            logger.info("API stopped")

    app = FastAPI(
        title="Routine API",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.database = database
    app.state.identity_provider = identity_provider or StaticIdentityProvider()

    # Innermost first: the error envelope wraps the routes, the access log
    # sees every response including rejected and failed ones.
    app.add_middleware(ErrorMiddleware, settings=settings)
    app.add_middleware(BodySizeLimitMiddleware, max_body_bytes=settings.max_body_bytes)
    app.add_middleware(AccessLogMiddleware)
    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_error_handlers(app, settings)

    @app.get("/health", response_model=HealthOut)
    async def health() -> HealthOut:
        return HealthOut(status="healthy", timestamp=utc_now_iso())

    app.include_router(build_api_router(settings.api_version, external_routers, internal_routers))
    return app


app = create_app()
