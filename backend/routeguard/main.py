"""
RouteGuard Backend — FastAPI Application Factory
==================================================

What:  Creates and configures the FastAPI application instance.
Why:   One place compiles the route table, builds the shared services,
       registers middleware and exception handlers, and mounts the pipeline.
How:   Factory pattern: create_app() returns a configured FastAPI instance.
Who:   uvicorn (uvicorn routeguard.main:app) and the test suite.
When:  Once at server startup. A malformed routes.yml or an unresolvable
       controller raises ConfigurationError here, before any request.

Application Architecture:
    ┌──────────────────────────────────────────────────────────────┐
    │  Middleware:  Request ID → Access Log → Security → GZip → CORS │
    │                                                              │
    │  Routes:      GET /health        (outside the pipeline)      │
    │               /{path:path}       → RequestPipeline.run()     │
    │                                                              │
    │  Pipeline:    lookup → rate limit → params → auth →          │
    │               uploads → models → handler → usage             │
    └──────────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:   logging, configuration check, usage retention pass
    Shutdown:  flush usage store, close rate-limit store, dispose engine
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

from routeguard import __version__
from routeguard.config import Settings, settings as default_settings
from routeguard.database import dispose_engine
from routeguard.exceptions import ConfigurationError, InternalFailure, RouteGuardError
from routeguard.logging_config import setup_logging
from routeguard.middleware.access_log import AccessLogMiddleware
from routeguard.middleware.request_id import RequestIDMiddleware, request_id_var
from routeguard.middleware.security_headers import SecurityHeadersMiddleware
from routeguard.routes import health
from routeguard.routes.dispatch import mount_routes
from routeguard.services.pipeline import build_services
from routeguard.services.route_registry import (
    RouteDefaults,
    RouteTable,
    load_route_table,
)

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    cfg: Settings = app.state.settings
    services = app.state.services

    # ── Startup ───────────────────────────────────────────────────────────
    setup_logging(cfg.log_level)
    logger.info("=" * 60)
    logger.info("RouteGuard %s starting up (%d routes)", __version__, len(services.table))
    logger.info(
        "Rate-limit store: %s | usage driver: %s",
        services.limiter.store.name, services.recorder.store.name,
    )

    if cfg.usage_tracker_enabled and cfg.usage_retention_days > 0:
        try:
            await services.recorder.purge(cfg.usage_retention_days)
        except Exception as e:
            logger.warning("Startup usage retention pass failed: %s", e)

    logger.info("=" * 60)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("RouteGuard shutting down...")
    try:
        await services.aclose()
    finally:
        await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def register_exception_handlers(app: FastAPI, debug: bool = False) -> None:
    """
    Render errors raised outside the pipeline (health, docs, middleware)
    with the same envelope the pipeline uses.
    """

    @app.exception_handler(RouteGuardError)
    async def handle_routeguard_error(request: Request, exc: RouteGuardError):
        rid = request_id_var.get("")
        log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(log_level, "[%s] %s: %s | Context: %s", rid, type(exc).__name__, exc.message, exc.context)
        return JSONResponse(status_code=exc.status_code, content=exc.envelope(), headers=exc.headers())

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = {}
        for item in exc.errors():
            key = ".".join(str(part) for part in item.get("loc", ())) or "request"
            errors.setdefault(key, item.get("msg", "Invalid value"))
        return JSONResponse(status_code=400, content={"success": False, "errors": errors})

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "errors": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        rid = request_id_var.get("")
        logger.error("[%s] Unexpected error: %s", rid, exc, exc_info=True)
        failure = InternalFailure(detail=str(exc), debug=debug)
        return JSONResponse(status_code=failure.status_code, content=failure.envelope())


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(
    cfg: Optional[Settings] = None,
    table: Optional[RouteTable] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> FastAPI:
    """
    Assemble the application.

    Args:
        cfg:              settings (defaults to the environment-loaded singleton)
        table:            pre-compiled route table (defaults to cfg.routes_file)
        session_factory:  database sessions (defaults to the module engine)

    Raises:
        ConfigurationError for a missing secret outside debug mode, a
        malformed route document, or an unresolvable controller.
    """
    cfg = cfg or default_settings
    try:
        cfg.validate_required_for_production()
    except ValueError as e:
        raise ConfigurationError(str(e)) from e

    if table is None:
        table = load_route_table(cfg.routes_file, RouteDefaults.from_settings(cfg))
    services = build_services(cfg, table, session_factory)

    app = FastAPI(
        title=cfg.app_name,
        description="Declarative request pipeline: routing, rate limiting, auth, uploads and usage metering.",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = cfg
    app.state.services = services

    # ── Middleware (last added runs first) ────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(SecurityHeadersMiddleware, hsts=not cfg.debug)
    app.add_middleware(AccessLogMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app, debug=cfg.debug)

    # ── Routes (explicit first; the catch-all must be last) ───────────────
    app.include_router(health.router)
    app.state.pipeline = mount_routes(app, table, services)

    return app


app = create_app()
