# ABOUTME: FastAPI application entry point
# ABOUTME: Builds the store handle and auth services, registers routers and middleware

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from cn_api.api import admin, health, products
from cn_api.config import Settings, get_settings
from cn_api.database import Database
from cn_api.middleware.usage import UsageTrackingMiddleware
from cn_api.services.auth_gateway import AuthGateway
from cn_api.services.exceptions import StorageError
from cn_api.services.key_manager import KeyManager
from cn_api.services.quota_guard import QuotaGuard
from cn_api.services.tier_catalog import TierCatalog
from cn_api.services.usage_accountant import UsageAccountant

logger = logging.getLogger(__name__)


def build_gateway(database: Database, settings: Settings) -> AuthGateway:
    """Wire the key, tier, usage and quota services onto one store handle."""
    session_factory = database.SessionLocal
    key_manager = KeyManager(session_factory, key_prefix=settings.api_key_prefix)
    tier_catalog = TierCatalog(session_factory, floor_limit=settings.default_monthly_call_limit)
    accountant = UsageAccountant(session_factory)
    quota_guard = QuotaGuard(accountant, tier_catalog)
    return AuthGateway(
        key_manager,
        quota_guard,
        accountant,
        tier_catalog,
        timeout_seconds=settings.auth_timeout_seconds,
        recorder_workers=settings.usage_recorder_workers,
    )


def create_app(settings: Settings | None = None, database: Database | None = None) -> FastAPI:
    """
    Build the application.

    This is the single place the store handle and the services are
    constructed; everything else receives them through app.state.
    """
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level)

    database = database or Database(settings.database_url)
    gateway = build_gateway(database, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.create_tables_on_startup:
            database.init_db()
        yield
        # Let in-flight usage records land before shutting down
        gateway.close()

    app = FastAPI(
        title="CN Database API",
        description="REST API for Child Nutrition product data, metered per API key",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.database = database
    app.state.gateway = gateway

    # Add middleware
    app.add_middleware(UsageTrackingMiddleware)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Custom exception handler to format error responses."""
        # If detail is a dict, use it directly (for our custom error format)
        if isinstance(exc.detail, dict):
            return JSONResponse(
                status_code=exc.status_code,
                content=exc.detail
            )
        # Otherwise, wrap it in standard format
        return JSONResponse(
            status_code=exc.status_code,
            content={"code": "ERROR", "message": exc.detail}
        )

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        """Storage failures surface as a generic 500 without usage details."""
        logger.error("Storage failure on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=500,
            content={"code": "INTERNAL_ERROR", "message": "Internal server error"}
        )

    # Register routers
    app.include_router(health.router)
    app.include_router(products.router)
    app.include_router(admin.router)

    return app


app = create_app()
