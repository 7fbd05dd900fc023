# ═══════════════════════════════════════════════════════════════
# HarborList Billing - API Application
# FastAPI app factory, lifespan and error handling
# ═══════════════════════════════════════════════════════════════
"""
FastAPI application.

The lifespan connects the database pool, applies the schema and wires
the billing engine onto ``app.state.engine``. Tests (or embedding
services) can pass a pre-built engine instead.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..core.billing.engine import BillingEngine, build_engine
from ..core.config import Settings, get_settings
from ..core.database import init_db_pool
from ..core.exceptions import BillingException
from ..core.logging import configure_logging, logging_context
from .billing_routes import router as billing_router

logger = logging.getLogger("harbor_billing.api")


def create_app(settings: Optional[Settings] = None, engine: Optional[BillingEngine] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        settings: Settings to use (default: loaded from the environment)
        engine: Pre-built engine; when given, no database pool is opened
    """
    settings = settings or (engine.settings if engine else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(log_level=settings.log_level, log_format=settings.log_format)

        pool = None
        if getattr(app.state, "engine", None) is None:
            pool = await init_db_pool(
                settings.database_url,
                min_size=settings.database_min_pool_size,
                max_size=settings.database_max_pool_size,
                apply_schema=settings.database_apply_schema,
            )
            app.state.pool = pool
            app.state.engine = build_engine(settings, pool=pool)

        logger.info("HarborList billing API started")
        try:
            yield
        finally:
            await app.state.engine.close()
            if pool is not None:
                await pool.disconnect()
            logger.info("HarborList billing API stopped")

    app = FastAPI(
        title="HarborList Billing",
        description="Payment retries, dunning, disputes and processor webhooks",
        version="1.0.0",
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.pool = None
    app.state.engine = engine

    @app.exception_handler(BillingException)
    async def billing_exception_handler(request: Request, exc: BillingException):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc!r}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc.error_code}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        with logging_context(request_id=request_id):
            response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.get("/health")
    async def health():
        pool = app.state.pool
        if pool is None:
            return {"status": "healthy", "database": None}
        database = await pool.health_check()
        return {
            "status": "healthy" if database.get("healthy") else "degraded",
            "database": database,
        }

    app.include_router(billing_router)
    return app


app = create_app()
