"""
FastAPI Application Module

Application factory for the fee webhook endpoint and subscription
enrollment.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .. import __version__
from ..billing.engine import BillingEngine, create_billing_engine
from ..webhooks.routes import router as fees_router


logger = structlog.get_logger(__name__)


# =============================================================================
# Health Check Models
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "healthy"
    version: str
    timestamp: datetime
    checks: Dict[str, Any] = {}


# =============================================================================
# Exception Handlers
# =============================================================================


async def generic_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.exception("unhandled_exception", path=request.url.path)

    return JSONResponse(
        status_code=500,
        content={
            "error": "An unexpected error occurred",
            "timestamp": datetime.utcnow().isoformat(),
        },
    )


# =============================================================================
# Application Factory
# =============================================================================


def create_app(engine: Optional[BillingEngine] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        engine: Billing engine to serve; built from settings when omitted

    Returns:
        Configured FastAPI application
    """
    engine = engine or create_billing_engine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("api_starting")
        if engine.db is not None and engine.db.is_sqlite:
            await engine.db.create_all()
        await engine.start()

        yield

        logger.info("api_stopping")
        await engine.stop()

    app = FastAPI(
        title="Club Fee Billing API",
        description="Processor webhooks and subscription enrollment for club fees",
        version=__version__,
        docs_url=None if engine.settings.is_production else "/docs",
        redoc_url=None if engine.settings.is_production else "/redoc",
        lifespan=lifespan,
    )

    app.state.engine = engine

    app.add_exception_handler(Exception, generic_exception_handler)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check():
        """Health check endpoint."""
        checks = await engine.health_check()
        healthy = checks.get("database", "ok") == "ok"
        return HealthResponse(
            status="healthy" if healthy else "degraded",
            version=__version__,
            timestamp=datetime.utcnow(),
            checks={"api": "ok", **checks},
        )

    app.include_router(fees_router)

    return app
