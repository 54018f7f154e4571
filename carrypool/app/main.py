"""
FastAPI Application Entry Point.

This is the main application file for the Carrypool Backend.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from sqlalchemy.orm.exc import StaleDataError
from carrypool.app.core.config import settings
from carrypool.app.api.v1.router import router as api_v1_router
from carrypool.app.core.observability import ObservabilityMiddleware
from carrypool.app.core.redis_client import ping_redis
from carrypool.app.db.session import engine, Base
from carrypool.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    stale_data_handler,
    generic_exception_handler
)

# Import models to ensure they are registered with Base
from carrypool.app.models.user import User
from carrypool.app.models.audit_log import AuditLog
from carrypool.app.models.package import Package
from carrypool.app.models.trip import Trip
from carrypool.app.models.assignment import Assignment
from carrypool.app.models.price_proposal import PriceProposal
from carrypool.app.models.safety_confirmation import SafetyConfirmation
from carrypool.app.models.transaction import Transaction
from carrypool.app.models.dispute import Dispute
from carrypool.app.models.tracking_event import TrackingEvent
from carrypool.app.models.dlq import DeadLetterQueue
from carrypool.app.models.notification import Notification

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("carrypool")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Creates database tables on startup.
    2. Disposes the engine pool on shutdown.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("%s started (gateway=%s)", settings.app_name, settings.payment_gateway)
    yield
    await engine.dispose()


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Peer-to-peer package delivery marketplace: matching, negotiation, escrow and disputes",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(StaleDataError, stale_data_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status and application information
    """
    redis_ok = await ping_redis()
    return {
        "status": "healthy" if redis_ok else "degraded",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "redis": redis_ok,
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    """
    Root endpoint.

    Returns:
        dict: Welcome message and API documentation links
    """
    return {
        "message": "Welcome to Carrypool Backend API",
        "docs": "/docs",
        "health": "/health",
    }
