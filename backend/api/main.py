"""
OrderOps API: FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from core.config import get_settings

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("OrderOps API starting up", version=settings.app_version, env=settings.app_env)
    yield
    logger.info("OrderOps API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Order risk scoring and payment/fulfillment reconciliation",
    lifespan=lifespan,
)

# Import and register routers
from api.v1.routers import orders, payments, shipping, webhooks

app.include_router(webhooks.router)
app.include_router(shipping.router)
app.include_router(payments.router)
app.include_router(orders.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}
