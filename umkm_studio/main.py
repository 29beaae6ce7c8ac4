"""FastAPI application entry point.

This module configures the FastAPI application with:
- CORS middleware for frontend communication
- API v1 router with all endpoints
- Database, Redis and ARQ lifecycle management
- Health check endpoints
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from umkm_studio.api.v1.api import api_router
from umkm_studio.core.arq_config import close_arq_pool, get_arq_pool
from umkm_studio.core.config import settings
from umkm_studio.core.database import close_db
from umkm_studio.core.pubsub import close_redis, get_redis

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    logger.info(f"Starting {settings.PROJECT_NAME} API...")

    try:
        await get_redis()
        logger.info("Redis connection pool initialized")

        await get_arq_pool()
        logger.info("ARQ job queue pool initialized")

    except Exception as e:
        logger.error(f"Failed to initialize connections: {e}")
        # Continue startup even if Redis is unavailable
        # Job submissions fail and refund until it is back

    yield  # Application is running

    logger.info(f"Shutting down {settings.PROJECT_NAME} API...")

    try:
        await close_arq_pool()
        await close_redis()
        await close_db()
    except Exception as e:
        logger.error(f"Error during shutdown: {e}")


app = FastAPI(
    title=f"{settings.PROJECT_NAME} API",
    description="Marketing image generation with a prepaid credit ledger",
    version=settings.VERSION,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API v1 router
app.include_router(api_router, prefix=settings.API_V1_PREFIX)


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok", "service": "umkm-studio-backend"}


@app.get("/api/v1/status")
async def status_check():
    """API status endpoint with service health details."""
    try:
        redis_status = "connected" if await (await get_redis()).ping() else "disconnected"
    except Exception as e:
        logger.warning(f"Redis ping failed: {e}")
        redis_status = "disconnected"

    return {
        "status": "running",
        "version": settings.VERSION,
        "environment": settings.ENVIRONMENT,
        "services": {
            "redis": redis_status,
            "job_queue": "arq",
        },
    }
