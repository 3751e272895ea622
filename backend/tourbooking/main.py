"""
Tour Booking Engine - Main Application Entry Point

Seat inventory and payment reconciliation for scheduled tours:
- Just-in-time departure instances with row-locked seat booking
- Three-tier ticket pricing (base, batch override, single override)
- Stripe webhook driven payment/refund state machine
- Redis-cached availability with per-tour invalidation
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tourbooking.api.middleware import RequestLoggingMiddleware
from tourbooking.api.router import api_router
from tourbooking.core.config import get_settings
from tourbooking.core.exceptions import BookingEngineError, RateLimitExceeded
from tourbooking.core.logging import get_logger, setup_logging
from tourbooking.core.metrics import metrics_endpoint
from tourbooking.db.session import get_engine
from tourbooking.services.cache_service import close_redis, get_cache_stats, get_redis
from tourbooking.services.notification_service import drain_notifications

settings = get_settings()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup and shutdown hooks."""
    setup_logging()

    logger.info(
        "application_starting",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
    )

    redis_client = await get_redis()
    if redis_client:
        logger.info("redis_ready")
    else:
        logger.warning("redis_unavailable", message="Running without availability cache")

    yield

    await drain_notifications()
    await close_redis()
    await get_engine().dispose()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Tour seat inventory, pricing and payment reconciliation",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware)

app.include_router(api_router)


@app.exception_handler(BookingEngineError)
async def booking_engine_error_handler(request: Request, exc: BookingEngineError):
    logger.info("request_rejected", code=exc.code, status_code=exc.status_code, message=exc.message)
    headers = None
    if isinstance(exc, RateLimitExceeded):
        headers = {"Retry-After": str(exc.retry_after_s)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint for Docker and load balancers."""
    cache_stats = await get_cache_stats()
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "cache": cache_stats,
    }


@app.get("/metrics", tags=["Health"])
async def metrics():
    return metrics_endpoint()
