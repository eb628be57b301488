"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.api.analytics import router as analytics_router
from app.api.redirect import router as redirect_router
from app.api.urls import router as urls_router
from app.core.config import get_settings
from app.core.database import close_db
from app.core.errors import register_exception_handlers
from app.core.middleware import SecurityHeadersMiddleware
from app.core.observability import (
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    setup_observability,
)
from app.core.rate_limit import limiter
from app.core.redis import close_redis
from app.services.click_recorder import (
    get_click_recorder,
    start_click_recorder,
    stop_click_recorder,
)
from app.services.live_feed import close_ledger_feed, get_ledger_feed

settings = get_settings()

# Get logger (will be configured by setup_observability)
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup and shutdown events."""
    # Startup
    logger.info("Starting Linkpulse", version=settings.app_version)

    await start_click_recorder()
    logger.info("Click recorder started")

    yield

    # Shutdown
    logger.info("Shutting down Linkpulse")

    await close_ledger_feed()
    logger.info("Live subscriptions closed")

    # Flushes queued clicks before the database goes away
    await stop_click_recorder()
    logger.info("Click recorder stopped")

    await close_redis()
    await close_db()
    logger.info("Database connections closed")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="URL Shortener with Click Analytics",
    lifespan=lifespan,
)

# Set up observability (logging, tracing, metrics, Sentry)
setup_observability(app)

# Domain errors render as {"error": ...}
register_exception_handlers(app)

# Rate limiter state and exception handler
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Middleware stack (order matters - first added = outermost = runs last on request, first on response)

# Request logging middleware (logs all requests with timing)
app.add_middleware(RequestLoggingMiddleware)

# Request ID middleware (adds unique ID to each request)
app.add_middleware(RequestIDMiddleware)

# Security headers middleware
app.add_middleware(
    SecurityHeadersMiddleware,
    enable_hsts=not settings.debug,  # Enable HSTS in production
)

# CORS middleware (innermost - runs first on request)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "X-Request-ID"],
)

# Include routers
app.include_router(urls_router)
app.include_router(redirect_router)
app.include_router(analytics_router)


@app.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    recorder = get_click_recorder()
    return {
        "status": "healthy" if recorder.is_running else "degraded",
        "click_recorder_running": recorder.is_running,
    }


@app.get("/stats")
async def service_stats() -> dict:
    """Get service statistics."""
    recorder = get_click_recorder()
    return {
        "version": settings.app_version,
        "click_recorder": recorder.stats,
        "dead_letters": recorder.dead_letters,
        "live_feed": get_ledger_feed().stats,
    }


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {"message": "Welcome to Linkpulse", "version": settings.app_version}
